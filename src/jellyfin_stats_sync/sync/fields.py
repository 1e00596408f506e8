"""Tracked fields and typed equality used for incremental item diffs."""

import json
from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from typing import Any, NamedTuple

from ..jellyfin.dates import parse_jellyfin_date


class FieldKind(str, Enum):
    """How a tracked field is compared."""

    TEXT = "text"
    NUMBER = "number"
    BOOL = "bool"
    DATE = "date"
    ARRAY = "array"
    JSON = "json"


class TrackedField(NamedTuple):
    """A column that participates in change detection."""

    name: str
    kind: FieldKind


def _decode(value: Any) -> Any:
    """Decode a JSON column value that may still be stored as text."""
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def _text_equal(a: Any, b: Any) -> bool:
    return a == b


def _number_equal(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return float(a) == float(b)


def _bool_equal(a: Any, b: Any) -> bool:
    if a is None or b is None:
        return a is None and b is None
    return bool(a) == bool(b)


def _date_equal(a: Any, b: Any) -> bool:
    return parse_jellyfin_date(a) == parse_jellyfin_date(b)


def _deep_equal(a: Any, b: Any) -> bool:
    return _decode(a) == _decode(b)


_EQUALITY: dict[FieldKind, Callable[[Any, Any], bool]] = {
    FieldKind.TEXT: _text_equal,
    FieldKind.NUMBER: _number_equal,
    FieldKind.BOOL: _bool_equal,
    FieldKind.DATE: _date_equal,
    FieldKind.ARRAY: _deep_equal,
    FieldKind.JSON: _deep_equal,
}


def values_equal(kind: FieldKind, a: Any, b: Any) -> bool:
    """Compare two values of a tracked field by its kind."""
    return _EQUALITY[kind](a, b)


T, N, B, D, A, J = (
    FieldKind.TEXT,
    FieldKind.NUMBER,
    FieldKind.BOOL,
    FieldKind.DATE,
    FieldKind.ARRAY,
    FieldKind.JSON,
)

ITEM_TRACKED_FIELDS: tuple[TrackedField, ...] = (
    TrackedField("name", T),
    TrackedField("original_title", T),
    TrackedField("etag", T),
    TrackedField("container", T),
    TrackedField("sort_name", T),
    TrackedField("premiere_date", D),
    TrackedField("path", T),
    TrackedField("official_rating", T),
    TrackedField("overview", T),
    TrackedField("community_rating", N),
    TrackedField("runtime_ticks", N),
    TrackedField("production_year", N),
    TrackedField("is_folder", B),
    TrackedField("parent_id", T),
    TrackedField("media_type", T),
    TrackedField("width", N),
    TrackedField("height", N),
    TrackedField("series_name", T),
    TrackedField("series_id", T),
    TrackedField("season_id", T),
    TrackedField("season_name", T),
    TrackedField("index_number", N),
    TrackedField("parent_index_number", N),
    TrackedField("primary_image_aspect_ratio", N),
    TrackedField("primary_image_tag", T),
    TrackedField("series_primary_image_tag", T),
    TrackedField("primary_image_thumb_tag", T),
    TrackedField("primary_image_logo_tag", T),
    TrackedField("parent_thumb_item_id", T),
    TrackedField("parent_thumb_image_tag", T),
    TrackedField("parent_logo_item_id", T),
    TrackedField("parent_logo_image_tag", T),
    TrackedField("backdrop_image_tags", A),
    TrackedField("parent_backdrop_item_id", T),
    TrackedField("parent_backdrop_image_tags", A),
    TrackedField("image_blur_hashes", J),
    TrackedField("image_tags", J),
    TrackedField("can_delete", B),
    TrackedField("can_download", B),
    TrackedField("play_access", T),
    TrackedField("is_hd", B),
    TrackedField("provider_ids", J),
    TrackedField("tags", A),
    TrackedField("series_studio", T),
    TrackedField("video_type", T),
    TrackedField("has_subtitles", B),
    TrackedField("channel_id", T),
    TrackedField("location_type", T),
    TrackedField("genres", A),
)

_IMAGE_FIELD_NAMES = {
    "primary_image_tag",
    "series_primary_image_tag",
    "primary_image_thumb_tag",
    "primary_image_logo_tag",
    "primary_image_aspect_ratio",
    "parent_thumb_item_id",
    "parent_thumb_image_tag",
    "parent_logo_item_id",
    "parent_logo_image_tag",
    "backdrop_image_tags",
    "parent_backdrop_item_id",
    "parent_backdrop_image_tags",
    "image_blur_hashes",
    "image_tags",
}

ITEM_IMAGE_FIELDS: tuple[TrackedField, ...] = tuple(f for f in ITEM_TRACKED_FIELDS if f.name in _IMAGE_FIELD_NAMES)

ITEM_TRACKED_FIELD_NAMES: frozenset[str] = frozenset(f.name for f in ITEM_TRACKED_FIELDS)

# Raw payload keys compared in addition to the mapped image columns
RAW_IMAGE_KEYS = ("BackdropImageTags", "ImageBlurHashes")


def changed_fields(
    existing: Mapping[str, Any],
    new: Mapping[str, Any],
    fields: Iterable[TrackedField] = ITEM_TRACKED_FIELDS,
) -> list[str]:
    """Return names of tracked fields whose values differ."""
    return [f.name for f in fields if not values_equal(f.kind, existing.get(f.name), new.get(f.name))]


def image_fields_changed(existing: Mapping[str, Any], new: Mapping[str, Any]) -> bool:
    """Check image columns plus the nested raw payload image arrays."""
    if changed_fields(existing, new, ITEM_IMAGE_FIELDS):
        return True

    existing_raw = _decode(existing.get("raw_data")) or {}
    new_raw = _decode(new.get("raw_data")) or {}
    return any(not _deep_equal(existing_raw.get(key), new_raw.get(key)) for key in RAW_IMAGE_KEYS)


def tracked_values(item: Mapping[str, Any]) -> dict[str, Any]:
    """Project an item mapping onto the tracked columns."""
    return {f.name: item.get(f.name) for f in ITEM_TRACKED_FIELDS}
