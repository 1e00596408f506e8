"""Parsing of Jellyfin timestamp strings."""

import logging
import re
from datetime import UTC, datetime

logger = logging.getLogger(__name__)

# Jellyfin emits 7 fractional digits (.NET ticks); datetime accepts at most 6
_EXTRA_FRACTION = re.compile(r"\.(\d{6})\d+")


def parse_jellyfin_date(value: str | datetime | None) -> datetime | None:
    """Parse a Jellyfin date into an aware UTC datetime, or None if missing/invalid."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)

    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _EXTRA_FRACTION.sub(r".\1", text)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable date: %r", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
