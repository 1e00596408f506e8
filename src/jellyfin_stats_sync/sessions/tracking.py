"""Pure helpers for turning polled sessions into playback records."""

import math
import uuid
from datetime import datetime
from typing import Any

from ..jellyfin.dates import parse_jellyfin_date
from ..models import PlaybackSession, TrackedSession

TICKS_PER_SECOND = 10_000_000
COMPLETED_PERCENT = 90.0
PREROLL_PROVIDER = "prerolls.video"

# Tracked field -> (section of the session payload, key)
_OPTIONAL_FIELDS: dict[str, tuple[str | None, str]] = {
    "is_muted": ("PlayState", "IsMuted"),
    "volume_level": ("PlayState", "VolumeLevel"),
    "audio_stream_index": ("PlayState", "AudioStreamIndex"),
    "subtitle_stream_index": ("PlayState", "SubtitleStreamIndex"),
    "media_source_id": ("PlayState", "MediaSourceId"),
    "repeat_mode": ("PlayState", "RepeatMode"),
    "playback_order": ("PlayState", "PlaybackOrder"),
    "remote_end_point": (None, "RemoteEndPoint"),
    "application_version": (None, "ApplicationVersion"),
    "is_active": (None, "IsActive"),
    "transcoding_audio_codec": ("TranscodingInfo", "AudioCodec"),
    "transcoding_video_codec": ("TranscodingInfo", "VideoCodec"),
    "transcoding_container": ("TranscodingInfo", "Container"),
    "transcoding_is_video_direct": ("TranscodingInfo", "IsVideoDirect"),
    "transcoding_is_audio_direct": ("TranscodingInfo", "IsAudioDirect"),
    "transcoding_bitrate": ("TranscodingInfo", "Bitrate"),
    "transcoding_completion_percentage": ("TranscodingInfo", "CompletionPercentage"),
    "transcoding_width": ("TranscodingInfo", "Width"),
    "transcoding_height": ("TranscodingInfo", "Height"),
    "transcoding_audio_channels": ("TranscodingInfo", "AudioChannels"),
    "transcoding_hardware_acceleration_type": ("TranscodingInfo", "HardwareAccelerationType"),
    "transcode_reasons": ("TranscodingInfo", "TranscodeReasons"),
}


def session_key(session: dict[str, Any]) -> str:
    """Identity of a playback across polls: user, device, series (if any) and item."""
    item = session.get("NowPlayingItem") or {}
    user_id = session.get("UserId") or ""
    device_id = session.get("DeviceId") or ""
    item_id = item.get("Id") or ""
    series_id = item.get("SeriesId") or ""

    if series_id:
        return f"{user_id}|{device_id}|{series_id}|{item_id}"
    return f"{user_id}|{device_id}|{item_id}"


def filter_valid_sessions(sessions: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Keep sessions that are playing real content (no trailers or prerolls)."""
    valid = []
    for session in sessions:
        item = session.get("NowPlayingItem")
        if not item:
            continue
        if item.get("Type") == "Trailer":
            continue
        if PREROLL_PROVIDER in (item.get("ProviderIds") or {}):
            continue
        valid.append(session)
    return valid


def _seconds_between(start: datetime, end: datetime) -> int:
    return max(math.floor((end - start).total_seconds()), 0)


def calculate_duration(
    tracked: TrackedSession,
    current_paused: bool,
    last_activity: datetime | None,
    last_paused: datetime | None,
) -> int:
    """Play duration after one more poll.

    Time is only added while the session was playing: up to the pause
    timestamp when it was just paused, up to the last activity otherwise.
    """
    if not tracked.is_paused and current_paused and last_paused:
        return tracked.play_duration + _seconds_between(tracked.last_update_time, last_paused)
    if not tracked.is_paused and not current_paused and last_activity:
        return tracked.play_duration + _seconds_between(tracked.last_update_time, last_activity)
    return tracked.play_duration


def final_duration(tracked: TrackedSession, now: datetime) -> int:
    """Duration of an ended session, counting the time since the last poll if it was playing."""
    if tracked.is_paused:
        return tracked.play_duration
    return tracked.play_duration + _seconds_between(tracked.last_update_time, now)


def percent_complete(position_ticks: int, runtime_ticks: int) -> float:
    if runtime_ticks <= 0:
        return 0.0
    return position_ticks / runtime_ticks * 100


def format_ticks(ticks: int | None) -> str:
    """Ticks as HH:MM:SS."""
    if not ticks or ticks <= 0:
        return "00:00:00"
    total = ticks // TICKS_PER_SECOND
    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def _optional_fields(session: dict[str, Any]) -> dict[str, Any]:
    values = {}
    for field, (section, key) in _OPTIONAL_FIELDS.items():
        source = session if section is None else (session.get(section) or {})
        values[field] = source.get(key)
    return values


def new_tracked_session(session: dict[str, Any], now: datetime) -> TrackedSession:
    """Start tracking a session seen for the first time."""
    item = session["NowPlayingItem"]
    play_state = session.get("PlayState") or {}
    return TrackedSession(
        session_key=session_key(session),
        user_jellyfin_id=session.get("UserId") or "",
        user_name=session.get("UserName") or "",
        client_name=session.get("Client"),
        device_id=session.get("DeviceId"),
        device_name=session.get("DeviceName"),
        item_id=item.get("Id") or "",
        item_name=item.get("Name"),
        series_id=item.get("SeriesId"),
        series_name=item.get("SeriesName"),
        season_id=item.get("SeasonId"),
        position_ticks=play_state.get("PositionTicks") or 0,
        runtime_ticks=item.get("RunTimeTicks") or 0,
        play_duration=0,
        start_time=now,
        last_activity_date=parse_jellyfin_date(session.get("LastActivityDate")),
        last_playback_check_in=parse_jellyfin_date(session.get("LastPlaybackCheckIn")),
        last_update_time=now,
        is_paused=bool(play_state.get("IsPaused")),
        play_method=play_state.get("PlayMethod"),
        session_id=session.get("Id"),
        **_optional_fields(session),
    )


def update_tracked_session(tracked: TrackedSession, session: dict[str, Any], now: datetime) -> TrackedSession:
    """Fold a new poll of an already tracked session into its state."""
    play_state = session.get("PlayState") or {}
    current_paused = bool(play_state.get("IsPaused"))
    last_activity = parse_jellyfin_date(session.get("LastActivityDate"))
    last_paused = parse_jellyfin_date(session.get("LastPausedDate"))

    # Missing optional values keep what the previous poll reported
    fallbacks = {field: value for field, value in _optional_fields(session).items() if value is not None}
    check_in = parse_jellyfin_date(session.get("LastPlaybackCheckIn"))
    if check_in is not None:
        fallbacks["last_playback_check_in"] = check_in

    return tracked.model_copy(
        update={
            **fallbacks,
            "position_ticks": play_state.get("PositionTicks") or 0,
            "is_paused": current_paused,
            "last_activity_date": last_activity,
            "last_update_time": now,
            "play_duration": calculate_duration(tracked, current_paused, last_activity, last_paused),
        }
    )


def build_playback_session(
    tracked: TrackedSession,
    server_id: int,
    user_id: str | None,
    duration: int,
    now: datetime,
) -> PlaybackSession:
    """Playback row for an ended session."""
    percent = percent_complete(tracked.position_ticks, tracked.runtime_ticks)
    return PlaybackSession(
        id=str(uuid.uuid4()),
        server_id=server_id,
        user_id=user_id,
        user_server_id=tracked.user_jellyfin_id or None,
        user_name=tracked.user_name,
        item_id=tracked.item_id,
        item_name=tracked.item_name,
        series_id=tracked.series_id,
        series_name=tracked.series_name,
        season_id=tracked.season_id,
        device_id=tracked.device_id,
        device_name=tracked.device_name,
        client_name=tracked.client_name,
        application_version=tracked.application_version,
        remote_end_point=tracked.remote_end_point,
        play_duration=duration,
        start_time=tracked.start_time,
        end_time=now,
        last_activity_date=tracked.last_activity_date,
        last_playback_check_in=tracked.last_playback_check_in,
        runtime_ticks=tracked.runtime_ticks,
        position_ticks=tracked.position_ticks,
        percent_complete=percent,
        completed=percent > COMPLETED_PERCENT,
        is_paused=tracked.is_paused,
        is_muted=bool(tracked.is_muted),
        is_active=bool(tracked.is_active),
        volume_level=tracked.volume_level,
        audio_stream_index=tracked.audio_stream_index,
        subtitle_stream_index=tracked.subtitle_stream_index,
        play_method=tracked.play_method,
        media_source_id=tracked.media_source_id,
        repeat_mode=tracked.repeat_mode,
        playback_order=tracked.playback_order,
        is_transcoded=tracked.play_method == "Transcode",
        transcoding_audio_codec=tracked.transcoding_audio_codec,
        transcoding_video_codec=tracked.transcoding_video_codec,
        transcoding_container=tracked.transcoding_container,
        transcoding_is_video_direct=tracked.transcoding_is_video_direct,
        transcoding_is_audio_direct=tracked.transcoding_is_audio_direct,
        transcoding_bitrate=tracked.transcoding_bitrate,
        transcoding_completion_percentage=tracked.transcoding_completion_percentage,
        transcoding_width=tracked.transcoding_width,
        transcoding_height=tracked.transcoding_height,
        transcoding_audio_channels=tracked.transcoding_audio_channels,
        transcoding_hardware_acceleration_type=tracked.transcoding_hardware_acceleration_type,
        transcode_reasons=tracked.transcode_reasons,
        raw_data={"sessionKey": tracked.session_key, "transcodeReasons": tracked.transcode_reasons},
    )
