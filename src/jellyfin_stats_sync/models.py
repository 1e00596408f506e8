"""Data models for jellyfin-stats-sync."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SyncStatus(str, Enum):
    """Persisted sync status of a server."""

    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncStage(str, Enum):
    """Progress marker stored alongside the sync status."""

    NOT_STARTED = "not_started"
    USERS = "users"
    LIBRARIES = "libraries"
    ITEMS = "items"
    ACTIVITIES = "activities"
    RECENT_ITEMS = "recent_items"
    RECENT_ACTIVITIES = "recent_activities"
    COMPLETED = "completed"


# Order in which a full sync walks its stages
FULL_SYNC_STAGES: tuple[SyncStage, ...] = (
    SyncStage.USERS,
    SyncStage.LIBRARIES,
    SyncStage.ITEMS,
    SyncStage.ACTIVITIES,
)


class ResultStatus(str, Enum):
    """Outcome of a sync run."""

    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class JobName(str, Enum):
    """Named job types accepted by the queue."""

    FULL_SYNC = "full-sync"
    USERS_SYNC = "users-sync"
    LIBRARIES_SYNC = "libraries-sync"
    ITEMS_SYNC = "items-sync"
    ACTIVITIES_SYNC = "activities-sync"
    RECENT_ITEMS_SYNC = "recent-items-sync"
    RECENT_ACTIVITIES_SYNC = "recent-activities-sync"


class JobState(str, Enum):
    """Lifecycle of a queued job."""

    CREATED = "created"
    RETRY = "retry"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class JobResultStatus(str, Enum):
    """Status recorded in the job result log."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Server(BaseModel):
    """A registered media server with its sync state."""

    id: int
    name: str
    url: str
    api_key: str
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_progress: SyncStage = SyncStage.NOT_STARTED
    sync_error: str | None = None
    last_sync_started: datetime | None = None
    last_sync_completed: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class LibraryRecord(BaseModel):
    """Library mirrored from the media server."""

    id: str
    server_id: int
    name: str
    type: str
    raw_data: dict[str, Any] = Field(default_factory=dict)


class UserRecord(BaseModel):
    """User mirrored from the media server."""

    id: str
    server_id: int
    name: str
    last_login_date: datetime | None = None
    last_activity_date: datetime | None = None
    has_password: bool = False
    has_configured_password: bool = False
    has_configured_easy_password: bool = False
    enable_auto_login: bool = False
    is_administrator: bool = False
    is_hidden: bool = False
    is_disabled: bool = False
    enable_remote_access: bool = True
    enable_media_playback: bool = True
    enable_content_deletion: bool = False
    enable_content_downloading: bool = False
    enable_live_tv_access: bool = True
    enable_all_folders: bool = True
    max_active_sessions: int = 0
    remote_client_bitrate_limit: int = 0
    authentication_provider_id: str | None = None
    password_reset_provider_id: str | None = None
    sync_play_access: str | None = None
    raw_data: dict[str, Any] = Field(default_factory=dict)


class ActivityRecord(BaseModel):
    """Activity log entry mirrored from the media server."""

    id: str
    server_id: int
    name: str
    short_overview: str | None = None
    type: str
    date: datetime
    severity: str
    user_id: str | None = None
    item_id: str | None = None


class TrackedSession(BaseModel):
    """In-memory state of a live playback session between polls."""

    session_key: str
    user_jellyfin_id: str = ""
    user_name: str = ""
    client_name: str | None = None
    device_id: str | None = None
    device_name: str | None = None
    item_id: str
    item_name: str | None = None
    series_id: str | None = None
    series_name: str | None = None
    season_id: str | None = None
    position_ticks: int = 0
    runtime_ticks: int = 0
    play_duration: int = 0  # Seconds
    start_time: datetime
    last_activity_date: datetime | None = None
    last_playback_check_in: datetime | None = None
    last_update_time: datetime
    is_paused: bool = False
    play_method: str | None = None

    # PlayState
    is_muted: bool | None = None
    volume_level: int | None = None
    audio_stream_index: int | None = None
    subtitle_stream_index: int | None = None
    media_source_id: str | None = None
    repeat_mode: str | None = None
    playback_order: str | None = None

    # Session
    remote_end_point: str | None = None
    session_id: str | None = None
    application_version: str | None = None
    is_active: bool | None = None

    # TranscodingInfo
    transcoding_audio_codec: str | None = None
    transcoding_video_codec: str | None = None
    transcoding_container: str | None = None
    transcoding_is_video_direct: bool | None = None
    transcoding_is_audio_direct: bool | None = None
    transcoding_bitrate: int | None = None
    transcoding_completion_percentage: float | None = None
    transcoding_width: int | None = None
    transcoding_height: int | None = None
    transcoding_audio_channels: int | None = None
    transcoding_hardware_acceleration_type: str | None = None
    transcode_reasons: list[str] | None = None


class PlaybackSession(BaseModel):
    """A finished playback, written once when the session ends."""

    id: str
    server_id: int
    user_id: str | None = None
    user_server_id: str | None = None
    user_name: str
    item_id: str
    item_name: str | None = None
    series_id: str | None = None
    series_name: str | None = None
    season_id: str | None = None
    device_id: str | None = None
    device_name: str | None = None
    client_name: str | None = None
    application_version: str | None = None
    remote_end_point: str | None = None
    play_duration: int
    start_time: datetime
    end_time: datetime
    last_activity_date: datetime | None = None
    last_playback_check_in: datetime | None = None
    runtime_ticks: int = 0
    position_ticks: int = 0
    percent_complete: float = 0.0
    completed: bool = False
    is_paused: bool = False
    is_muted: bool = False
    is_active: bool = False
    volume_level: int | None = None
    audio_stream_index: int | None = None
    subtitle_stream_index: int | None = None
    play_method: str | None = None
    media_source_id: str | None = None
    repeat_mode: str | None = None
    playback_order: str | None = None
    is_transcoded: bool = False
    transcoding_audio_codec: str | None = None
    transcoding_video_codec: str | None = None
    transcoding_container: str | None = None
    transcoding_is_video_direct: bool | None = None
    transcoding_is_audio_direct: bool | None = None
    transcoding_bitrate: int | None = None
    transcoding_completion_percentage: float | None = None
    transcoding_width: int | None = None
    transcoding_height: int | None = None
    transcoding_audio_channels: int | None = None
    transcoding_hardware_acceleration_type: str | None = None
    transcode_reasons: list[str] | None = None
    raw_data: dict[str, Any] = Field(default_factory=dict)


class Job(BaseModel):
    """A durable queued job."""

    id: str
    name: str
    payload: dict[str, Any] = Field(default_factory=dict)
    state: JobState = JobState.CREATED
    retry_count: int = 0
    retry_limit: int = 3
    retry_delay: int = 30  # Seconds
    expire_in: int = 900  # Seconds
    start_after: datetime | None = None
    started_on: datetime | None = None
    completed_on: datetime | None = None
    output: dict[str, Any] | None = None
    last_error: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class JobResult(BaseModel):
    """Entry in the job result log."""

    id: int | None = None
    job_id: str
    job_name: str
    status: JobResultStatus
    result: dict[str, Any] | None = None
    error: str | None = None
    processing_time: int | None = None  # Milliseconds
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
