"""SQLite database operations for mirrored entities, sessions and the job queue."""

import json
import logging
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite

from .config import get_config
from .models import (
    ActivityRecord,
    Job,
    JobResult,
    JobResultStatus,
    JobState,
    LibraryRecord,
    PlaybackSession,
    Server,
    SyncStage,
    SyncStatus,
    UserRecord,
)

logger = logging.getLogger(__name__)

# Item columns that hold JSON documents
ITEM_JSON_COLUMNS = frozenset(
    {
        "backdrop_image_tags",
        "parent_backdrop_image_tags",
        "image_blur_hashes",
        "image_tags",
        "provider_ids",
        "tags",
        "genres",
        "people",
        "raw_data",
    }
)

ITEM_COLUMNS = (
    "id",
    "server_id",
    "library_id",
    "name",
    "type",
    "original_title",
    "etag",
    "date_created",
    "container",
    "sort_name",
    "premiere_date",
    "path",
    "official_rating",
    "overview",
    "community_rating",
    "runtime_ticks",
    "production_year",
    "is_folder",
    "parent_id",
    "media_type",
    "width",
    "height",
    "series_name",
    "series_id",
    "season_id",
    "season_name",
    "index_number",
    "parent_index_number",
    "video_type",
    "has_subtitles",
    "channel_id",
    "location_type",
    "genres",
    "primary_image_aspect_ratio",
    "primary_image_tag",
    "series_primary_image_tag",
    "primary_image_thumb_tag",
    "primary_image_logo_tag",
    "parent_thumb_item_id",
    "parent_thumb_image_tag",
    "parent_logo_item_id",
    "parent_logo_image_tag",
    "backdrop_image_tags",
    "parent_backdrop_item_id",
    "parent_backdrop_image_tags",
    "image_blur_hashes",
    "image_tags",
    "can_delete",
    "can_download",
    "play_access",
    "is_hd",
    "provider_ids",
    "tags",
    "series_studio",
    "people",
    "raw_data",
    "processed",
    "created_at",
    "updated_at",
)

_USER_FIELDS = tuple(name for name in UserRecord.model_fields if name != "raw_data")
_SESSION_FIELDS = tuple(PlaybackSession.model_fields)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _encode(value: Any) -> Any:
    """Convert a Python value into something sqlite can store."""
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _decode_json(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(value)


class Database:
    """Async SQLite database for the sync core."""

    def __init__(self, db_path: str | None = None, journal_mode: str | None = None):
        self._config_db_path = db_path
        self._config_journal_mode = journal_mode
        self._db: aiosqlite.Connection | None = None

    @property
    def db_path(self) -> str:
        """Get database path from config or override."""
        if self._config_db_path:
            return str(self._config_db_path)
        return get_config().database.path

    @property
    def journal_mode(self) -> str:
        """Get journal mode from config or override."""
        if self._config_journal_mode:
            return self._config_journal_mode.upper()
        try:
            return get_config().database.journal_mode.upper()
        except RuntimeError:
            return "WAL"  # Default if config not loaded (tests)

    @property
    def connected(self) -> bool:
        return self._db is not None

    async def connect(self) -> None:
        """Connect to the database and create tables."""
        db_path = Path(self.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Connecting to database: %s (journal_mode=%s)", db_path, self.journal_mode)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        # WAL is default, use DELETE for NFS compatibility
        if self.journal_mode in ("WAL", "DELETE", "TRUNCATE", "MEMORY", "OFF"):
            await self._db.execute(f"PRAGMA journal_mode={self.journal_mode}")
        await self._db.execute("PRAGMA foreign_keys=ON")

        await self._create_tables()
        logger.info("Database connected successfully")

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            logger.info("Closing database connection")
            await self._db.close()
            self._db = None

    async def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        assert self._db is not None

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS servers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                url TEXT NOT NULL,
                api_key TEXT NOT NULL,
                sync_status TEXT NOT NULL DEFAULT 'pending',
                sync_progress TEXT NOT NULL DEFAULT 'not_started',
                sync_error TEXT,
                last_sync_started TIMESTAMP,
                last_sync_completed TIMESTAMP,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """
        )

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS libraries (
                id TEXT PRIMARY KEY,
                server_id INTEGER NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                raw_data TEXT NOT NULL DEFAULT '{}',
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """
        )

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                server_id INTEGER NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                last_login_date TIMESTAMP,
                last_activity_date TIMESTAMP,
                has_password BOOLEAN NOT NULL DEFAULT 0,
                has_configured_password BOOLEAN NOT NULL DEFAULT 0,
                has_configured_easy_password BOOLEAN NOT NULL DEFAULT 0,
                enable_auto_login BOOLEAN NOT NULL DEFAULT 0,
                is_administrator BOOLEAN NOT NULL DEFAULT 0,
                is_hidden BOOLEAN NOT NULL DEFAULT 0,
                is_disabled BOOLEAN NOT NULL DEFAULT 0,
                enable_remote_access BOOLEAN NOT NULL DEFAULT 1,
                enable_media_playback BOOLEAN NOT NULL DEFAULT 1,
                enable_content_deletion BOOLEAN NOT NULL DEFAULT 0,
                enable_content_downloading BOOLEAN NOT NULL DEFAULT 0,
                enable_live_tv_access BOOLEAN NOT NULL DEFAULT 1,
                enable_all_folders BOOLEAN NOT NULL DEFAULT 1,
                max_active_sessions INTEGER NOT NULL DEFAULT 0,
                remote_client_bitrate_limit INTEGER NOT NULL DEFAULT 0,
                authentication_provider_id TEXT,
                password_reset_provider_id TEXT,
                sync_play_access TEXT,
                raw_data TEXT NOT NULL DEFAULT '{}',
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """
        )

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS items (
                id TEXT PRIMARY KEY,
                server_id INTEGER NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
                library_id TEXT NOT NULL REFERENCES libraries(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                original_title TEXT,
                etag TEXT,
                date_created TIMESTAMP,
                container TEXT,
                sort_name TEXT,
                premiere_date TIMESTAMP,
                path TEXT,
                official_rating TEXT,
                overview TEXT,
                community_rating REAL,
                runtime_ticks INTEGER,
                production_year INTEGER,
                is_folder BOOLEAN NOT NULL DEFAULT 0,
                parent_id TEXT,
                media_type TEXT,
                width INTEGER,
                height INTEGER,
                series_name TEXT,
                series_id TEXT,
                season_id TEXT,
                season_name TEXT,
                index_number INTEGER,
                parent_index_number INTEGER,
                video_type TEXT,
                has_subtitles BOOLEAN,
                channel_id TEXT,
                location_type TEXT,
                genres TEXT,
                primary_image_aspect_ratio REAL,
                primary_image_tag TEXT,
                series_primary_image_tag TEXT,
                primary_image_thumb_tag TEXT,
                primary_image_logo_tag TEXT,
                parent_thumb_item_id TEXT,
                parent_thumb_image_tag TEXT,
                parent_logo_item_id TEXT,
                parent_logo_image_tag TEXT,
                backdrop_image_tags TEXT,
                parent_backdrop_item_id TEXT,
                parent_backdrop_image_tags TEXT,
                image_blur_hashes TEXT,
                image_tags TEXT,
                can_delete BOOLEAN,
                can_download BOOLEAN,
                play_access TEXT,
                is_hd BOOLEAN,
                provider_ids TEXT,
                tags TEXT,
                series_studio TEXT,
                people TEXT,
                raw_data TEXT NOT NULL,
                processed BOOLEAN NOT NULL DEFAULT 0,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """
        )

        await self._db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_items_library
            ON items(library_id)
        """
        )

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS activities (
                id TEXT PRIMARY KEY,
                server_id INTEGER NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                short_overview TEXT,
                type TEXT NOT NULL,
                date TIMESTAMP NOT NULL,
                severity TEXT NOT NULL,
                user_id TEXT REFERENCES users(id) ON DELETE SET NULL,
                item_id TEXT,
                created_at TIMESTAMP NOT NULL
            )
        """
        )

        await self._db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_activities_server_date
            ON activities(server_id, date)
        """
        )

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                server_id INTEGER NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
                user_id TEXT REFERENCES users(id) ON DELETE SET NULL,
                user_server_id TEXT,
                user_name TEXT NOT NULL,
                item_id TEXT NOT NULL,
                item_name TEXT,
                series_id TEXT,
                series_name TEXT,
                season_id TEXT,
                device_id TEXT,
                device_name TEXT,
                client_name TEXT,
                application_version TEXT,
                remote_end_point TEXT,
                play_duration INTEGER NOT NULL,
                start_time TIMESTAMP NOT NULL,
                end_time TIMESTAMP NOT NULL,
                last_activity_date TIMESTAMP,
                last_playback_check_in TIMESTAMP,
                runtime_ticks INTEGER,
                position_ticks INTEGER,
                percent_complete REAL,
                completed BOOLEAN NOT NULL,
                is_paused BOOLEAN NOT NULL,
                is_muted BOOLEAN NOT NULL,
                is_active BOOLEAN NOT NULL,
                volume_level INTEGER,
                audio_stream_index INTEGER,
                subtitle_stream_index INTEGER,
                play_method TEXT,
                media_source_id TEXT,
                repeat_mode TEXT,
                playback_order TEXT,
                is_transcoded BOOLEAN NOT NULL DEFAULT 0,
                transcoding_audio_codec TEXT,
                transcoding_video_codec TEXT,
                transcoding_container TEXT,
                transcoding_is_video_direct BOOLEAN,
                transcoding_is_audio_direct BOOLEAN,
                transcoding_bitrate INTEGER,
                transcoding_completion_percentage REAL,
                transcoding_width INTEGER,
                transcoding_height INTEGER,
                transcoding_audio_channels INTEGER,
                transcoding_hardware_acceleration_type TEXT,
                transcode_reasons TEXT,
                raw_data TEXT NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
        """
        )

        # Durable job queue
        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                payload TEXT NOT NULL DEFAULT '{}',
                state TEXT NOT NULL DEFAULT 'created',
                retry_count INTEGER NOT NULL DEFAULT 0,
                retry_limit INTEGER NOT NULL DEFAULT 3,
                retry_delay INTEGER NOT NULL DEFAULT 30,
                expire_in INTEGER NOT NULL DEFAULT 900,
                start_after TIMESTAMP NOT NULL,
                started_on TIMESTAMP,
                completed_on TIMESTAMP,
                output TEXT,
                last_error TEXT,
                created_at TIMESTAMP NOT NULL
            )
        """
        )

        await self._db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_jobs_name_state
            ON jobs(name, state, start_after)
        """
        )

        await self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS job_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                job_name TEXT NOT NULL,
                status TEXT NOT NULL,
                result TEXT,
                error TEXT,
                processing_time INTEGER,
                created_at TIMESTAMP NOT NULL
            )
        """
        )

        await self._db.commit()

    # ========== Servers ==========

    async def upsert_server(self, name: str, url: str, api_key: str) -> Server:
        """Register a configured server, keeping its sync state if it already exists."""
        assert self._db is not None

        now = _now()
        await self._db.execute(
            """
            INSERT INTO servers (name, url, api_key, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(name)
            DO UPDATE SET url = excluded.url,
                          api_key = excluded.api_key,
                          updated_at = excluded.updated_at
            """,
            (name, url.rstrip("/"), api_key, now, now),
        )
        await self._db.commit()

        server = await self.get_server_by_name(name)
        assert server is not None
        logger.info("[%s] Server registered (id=%d)", name, server.id)
        return server

    async def get_server(self, server_id: int) -> Server | None:
        """Get a server by id."""
        assert self._db is not None

        async with self._db.execute("SELECT * FROM servers WHERE id = ?", (server_id,)) as cursor:
            row = await cursor.fetchone()
            return Server.model_validate(dict(row)) if row else None

    async def get_server_by_name(self, name: str) -> Server | None:
        """Get a server by its configured name."""
        assert self._db is not None

        async with self._db.execute("SELECT * FROM servers WHERE name = ?", (name,)) as cursor:
            row = await cursor.fetchone()
            return Server.model_validate(dict(row)) if row else None

    async def list_servers(self, status: SyncStatus | None = None) -> list[Server]:
        """List servers, optionally filtered by sync status."""
        assert self._db is not None

        query = "SELECT * FROM servers"
        params: tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE sync_status = ?"
            params = (status.value,)
        query += " ORDER BY id"

        servers = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                servers.append(Server.model_validate(dict(row)))
        return servers

    async def update_server_sync_state(
        self,
        server_id: int,
        status: SyncStatus,
        progress: SyncStage,
        error: str | None = None,
        last_sync_started: datetime | None = None,
        last_sync_completed: datetime | None = None,
    ) -> None:
        """Persist the sync state machine position for a server.

        Timestamps are only overwritten when given.
        """
        assert self._db is not None

        logger.debug("Server %d: sync state -> %s/%s", server_id, status.value, progress.value)
        await self._db.execute(
            """
            UPDATE servers
            SET sync_status = ?,
                sync_progress = ?,
                sync_error = ?,
                last_sync_started = COALESCE(?, last_sync_started),
                last_sync_completed = COALESCE(?, last_sync_completed),
                updated_at = ?
            WHERE id = ?
            """,
            (
                status.value,
                progress.value,
                error,
                _encode(last_sync_started),
                _encode(last_sync_completed),
                _now(),
                server_id,
            ),
        )
        await self._db.commit()

    async def get_stuck_servers(self, started_before: datetime) -> list[Server]:
        """Servers still syncing since before the given instant."""
        assert self._db is not None

        servers = []
        async with self._db.execute(
            """
            SELECT * FROM servers
            WHERE sync_status = 'syncing'
              AND last_sync_started IS NOT NULL
              AND last_sync_started < ?
            """,
            (started_before.isoformat(),),
        ) as cursor:
            async for row in cursor:
                servers.append(Server.model_validate(dict(row)))
        return servers

    # ========== Libraries ==========

    async def get_library(self, library_id: str) -> LibraryRecord | None:
        """Get a library by its external id."""
        assert self._db is not None

        async with self._db.execute(
            "SELECT id, server_id, name, type, raw_data FROM libraries WHERE id = ?",
            (library_id,),
        ) as cursor:
            row = await cursor.fetchone()
            if not row:
                return None
            return LibraryRecord(
                id=row["id"],
                server_id=row["server_id"],
                name=row["name"],
                type=row["type"],
                raw_data=_decode_json(row["raw_data"]) or {},
            )

    async def list_libraries(self, server_id: int) -> list[LibraryRecord]:
        """All stored libraries of a server."""
        assert self._db is not None

        libraries = []
        async with self._db.execute(
            "SELECT id, server_id, name, type FROM libraries WHERE server_id = ? ORDER BY name",
            (server_id,),
        ) as cursor:
            async for row in cursor:
                libraries.append(
                    LibraryRecord(id=row["id"], server_id=row["server_id"], name=row["name"], type=row["type"])
                )
        return libraries

    async def upsert_library(self, library: LibraryRecord) -> None:
        """Insert or update a library."""
        assert self._db is not None

        now = _now()
        await self._db.execute(
            """
            INSERT INTO libraries (id, server_id, name, type, raw_data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id)
            DO UPDATE SET server_id = excluded.server_id,
                          name = excluded.name,
                          type = excluded.type,
                          raw_data = excluded.raw_data,
                          updated_at = excluded.updated_at
            """,
            (library.id, library.server_id, library.name, library.type, json.dumps(library.raw_data), now, now),
        )
        await self._db.commit()

    # ========== Users ==========

    async def get_user(self, user_id: str) -> UserRecord | None:
        """Get a user by its external id."""
        assert self._db is not None

        async with self._db.execute("SELECT * FROM users WHERE id = ?", (user_id,)) as cursor:
            row = await cursor.fetchone()
            if not row:
                return None
            data = {name: row[name] for name in _USER_FIELDS}
            data["raw_data"] = _decode_json(row["raw_data"]) or {}
            return UserRecord.model_validate(data)

    async def user_exists(self, user_id: str) -> bool:
        """Check whether a user id is stored."""
        assert self._db is not None

        async with self._db.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)) as cursor:
            return await cursor.fetchone() is not None

    async def upsert_user(self, user: UserRecord) -> None:
        """Insert or update a user."""
        assert self._db is not None

        now = _now()
        columns = [*_USER_FIELDS, "raw_data", "created_at", "updated_at"]
        values = [_encode(getattr(user, name)) for name in _USER_FIELDS]
        values += [json.dumps(user.raw_data), now, now]
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c not in ("id", "created_at"))

        await self._db.execute(
            f"""
            INSERT INTO users ({", ".join(columns)})
            VALUES ({", ".join("?" for _ in columns)})
            ON CONFLICT(id) DO UPDATE SET {updates}
            """,
            values,
        )
        await self._db.commit()

    async def count_users(self, server_id: int) -> int:
        """Count stored users of a server."""
        assert self._db is not None

        async with self._db.execute("SELECT COUNT(*) as count FROM users WHERE server_id = ?", (server_id,)) as cursor:
            row = await cursor.fetchone()
            return row["count"] if row else 0

    # ========== Items ==========

    def _row_to_item(self, row: aiosqlite.Row) -> dict[str, Any]:
        """Convert an items row into a dict with JSON columns decoded."""
        item = dict(row)
        for column in ITEM_JSON_COLUMNS:
            item[column] = _decode_json(item.get(column))
        return item

    async def get_item(self, item_id: str) -> dict[str, Any] | None:
        """Get an item row by id."""
        assert self._db is not None

        async with self._db.execute("SELECT * FROM items WHERE id = ?", (item_id,)) as cursor:
            row = await cursor.fetchone()
            return self._row_to_item(row) if row else None

    async def insert_item(self, item: dict[str, Any]) -> None:
        """Insert a new item. Unknown keys are rejected."""
        assert self._db is not None

        unknown = set(item) - set(ITEM_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown item columns: {sorted(unknown)}")

        now = _now()
        row = {"created_at": now, "updated_at": now, **item}
        columns = list(row)
        await self._db.execute(
            f"INSERT INTO items ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            [_encode(row[c]) for c in columns],
        )
        await self._db.commit()

    async def update_item_fields(self, item_id: str, fields: dict[str, Any]) -> None:
        """Write only the given columns plus updated_at for an existing item."""
        assert self._db is not None

        unknown = set(fields) - set(ITEM_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown item columns: {sorted(unknown)}")

        assignments = {**fields, "updated_at": _now()}
        await self._db.execute(
            f"UPDATE items SET {', '.join(f'{c} = ?' for c in assignments)} WHERE id = ?",
            [*(_encode(v) for v in assignments.values()), item_id],
        )
        await self._db.commit()

    async def count_items(self, server_id: int | None = None) -> int:
        """Count stored items, optionally for one server."""
        assert self._db is not None

        if server_id is None:
            query, params = "SELECT COUNT(*) as count FROM items", ()
        else:
            query, params = "SELECT COUNT(*) as count FROM items WHERE server_id = ?", (server_id,)
        async with self._db.execute(query, params) as cursor:
            row = await cursor.fetchone()
            return row["count"] if row else 0

    # ========== Activities ==========

    async def get_activity(self, activity_id: str) -> ActivityRecord | None:
        """Get an activity by its external id."""
        assert self._db is not None

        async with self._db.execute(
            """
            SELECT id, server_id, name, short_overview, type, date, severity, user_id, item_id
            FROM activities WHERE id = ?
            """,
            (activity_id,),
        ) as cursor:
            row = await cursor.fetchone()
            return ActivityRecord.model_validate(dict(row)) if row else None

    async def upsert_activity(self, activity: ActivityRecord) -> None:
        """Insert or update an activity."""
        assert self._db is not None

        await self._db.execute(
            """
            INSERT INTO activities
            (id, server_id, name, short_overview, type, date, severity, user_id, item_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id)
            DO UPDATE SET name = excluded.name,
                          short_overview = excluded.short_overview,
                          type = excluded.type,
                          date = excluded.date,
                          severity = excluded.severity,
                          user_id = excluded.user_id,
                          item_id = excluded.item_id
            """,
            (
                activity.id,
                activity.server_id,
                activity.name,
                activity.short_overview,
                activity.type,
                activity.date.isoformat(),
                activity.severity,
                activity.user_id,
                activity.item_id,
                _now(),
            ),
        )
        await self._db.commit()

    async def get_latest_activity(self, server_id: int) -> ActivityRecord | None:
        """Most recent stored activity of a server by date."""
        assert self._db is not None

        async with self._db.execute(
            """
            SELECT id, server_id, name, short_overview, type, date, severity, user_id, item_id
            FROM activities
            WHERE server_id = ?
            ORDER BY date DESC
            LIMIT 1
            """,
            (server_id,),
        ) as cursor:
            row = await cursor.fetchone()
            return ActivityRecord.model_validate(dict(row)) if row else None

    async def count_activities(self, server_id: int) -> int:
        """Count stored activities of a server."""
        assert self._db is not None

        async with self._db.execute(
            "SELECT COUNT(*) as count FROM activities WHERE server_id = ?", (server_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return row["count"] if row else 0

    # ========== Playback Sessions ==========

    async def insert_session(self, session: PlaybackSession) -> None:
        """Insert a finished playback session. Rows are never updated afterwards."""
        assert self._db is not None

        columns = [*_SESSION_FIELDS, "created_at"]
        values = [_encode(getattr(session, name)) for name in _SESSION_FIELDS] + [_now()]
        await self._db.execute(
            f"INSERT INTO sessions ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
            values,
        )
        await self._db.commit()
        logger.debug("Saved playback session %s (server=%d)", session.id, session.server_id)

    async def list_sessions(self, server_id: int, limit: int = 100) -> list[PlaybackSession]:
        """Most recent finished sessions of a server."""
        assert self._db is not None

        sessions = []
        async with self._db.execute(
            "SELECT * FROM sessions WHERE server_id = ? ORDER BY end_time DESC LIMIT ?",
            (server_id, limit),
        ) as cursor:
            async for row in cursor:
                data = {name: row[name] for name in _SESSION_FIELDS}
                data["raw_data"] = _decode_json(row["raw_data"]) or {}
                data["transcode_reasons"] = _decode_json(row["transcode_reasons"])
                sessions.append(PlaybackSession.model_validate(data))
        return sessions

    async def count_sessions(self, server_id: int | None = None) -> int:
        """Count finished sessions."""
        assert self._db is not None

        if server_id is None:
            query, params = "SELECT COUNT(*) as count FROM sessions", ()
        else:
            query, params = "SELECT COUNT(*) as count FROM sessions WHERE server_id = ?", (server_id,)
        async with self._db.execute(query, params) as cursor:
            row = await cursor.fetchone()
            return row["count"] if row else 0

    # ========== Job Queue ==========

    def _row_to_job(self, row: aiosqlite.Row) -> Job:
        """Convert a database row to Job model."""
        return Job(
            id=row["id"],
            name=row["name"],
            payload=json.loads(row["payload"]),
            state=JobState(row["state"]),
            retry_count=row["retry_count"],
            retry_limit=row["retry_limit"],
            retry_delay=row["retry_delay"],
            expire_in=row["expire_in"],
            start_after=row["start_after"],
            started_on=row["started_on"],
            completed_on=row["completed_on"],
            output=_decode_json(row["output"]),
            last_error=row["last_error"],
            created_at=row["created_at"],
        )

    async def insert_job(self, job: Job) -> None:
        """Persist a newly created job."""
        assert self._db is not None

        await self._db.execute(
            """
            INSERT INTO jobs
            (id, name, payload, state, retry_count, retry_limit, retry_delay, expire_in, start_after, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id,
                job.name,
                json.dumps(job.payload),
                job.state.value,
                job.retry_count,
                job.retry_limit,
                job.retry_delay,
                job.expire_in,
                _encode(job.start_after or job.created_at),
                job.created_at.isoformat(),
            ),
        )
        await self._db.commit()

    async def get_job(self, job_id: str) -> Job | None:
        """Get a job by id."""
        assert self._db is not None

        async with self._db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cursor:
            row = await cursor.fetchone()
            return self._row_to_job(row) if row else None

    async def claim_jobs(self, name: str, limit: int) -> list[Job]:
        """Mark up to `limit` ready jobs of a type as active and return them."""
        assert self._db is not None

        if limit <= 0:
            return []

        now = _now()
        jobs = []
        async with self._db.execute(
            """
            SELECT * FROM jobs
            WHERE name = ?
              AND state IN ('created', 'retry')
              AND start_after <= ?
            ORDER BY start_after ASC, created_at ASC
            LIMIT ?
            """,
            (name, now, limit),
        ) as cursor:
            async for row in cursor:
                jobs.append(self._row_to_job(row))

        for job in jobs:
            await self._db.execute(
                "UPDATE jobs SET state = 'active', started_on = ? WHERE id = ?",
                (now, job.id),
            )
            job.state = JobState.ACTIVE
            job.started_on = datetime.fromisoformat(now)
        await self._db.commit()

        if jobs:
            logger.debug("Claimed %d %s jobs", len(jobs), name)
        return jobs

    async def complete_job(self, job_id: str, output: dict[str, Any] | None) -> None:
        """Mark a job as completed."""
        assert self._db is not None

        await self._db.execute(
            "UPDATE jobs SET state = 'completed', completed_on = ?, output = ? WHERE id = ?",
            (_now(), _encode(output), job_id),
        )
        await self._db.commit()

    async def retry_job(self, job_id: str, error: str, start_after: datetime) -> None:
        """Put a failed job back in line for another attempt."""
        assert self._db is not None

        await self._db.execute(
            """
            UPDATE jobs
            SET state = 'retry',
                retry_count = retry_count + 1,
                last_error = ?,
                start_after = ?
            WHERE id = ?
            """,
            (error, start_after.isoformat(), job_id),
        )
        await self._db.commit()

    async def fail_job(self, job_id: str, error: str, state: JobState = JobState.FAILED) -> None:
        """Mark a job as finally failed (or expired)."""
        assert self._db is not None

        await self._db.execute(
            "UPDATE jobs SET state = ?, completed_on = ?, last_error = ? WHERE id = ?",
            (state.value, _now(), error, job_id),
        )
        await self._db.commit()

    async def get_active_jobs(self) -> list[Job]:
        """All jobs currently marked active."""
        assert self._db is not None

        jobs = []
        async with self._db.execute("SELECT * FROM jobs WHERE state = 'active'") as cursor:
            async for row in cursor:
                jobs.append(self._row_to_job(row))
        return jobs

    async def reset_active_jobs(self) -> int:
        """Put ALL active jobs back in line.

        Called on startup to recover from crashes/restarts.
        """
        assert self._db is not None

        logger.debug("Resetting all active jobs (startup recovery)")
        cursor = await self._db.execute(
            "UPDATE jobs SET state = 'retry', started_on = NULL WHERE state = 'active'"
        )
        await self._db.commit()
        if cursor.rowcount > 0:
            logger.info("Startup recovery: reset %d jobs from active to retry", cursor.rowcount)
        return cursor.rowcount

    async def get_job_counts(self) -> dict[str, int]:
        """Count jobs per state."""
        assert self._db is not None

        counts = {state.value: 0 for state in JobState}
        async with self._db.execute("SELECT state, COUNT(*) as count FROM jobs GROUP BY state") as cursor:
            async for row in cursor:
                counts[row["state"]] = row["count"]
        return counts

    # ========== Job Results ==========

    async def log_job_result(self, result: JobResult) -> int:
        """Append an entry to the job result log."""
        assert self._db is not None

        cursor = await self._db.execute(
            """
            INSERT INTO job_results (job_id, job_name, status, result, error, processing_time, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.job_id,
                result.job_name,
                result.status.value,
                _encode(result.result),
                result.error,
                result.processing_time,
                result.created_at.isoformat(),
            ),
        )
        await self._db.commit()
        return cursor.lastrowid or 0

    async def update_job_result(
        self,
        result_id: int,
        status: JobResultStatus,
        result: dict[str, Any] | None = None,
        error: str | None = None,
        processing_time: int | None = None,
    ) -> None:
        """Finalize a job result entry written when processing started."""
        assert self._db is not None

        await self._db.execute(
            """
            UPDATE job_results
            SET status = ?, result = ?, error = ?, processing_time = ?
            WHERE id = ?
            """,
            (status.value, _encode(result), error, processing_time, result_id),
        )
        await self._db.commit()

    async def get_recent_job_results(self, limit: int = 50, job_name: str | None = None) -> list[JobResult]:
        """Most recent job results, newest first."""
        assert self._db is not None

        query = "SELECT * FROM job_results"
        params: list[Any] = []
        if job_name:
            query += " WHERE job_name = ?"
            params.append(job_name)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        results = []
        async with self._db.execute(query, params) as cursor:
            async for row in cursor:
                results.append(
                    JobResult(
                        id=row["id"],
                        job_id=row["job_id"],
                        job_name=row["job_name"],
                        status=JobResultStatus(row["status"]),
                        result=_decode_json(row["result"]),
                        error=row["error"],
                        processing_time=row["processing_time"],
                        created_at=row["created_at"],
                    )
                )
        return results

    def get_database_size(self) -> int:
        """Get database file size in bytes."""
        try:
            return Path(self.db_path).stat().st_size
        except OSError:
            return 0


# Global database instance
_db: Database | None = None


async def get_db() -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        _db = Database()
        await _db.connect()
    return _db


async def close_db() -> None:
    """Close the global database connection."""
    global _db
    if _db:
        await _db.close()
        _db = None
