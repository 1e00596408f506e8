"""Mirror server users."""

import logging
from typing import Any

from ..jellyfin.dates import parse_jellyfin_date
from ..models import UserRecord
from .base import EntitySyncPipeline, UserSyncOptions
from .metrics import MetricCounter, MetricsSnapshot

logger = logging.getLogger(__name__)

# UserRecord field -> Jellyfin key, read from Policy with a top-level fallback
_POLICY_FIELDS = {
    "is_administrator": "IsAdministrator",
    "is_hidden": "IsHidden",
    "is_disabled": "IsDisabled",
    "enable_remote_access": "EnableRemoteAccess",
    "enable_media_playback": "EnableMediaPlayback",
    "enable_content_deletion": "EnableContentDeletion",
    "enable_content_downloading": "EnableContentDownloading",
    "enable_live_tv_access": "EnableLiveTvAccess",
    "enable_all_folders": "EnableAllFolders",
    "max_active_sessions": "MaxActiveSessions",
    "remote_client_bitrate_limit": "RemoteClientBitrateLimit",
    "authentication_provider_id": "AuthenticationProviderId",
    "password_reset_provider_id": "PasswordResetProviderId",
    "sync_play_access": "SyncPlayAccess",
}


def map_user(user: dict[str, Any], server_id: int) -> UserRecord:
    """Map a Jellyfin UserDto onto a UserRecord."""
    policy = user.get("Policy") or {}
    data: dict[str, Any] = {
        "id": user["Id"],
        "server_id": server_id,
        "name": user.get("Name") or "",
        "last_login_date": parse_jellyfin_date(user.get("LastLoginDate")),
        "last_activity_date": parse_jellyfin_date(user.get("LastActivityDate")),
        "has_password": bool(user.get("HasPassword")),
        "has_configured_password": bool(user.get("HasConfiguredPassword")),
        "has_configured_easy_password": bool(user.get("HasConfiguredEasyPassword")),
        "enable_auto_login": bool(user.get("EnableAutoLogin")),
        "raw_data": user,
    }
    for field, key in _POLICY_FIELDS.items():
        value = policy.get(key, user.get(key))
        if value is not None:
            data[field] = value
    return UserRecord.model_validate(data)


class UserSyncPipeline(EntitySyncPipeline):
    """Fetch all users once and upsert them with bounded concurrency."""

    entity = "users"
    options_model = UserSyncOptions
    options: UserSyncOptions

    async def _sync(self) -> None:
        self.metrics.increment_api_requests()
        users = await self.client.get_users()
        logger.info("[%s] Fetched %d users", self.server.name, len(users))
        await self._run_bounded(users, self._process_user, self.options.concurrency, "User")

    async def _process_user(self, user: dict[str, Any]) -> None:
        record = map_user(user, self.server.id)
        existed = await self.db.user_exists(record.id)
        await self.db.upsert_user(record)
        self.metrics.increment_database_operations()

        self.metrics.increment(MetricCounter.USERS_UPDATED if existed else MetricCounter.USERS_INSERTED)
        self.metrics.increment(MetricCounter.USERS_PROCESSED)

    def _data(self, snapshot: MetricsSnapshot) -> dict[str, Any]:
        return {
            "users_processed": snapshot.users_processed,
            "users_inserted": snapshot.users_inserted,
            "users_updated": snapshot.users_updated,
        }
