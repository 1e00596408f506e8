"""Configuration models for jellyfin-stats-sync."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """Configuration for a single Jellyfin server and its API client knobs."""

    name: str
    url: str
    api_key: str
    timeout_seconds: float = 60.0
    rate_limit_per_second: float = 10.0  # 0 disables throttling
    max_concurrent: int = 5
    max_retries: int = 3
    retry_min_timeout: float = 1.0  # Seconds before the first retry
    retry_max_timeout: float = 10.0


class SyncConfig(BaseModel):
    """Default options for the entity sync pipelines."""

    user_concurrency: int = 5
    library_concurrency: int = 5
    item_page_size: int = 500
    max_library_concurrency: int = 2
    item_concurrency: int = 10
    api_request_delay_ms: int = 100
    recent_items_limit: int = 100
    activity_page_size: int = 100
    activity_max_pages: int = 1000
    recent_activity_max_pages: int = 10
    activity_concurrency: int = 5
    stuck_sync_hours: float = 1.0


class TeamConfig(BaseModel):
    """Concurrency override for one job type."""

    team_size: int = 1
    team_concurrency: int = 1


class QueueConfig(BaseModel):
    """Job queue configuration."""

    poll_interval_seconds: float = 2.0
    retry_limit: int = 3
    retry_delay_seconds: int = 30
    expire_in_seconds: int = 900  # 15 minutes
    teams: dict[str, TeamConfig] = Field(default_factory=dict)


class SchedulerConfig(BaseModel):
    """Periodic sync scheduling."""

    enabled: bool = True
    activity_sync_interval_seconds: float = 300.0
    recent_items_sync_interval_seconds: float = 300.0
    stuck_sync_check_interval_seconds: float = 600.0


class SessionPollerConfig(BaseModel):
    """Live session polling."""

    enabled: bool = True
    interval_seconds: float = 5.0


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: str = "/data/jellyfin-stats-sync.db"
    journal_mode: str = "WAL"  # WAL, DELETE, TRUNCATE, MEMORY, OFF


class ServerSettings(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"


class Config(BaseModel):
    """Root configuration model."""

    servers: list[ServerConfig] = Field(default_factory=list)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    session_poller: SessionPollerConfig = Field(default_factory=SessionPollerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})

    def get_server(self, name: str) -> ServerConfig | None:
        """Get server config by name."""
        for server in self.servers:
            if server.name == name:
                return server
        return None


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    if _config is None:
        raise RuntimeError("Configuration not loaded. Call load_config() first.")
    return _config


def load_config(path: str | Path) -> Config:
    """Load configuration from file and set as global."""
    global _config
    _config = Config.from_yaml(path)
    return _config
