"""Tests for configuration loading."""

import tempfile
from pathlib import Path

import pytest
import yaml

from jellyfin_stats_sync.config import Config, QueueConfig, ServerConfig, SyncConfig, get_config, load_config


def test_server_config_defaults():
    """Test ServerConfig client knobs default values."""
    server = ServerConfig(name="test", url="http://localhost:8096", api_key="test-key")
    assert server.timeout_seconds == 60.0
    assert server.rate_limit_per_second == 10.0
    assert server.max_concurrent == 5
    assert server.max_retries == 3
    assert server.retry_min_timeout == 1.0
    assert server.retry_max_timeout == 10.0


def test_sync_config_defaults():
    """Test SyncConfig default values."""
    sync = SyncConfig()
    assert sync.item_page_size == 500
    assert sync.max_library_concurrency == 2
    assert sync.item_concurrency == 10
    assert sync.api_request_delay_ms == 100
    assert sync.activity_page_size == 100
    assert sync.recent_activity_max_pages == 10
    assert sync.stuck_sync_hours == 1.0


def test_queue_config_defaults():
    """Test QueueConfig delivery defaults."""
    queue = QueueConfig()
    assert queue.retry_limit == 3
    assert queue.retry_delay_seconds == 30
    assert queue.expire_in_seconds == 900
    assert queue.teams == {}


def test_config_get_server():
    """Test Config.get_server method."""
    config = Config(
        servers=[
            ServerConfig(name="home", url="http://home:8096", api_key="key1"),
            ServerConfig(name="cabin", url="http://cabin:8096", api_key="key2"),
        ]
    )

    assert config.get_server("home").url == "http://home:8096"
    assert config.get_server("cabin").api_key == "key2"
    assert config.get_server("missing") is None


def test_config_from_yaml():
    """Test loading config from YAML file."""
    config_data = {
        "servers": [
            {"name": "home", "url": "http://home:8096", "api_key": "key1", "rate_limit_per_second": 2},
        ],
        "sync": {"item_page_size": 250},
        "queue": {"teams": {"items-sync": {"team_size": 2, "team_concurrency": 2}}},
        "scheduler": {"enabled": False},
        "session_poller": {"interval_seconds": 10},
        "database": {"path": "/tmp/test.db"},
    }

    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        yaml.dump(config_data, f)
        config_path = Path(f.name)

    try:
        config = Config.from_yaml(config_path)

        assert len(config.servers) == 1
        assert config.servers[0].rate_limit_per_second == 2
        assert config.sync.item_page_size == 250
        assert config.sync.item_concurrency == 10
        assert config.queue.teams["items-sync"].team_size == 2
        assert config.scheduler.enabled is False
        assert config.session_poller.interval_seconds == 10
        assert config.database.path == "/tmp/test.db"
    finally:
        config_path.unlink()


def test_config_from_empty_yaml():
    """Test an empty file yields all defaults."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        config_path = Path(f.name)

    try:
        config = Config.from_yaml(config_path)
        assert config.servers == []
        assert config.session_poller.interval_seconds == 5.0
    finally:
        config_path.unlink()


def test_load_config_sets_global():
    """Test load_config makes the config available through get_config."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        yaml.dump({"logging": {"level": "DEBUG"}}, f)
        config_path = Path(f.name)

    try:
        config = load_config(config_path)
        assert get_config() is config
        assert config.logging.level == "DEBUG"
    finally:
        config_path.unlink()


def test_invalid_server_config_rejected():
    """Test a server entry without api_key fails validation."""
    with pytest.raises(ValueError):
        Config.model_validate({"servers": [{"name": "home", "url": "http://home:8096"}]})
