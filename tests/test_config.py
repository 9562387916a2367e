from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from cubesync.config.realtime import (
    DEFAULT_POLL_URL,
    DEFAULT_WS_URL,
    PersistentChannelConfig,
    RealtimeClientConfig,
    load_realtime_config,
)
from cubesync.config.runtime_paths import credentials_file, logs_dir, reset_runtime_roots


def _write(path: Path, section: dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"realtime": section}), encoding="utf-8")
    return path


def test_defaults():
    config = RealtimeClientConfig()
    assert config.persistent.server_url == DEFAULT_WS_URL
    assert config.persistent.max_reconnect_attempts == 10
    assert config.persistent.reconnect_base_delay == 1.0
    assert config.persistent.reconnect_max_delay == 30.0
    assert config.persistent.heartbeat_interval == 30.0
    assert config.persistent.connection_timeout == 10.0
    assert config.polling.server_url == DEFAULT_POLL_URL
    assert config.polling.poll_interval == 2.0
    assert config.polling.request_timeout == 5.0
    assert config.polling.max_retries == 3
    assert config.prefer_persistent_channel is True
    assert config.enable_fallback is True


def test_camel_case_file_is_accepted(tmp_path: Path):
    path = _write(
        tmp_path / "custom.json",
        {
            "persistent": {"serverUrl": "wss://file/ws", "maxReconnectAttempts": 4},
            "polling": {"pollInterval": 0.5},
            "enableFallback": False,
        },
    )
    config = load_realtime_config(path)
    assert config.persistent.server_url == "wss://file/ws"
    assert config.persistent.max_reconnect_attempts == 4
    assert config.polling.poll_interval == 0.5
    assert config.enable_fallback is False


def test_default_candidates_layer_in_order(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    _write(tmp_path / "cubesync.json", {"persistent": {"serverUrl": "wss://a/ws", "debug": True}})
    _write(tmp_path / "config" / "cubesync.json", {"persistent": {"serverUrl": "wss://b/ws"}})
    config = load_realtime_config()
    assert config.persistent.server_url == "wss://b/ws"
    assert config.persistent.debug is True


def test_environment_wins_over_files(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    path = _write(tmp_path / "custom.json", {"persistent": {"serverUrl": "wss://file/ws"}})
    monkeypatch.setenv("CUBESYNC_WS_URL", "wss://env/ws")
    monkeypatch.setenv("CUBESYNC_POLL_URL", "https://env/api")
    monkeypatch.setenv("CUBESYNC_DEBUG", "yes")
    config = load_realtime_config(path)
    assert config.persistent.server_url == "wss://env/ws"
    assert config.polling.server_url == "https://env/api"
    assert config.persistent.debug is True
    assert config.polling.debug is True


def test_unreadable_file_is_ignored(tmp_path: Path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    assert load_realtime_config(path) == RealtimeClientConfig()


def test_delay_bounds_are_validated():
    with pytest.raises(ValidationError):
        PersistentChannelConfig(reconnect_base_delay=5.0, reconnect_max_delay=1.0)
    with pytest.raises(ValidationError):
        PersistentChannelConfig(heartbeat_interval=0)


def test_runtime_root_override(runtime_root: Path, monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    assert credentials_file() == runtime_root.resolve() / "config" / "credentials.json"
    monkeypatch.setenv("CUBESYNC_LOG_DIR", str(tmp_path / "elsewhere"))
    reset_runtime_roots()
    assert logs_dir() == (tmp_path / "elsewhere").resolve()
