from __future__ import annotations

# cubesync/config/realtime.py
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

LOGGER = logging.getLogger(__name__)

DEFAULT_WS_URL = "wss://isocubic.example.com/ws"
DEFAULT_POLL_URL = "https://isocubic.example.com/api"

_TRUTHY = {"1", "true", "yes", "on"}


class PersistentChannelConfig(BaseModel):
    """Options for the WebSocket channel. Durations are seconds."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    server_url: str = DEFAULT_WS_URL
    auto_reconnect: bool = True
    max_reconnect_attempts: int = Field(default=10, ge=0)
    reconnect_base_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=30.0, gt=0)
    heartbeat_interval: float = Field(default=30.0, gt=0)
    connection_timeout: float = Field(default=10.0, gt=0)
    debug: bool = False

    @model_validator(mode="after")
    def _check_delays(self) -> "PersistentChannelConfig":
        if self.reconnect_max_delay < self.reconnect_base_delay:
            raise ValueError("reconnect_max_delay must be >= reconnect_base_delay")
        return self


class PollingChannelConfig(BaseModel):
    """Options for the HTTP polling channel. Durations are seconds."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    server_url: str = DEFAULT_POLL_URL
    poll_interval: float = Field(default=2.0, gt=0)
    request_timeout: float = Field(default=5.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_backoff: float = Field(default=0.5, ge=0)
    debug: bool = False


class RealtimeClientConfig(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    persistent: PersistentChannelConfig = Field(default_factory=PersistentChannelConfig)
    polling: PollingChannelConfig = Field(default_factory=PollingChannelConfig)
    prefer_persistent_channel: bool = True
    enable_fallback: bool = True


def _candidate_paths() -> tuple[Path, Path]:
    return (Path("cubesync.json"), Path("config/cubesync.json"))


def _read_section(path: Path) -> Dict[str, Any]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        LOGGER.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}
    section = raw.get("realtime") if isinstance(raw, dict) else None
    if not isinstance(section, dict):
        return {}
    return section


def _merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides() -> Dict[str, Dict[str, Any]]:
    persistent: Dict[str, Any] = {}
    polling: Dict[str, Any] = {}
    ws_url = os.getenv("CUBESYNC_WS_URL")
    if ws_url:
        persistent["server_url"] = ws_url
    poll_url = os.getenv("CUBESYNC_POLL_URL")
    if poll_url:
        polling["server_url"] = poll_url
    debug = os.getenv("CUBESYNC_DEBUG")
    if debug is not None:
        enabled = debug.strip().lower() in _TRUTHY
        persistent["debug"] = enabled
        polling["debug"] = enabled
    return {"persistent": persistent, "polling": polling}


def load_realtime_config(path: Optional[Path | str] = None) -> RealtimeClientConfig:
    """Build the effective config from JSON files and ``CUBESYNC_*`` variables.

    With an explicit ``path`` only that file is read; otherwise the
    ``realtime`` sections of ``cubesync.json`` and ``config/cubesync.json``
    are layered in that order. Environment variables win over files.
    """
    data: Dict[str, Any] = {}
    candidates = (Path(path),) if path is not None else _candidate_paths()
    for candidate in candidates:
        if not candidate.exists():
            continue
        data = _merge(data, _read_section(candidate))
    config = RealtimeClientConfig.model_validate(data)

    overrides = _env_overrides()
    if overrides["persistent"]:
        config.persistent = config.persistent.model_copy(update=overrides["persistent"])
    if overrides["polling"]:
        config.polling = config.polling.model_copy(update=overrides["polling"])
    return config


__all__ = [
    "DEFAULT_POLL_URL",
    "DEFAULT_WS_URL",
    "PersistentChannelConfig",
    "PollingChannelConfig",
    "RealtimeClientConfig",
    "load_realtime_config",
]
