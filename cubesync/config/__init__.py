"""Configuration models and runtime locations for cubesync."""

from __future__ import annotations

from .realtime import (
    DEFAULT_POLL_URL,
    DEFAULT_WS_URL,
    PersistentChannelConfig,
    PollingChannelConfig,
    RealtimeClientConfig,
    load_realtime_config,
)

__all__ = [
    "DEFAULT_POLL_URL",
    "DEFAULT_WS_URL",
    "PersistentChannelConfig",
    "PollingChannelConfig",
    "RealtimeClientConfig",
    "load_realtime_config",
]
