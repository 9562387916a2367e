from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cubesync.config.runtime_paths import reset_runtime_roots  # noqa: E402

_ENV_VARS = (
    "CUBESYNC_WS_URL",
    "CUBESYNC_POLL_URL",
    "CUBESYNC_DEBUG",
    "CUBESYNC_CONFIG_DIR",
    "CUBESYNC_LOG_DIR",
)


@pytest.fixture(autouse=True)
def runtime_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Point every runtime path at a throwaway directory."""
    root = tmp_path / "runtime"
    monkeypatch.setenv("CUBESYNC_RUNTIME_ROOT", str(root))
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_runtime_roots()
    yield root
    reset_runtime_roots()
