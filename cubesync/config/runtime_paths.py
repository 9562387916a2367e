"""
Runtime paths helpers for cubesync.

Mutable state (the credential file, logs) lives in OS-appropriate locations
resolved with ``platformdirs``. ``CUBESYNC_RUNTIME_ROOT`` redirects everything
under one portable directory, and the per-kind overrides win over both.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Iterable, Optional

from platformdirs import PlatformDirs

APP_NAME = os.getenv("CUBESYNC_APP_NAME", "cubesync")
APP_AUTHOR = os.getenv("CUBESYNC_APP_AUTHOR", "isocubic")


def _expand(path: Optional[str]) -> Optional[Path]:
    if not path:
        return None
    return Path(path).expanduser().resolve()


@dataclass(frozen=True)
class _RuntimeRoots:
    config: Path
    logs: Path


@lru_cache(maxsize=1)
def _runtime_roots() -> _RuntimeRoots:
    override_root = _expand(os.getenv("CUBESYNC_RUNTIME_ROOT"))
    if override_root:
        config = override_root / "config"
        logs = override_root / "logs"
    else:
        dirs = PlatformDirs(appname=APP_NAME, appauthor=APP_AUTHOR, roaming=False)
        config = Path(dirs.user_config_path)
        logs = Path(dirs.user_log_path)

    config = _expand(os.getenv("CUBESYNC_CONFIG_DIR")) or config
    logs = _expand(os.getenv("CUBESYNC_LOG_DIR")) or logs

    for root in (config, logs):
        if root.exists() and not root.is_dir():
            raise RuntimeError(
                f"Runtime path {root} exists but is not a directory. "
                "Remove or relocate the conflicting file and retry."
            )
    return _RuntimeRoots(config=config, logs=logs)


def reset_runtime_roots() -> None:
    """Forget cached roots so environment overrides are read again."""
    _runtime_roots.cache_clear()


def _join(base: Path, parts: Iterable[str | os.PathLike[str]]) -> Path:
    return base.joinpath(*[Path(p) for p in parts if p])


def config_dir(*parts: str | os.PathLike[str]) -> Path:
    return _join(_runtime_roots().config, parts or ())


def logs_dir(*parts: str | os.PathLike[str]) -> Path:
    return _join(_runtime_roots().logs, parts or ())


def credentials_file() -> Path:
    return config_dir("credentials.json")
