"""
Namespaced session token shared by all clients in the process.

The token lives in one JSON file under the runtime config directory. Reads
tolerate a missing or corrupt file; writes that fail leave the value in memory
so callers keep working for the rest of the process.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from cubesync.config.runtime_paths import credentials_file

from .errors import ResourceError

LOGGER = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "cubesync"


class CredentialStore:
    def __init__(
        self, path: Optional[Path | str] = None, *, namespace: str = DEFAULT_NAMESPACE
    ) -> None:
        self._path = Path(path) if path is not None else None
        self.namespace = namespace
        self._memory: Dict[str, Optional[str]] = {}

    @property
    def key(self) -> str:
        return f"{self.namespace}.session_token"

    @property
    def path(self) -> Path:
        if self._path is None:
            try:
                self._path = credentials_file()
            except RuntimeError as exc:
                raise ResourceError(str(exc)) from exc
        return self._path

    # ------------------------------------------------------------------ API
    def get_token(self) -> Optional[str]:
        if self.key in self._memory:
            return self._memory[self.key]
        value = self._load().get(self.key)
        return value if isinstance(value, str) and value else None

    def set_token(self, token: str) -> None:
        if not isinstance(token, str) or not token:
            raise ValueError("token must be a non-empty string")
        self._store(token)

    def clear_token(self) -> None:
        self._store(None)

    # ------------------------------------------------------------------ Internal
    def _load(self) -> Dict[str, Any]:
        try:
            path = self.path
        except ResourceError as exc:
            LOGGER.debug("Credential storage unavailable: %s", exc)
            return {}
        try:
            with open(path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            LOGGER.debug("Credential file %s unreadable: %s", path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _store(self, token: Optional[str]) -> None:
        try:
            self._write(token)
        except ResourceError as exc:
            LOGGER.warning("Credential storage unavailable, keeping token in memory: %s", exc)
            self._memory[self.key] = token
        else:
            self._memory.pop(self.key, None)

    def _write(self, token: Optional[str]) -> None:
        data = self._load()
        if token is None:
            data.pop(self.key, None)
        else:
            data[self.key] = token
        target = self.path
        tmp = target.with_suffix(target.suffix + ".tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
            os.replace(tmp, target)
        except OSError as exc:
            raise ResourceError(str(exc)) from exc


__all__ = ["CredentialStore", "DEFAULT_NAMESPACE"]
