from __future__ import annotations

import json
import logging
from pathlib import Path

from cubesync.logging_config import (
    StructuredJsonFormatter,
    init_logging,
    reset_session_context,
    set_session_context,
)


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("cubesync.unit", logging.INFO, __file__, 1, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_json_with_session_and_extras():
    payload = json.loads(
        StructuredJsonFormatter().format(_record("hello", session_id="s1", attempt=2))
    )
    assert payload["message"] == "hello"
    assert payload["logger"] == "cubesync.unit"
    assert payload["session_id"] == "s1"
    assert payload["extra"] == {"attempt": 2}


def test_init_logging_writes_session_context(tmp_path: Path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        log_path = init_logging(tmp_path / "logs", level="DEBUG")
        token = set_session_context("s42")
        try:
            logging.getLogger("cubesync.unit").info("joined")
        finally:
            reset_session_context(token)
        for handler in root.handlers:
            handler.flush()
        lines = [json.loads(line) for line in log_path.read_text(encoding="utf-8").splitlines()]
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)

    assert log_path == (tmp_path / "logs" / "cubesync.log").resolve()
    entry = next(line for line in lines if line["message"] == "joined")
    assert entry["session_id"] == "s42"
