"""
Wire messages for the collaboration channel.

Every frame exchanged with the session server is a JSON object shaped
``{"id", "type", "timestamp", "payload"}``. The helpers here build the
client-originated kinds, and decode inbound frames without ever raising:
malformed input yields ``None`` and the caller drops it.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .errors import ProtocolError

JOIN_SESSION = "join_session"
LEAVE_SESSION = "leave_session"
SYNC_ACTION = "sync_action"
FULL_SYNC = "full_sync"
PRESENCE_UPDATE = "presence_update"
HEARTBEAT = "heartbeat"
ERROR = "error"
ACK = "ack"

KNOWN_MESSAGE_TYPES: frozenset[str] = frozenset(
    {
        JOIN_SESSION,
        LEAVE_SESSION,
        SYNC_ACTION,
        FULL_SYNC,
        PRESENCE_UPDATE,
        HEARTBEAT,
        ERROR,
        ACK,
    }
)

LEAVE_REASONS: frozenset[str] = frozenset({"manual", "timeout", "kicked"})
PRESENCE_STATUSES: frozenset[str] = frozenset({"online", "away", "offline"})


@dataclass
class Message:
    """One protocol frame. ``id`` is the correlation key for replies."""

    id: str
    type: str
    timestamp: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }

    @property
    def is_known_type(self) -> bool:
        return self.type in KNOWN_MESSAGE_TYPES


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


def generate_message_id() -> str:
    return f"msg-{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"


def _require_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value


def _build(kind: str, payload: Dict[str, Any]) -> Message:
    return Message(
        id=generate_message_id(),
        type=kind,
        timestamp=utc_now_iso(),
        payload=_compact(payload),
    )


# ------------------------------------------------------------------ Decoding
def decode_message(data: Any) -> Message:
    """Validate an already-decoded mapping, raising ``ProtocolError`` on bad shape."""
    if not isinstance(data, Mapping):
        raise ProtocolError(f"expected a JSON object, got {type(data).__name__}")
    fields = {}
    for name in ("id", "type", "timestamp"):
        value = data.get(name)
        if not isinstance(value, str) or not value:
            raise ProtocolError(f"message field {name!r} missing or empty")
        fields[name] = value
    payload = data.get("payload")
    if payload is None:
        payload = {}
    elif not isinstance(payload, dict):
        raise ProtocolError("message payload must be an object")
    return Message(payload=payload, **fields)


def message_from_dict(data: Any) -> Optional[Message]:
    try:
        return decode_message(data)
    except ProtocolError:
        return None


def parse_message(raw: Any) -> Optional[Message]:
    """Decode a raw frame. Never raises."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(raw, str):
        return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError, RecursionError):
        return None
    return message_from_dict(data)


def serialize_message(message: Message) -> str:
    return _dumps(message.to_dict())


def is_heartbeat_reply(message: Message) -> bool:
    return message.type == HEARTBEAT and "serverTime" in message.payload


# ------------------------------------------------------------------ Builders
def create_join_session_message(
    session_code: str,
    participant_name: str,
    participant_id: Optional[str] = None,
) -> Message:
    return _build(
        JOIN_SESSION,
        {
            "sessionCode": _require_text("session_code", session_code),
            "participantName": _require_text("participant_name", participant_name),
            "participantId": participant_id,
        },
    )


def create_leave_session_message(
    session_id: str,
    participant_id: str,
    reason: Optional[str] = None,
) -> Message:
    if reason is not None and reason not in LEAVE_REASONS:
        raise ValueError(f"unknown leave reason: {reason!r}")
    return _build(
        LEAVE_SESSION,
        {
            "sessionId": _require_text("session_id", session_id),
            "participantId": _require_text("participant_id", participant_id),
            "reason": reason,
        },
    )


def create_sync_action_message(action: Mapping[str, Any], session_id: str) -> Message:
    if not isinstance(action, Mapping):
        raise ValueError("action must be a mapping")
    return _build(
        SYNC_ACTION,
        {
            "action": dict(action),
            "sessionId": _require_text("session_id", session_id),
        },
    )


def create_full_sync_request_message(session_id: str) -> Message:
    return _build(
        FULL_SYNC,
        {
            "sessionId": _require_text("session_id", session_id),
            "requestType": "request",
        },
    )


def _validate_cursor(cursor: Mapping[str, Any]) -> Dict[str, Any]:
    if not isinstance(cursor, Mapping):
        raise ValueError("cursor must be a mapping")
    result: Dict[str, Any] = {}
    for axis in ("x", "y", "z"):
        value = cursor.get(axis)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"cursor.{axis} must be a number")
        result[axis] = value
    selected = cursor.get("selectedCubeId")
    if selected is not None:
        result["selectedCubeId"] = str(selected)
    return result


def create_presence_update_message(
    session_id: str,
    participant_id: str,
    status: Optional[str] = None,
    cursor: Optional[Mapping[str, Any]] = None,
) -> Message:
    if status is not None and status not in PRESENCE_STATUSES:
        raise ValueError(f"unknown presence status: {status!r}")
    return _build(
        PRESENCE_UPDATE,
        {
            "sessionId": _require_text("session_id", session_id),
            "participantId": _require_text("participant_id", participant_id),
            "status": status,
            "cursor": _validate_cursor(cursor) if cursor is not None else None,
        },
    )


def create_heartbeat_message(
    session_id: Optional[str] = None,
    participant_id: Optional[str] = None,
) -> Message:
    return _build(
        HEARTBEAT,
        {
            "clientTime": utc_now_iso(),
            "sessionId": session_id,
            "participantId": participant_id,
        },
    )


__all__ = [
    "ACK",
    "ERROR",
    "FULL_SYNC",
    "HEARTBEAT",
    "JOIN_SESSION",
    "KNOWN_MESSAGE_TYPES",
    "LEAVE_SESSION",
    "Message",
    "PRESENCE_UPDATE",
    "SYNC_ACTION",
    "create_full_sync_request_message",
    "create_heartbeat_message",
    "create_join_session_message",
    "create_leave_session_message",
    "create_presence_update_message",
    "create_sync_action_message",
    "decode_message",
    "generate_message_id",
    "is_heartbeat_reply",
    "message_from_dict",
    "parse_message",
    "serialize_message",
    "utc_now_iso",
]
