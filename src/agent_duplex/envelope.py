"""
The event envelope: the typed unit exchanged in both directions.

An envelope is created where the event is produced (a model token, a tool
dispatch, a control signal) and never changes afterwards. ``payload`` and
``metadata`` are exposed as read-only mappings.

Wire form (outbound)::

    {"type": "content", "id": "...", "timestamp": 1700000000.0,
     "payload": {"data": "Hel", "role": "assistant"},
     "metadata": {"turn_id": "..."}}

Inbound messages may use the same nested form or the flat form
``{"type": "chat", "content": "2+2?"}``.
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from agent_duplex.errors import AgentDuplexError, ErrorCode, ProtocolError

# Event type constants
CHAT = "chat"
CONTENT = "content"
TOOL_USE = "tool_use"
TOOL_RESULT = "tool_result"
PROGRESS = "progress"
CONTROL = "control"
ERROR = "error"
END = "end"
PING = "ping"
PONG = "pong"

INBOUND_TYPES = frozenset({CHAT, CONTROL, TOOL_RESULT, PING, PONG})
OUTBOUND_TYPES = frozenset(
    {CONTENT, TOOL_USE, TOOL_RESULT, PROGRESS, CONTROL, ERROR, END, PING, PONG}
)

CONTROL_ACTIONS = frozenset({"cancel", "pause", "resume"})

# End reasons
END_COMPLETE = "complete"
END_CANCELLED = "cancelled"
END_ERROR = "error"
END_AWAITING_INPUT = "awaiting_input"

_RESERVED_KEYS = ("type", "id", "timestamp", "payload", "metadata")


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Envelope:
    """An immutable, typed event."""

    type: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    timestamp: float = field(default_factory=time.time)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def with_metadata(self, **extra: Any) -> Envelope:
        """Return a copy with extra metadata. The original is untouched."""
        return Envelope(
            type=self.type,
            payload=self.payload,
            id=self.id,
            timestamp=self.timestamp,
            metadata={**self.metadata, **extra},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "timestamp": self.timestamp,
            "payload": dict(self.payload),
            "metadata": dict(self.metadata),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


# ---------------------------------------------------------------------------
# Outbound constructors
# ---------------------------------------------------------------------------


def content(data: str, role: str = "assistant") -> Envelope:
    return Envelope(CONTENT, {"data": data, "role": role})


def tool_use(tool_name: str, tool_id: str, input: Mapping[str, Any]) -> Envelope:
    return Envelope(TOOL_USE, {"tool_name": tool_name, "tool_id": tool_id, "input": dict(input)})


def tool_result(tool_id: str, output: list[dict[str, Any]], status: str) -> Envelope:
    return Envelope(TOOL_RESULT, {"tool_id": tool_id, "output": output, "status": status})


def progress(tool_id: str | None, data: Any, **extra: Any) -> Envelope:
    return Envelope(PROGRESS, {"tool_id": tool_id, "data": data, **extra})


def retry(attempt: int, max_attempts: int, reason: str, delay: float = 0.0) -> Envelope:
    """Progress notification that a model call is being retried."""
    return progress(
        None,
        f"Retrying model call ({attempt}/{max_attempts}): {reason}",
        kind="retry",
        attempt=attempt,
        max_attempts=max_attempts,
        delay=delay,
    )


def error(code: ErrorCode, message: str, recoverable: bool) -> Envelope:
    return Envelope(
        ERROR,
        {"code": int(code), "name": code.name, "message": message, "recoverable": recoverable},
    )


def error_from(exc: AgentDuplexError) -> Envelope:
    return Envelope(ERROR, exc.to_payload())


def end(reason: str) -> Envelope:
    return Envelope(END, {"reason": reason})


def control(action: str, **fields: Any) -> Envelope:
    return Envelope(CONTROL, {"action": action, **fields})


def ping() -> Envelope:
    return Envelope(PING)


def pong() -> Envelope:
    return Envelope(PONG)


# ---------------------------------------------------------------------------
# Inbound decoding
# ---------------------------------------------------------------------------


def decode_inbound(raw: str | bytes | Mapping[str, Any], max_size: int | None = None) -> Envelope:
    """
    Parse and validate an inbound message.

    Raises:
        ProtocolError: with a protocol-range code describing the problem.
    """
    if isinstance(raw, (str, bytes)):
        size = len(raw.encode("utf-8")) if isinstance(raw, str) else len(raw)
        if max_size is not None and size > max_size:
            raise ProtocolError(
                f"Message of {size} bytes exceeds limit of {max_size}",
                ErrorCode.MESSAGE_TOO_LARGE,
            )
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Invalid JSON: {e}") from e
    else:
        data = raw
        if max_size is not None:
            size = len(json.dumps(data, default=str).encode("utf-8"))
            if size > max_size:
                raise ProtocolError(
                    f"Message of {size} bytes exceeds limit of {max_size}",
                    ErrorCode.MESSAGE_TOO_LARGE,
                )

    if not isinstance(data, Mapping):
        raise ProtocolError("Envelope must be a JSON object")

    kind = data.get("type")
    if not isinstance(kind, str) or not kind:
        raise ProtocolError("Envelope is missing 'type'")
    if kind not in INBOUND_TYPES:
        raise ProtocolError(f"Unknown event type: {kind}", ErrorCode.UNKNOWN_EVENT_TYPE)

    nested = data.get("payload")
    if nested is not None and not isinstance(nested, Mapping):
        raise ProtocolError("'payload' must be an object")
    payload = dict(nested or {})
    payload.update({k: v for k, v in data.items() if k not in _RESERVED_KEYS})

    _validate_payload(kind, payload)

    metadata = data.get("metadata") or {}
    if not isinstance(metadata, Mapping):
        raise ProtocolError("'metadata' must be an object")

    kwargs: dict[str, Any] = {"type": kind, "payload": payload, "metadata": metadata}
    if isinstance(data.get("id"), str):
        kwargs["id"] = data["id"]
    return Envelope(**kwargs)


def _validate_payload(kind: str, payload: dict[str, Any]) -> None:
    if kind == CHAT:
        text = payload.get("content")
        if not isinstance(text, str) or not text.strip():
            raise ProtocolError("Chat content must be a non-empty string", ErrorCode.EMPTY_MESSAGE)
        attachments = payload.get("attachments")
        if attachments is not None and not isinstance(attachments, list):
            raise ProtocolError("'attachments' must be a list")
    elif kind == CONTROL:
        action = payload.get("action")
        if action not in CONTROL_ACTIONS:
            raise ProtocolError(
                f"Unknown control action: {action!r}", ErrorCode.INVALID_CONTROL
            )
    elif kind == TOOL_RESULT:
        if not isinstance(payload.get("tool_id"), str) or not payload["tool_id"]:
            raise ProtocolError("tool_result requires 'tool_id'")
        status = payload.get("status", "success")
        if status not in ("success", "error"):
            raise ProtocolError("tool_result 'status' must be 'success' or 'error'")
