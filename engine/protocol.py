"""
Controller <-> worker message protocol.

Two closed unions of frozen dataclasses: Command (host -> worker) and Event
(worker -> host). Every message carries the request_id of the command that
caused it so the host can discard events from stale requests.

encode()/decode() map messages onto the {type, payload} envelope used on the
wire; the correlation id travels in an extra "id" key.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Union

Role = Literal["user", "assistant"]

ROLES = ("user", "assistant")

NOT_READY = "not-ready"
GENERATION_FAILED = "generation-failed"


class ProtocolError(ValueError):
    """Raised when an envelope cannot be decoded into a protocol message."""


@dataclass(frozen=True)
class ContextMessage:
    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LoadCommand:
    request_id: int = 0


@dataclass(frozen=True)
class ChatCommand:
    history: tuple[ContextMessage, ...] = ()
    request_id: int = 0


@dataclass(frozen=True)
class ResetCommand:
    request_id: int = 0


Command = Union[LoadCommand, ChatCommand, ResetCommand]


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LoadProgressEvent:
    text: str
    progress: float
    request_id: int = 0


@dataclass(frozen=True)
class LoadCompleteEvent:
    request_id: int = 0


@dataclass(frozen=True)
class LoadErrorEvent:
    message: str
    request_id: int = 0


@dataclass(frozen=True)
class ChatChunkEvent:
    text: str
    request_id: int = 0


@dataclass(frozen=True)
class ChatCompleteEvent:
    request_id: int = 0


@dataclass(frozen=True)
class ChatErrorEvent:
    message: str
    code: str = GENERATION_FAILED
    request_id: int = 0


@dataclass(frozen=True)
class ResetCompleteEvent:
    request_id: int = 0


Event = Union[
    LoadProgressEvent,
    LoadCompleteEvent,
    LoadErrorEvent,
    ChatChunkEvent,
    ChatCompleteEvent,
    ChatErrorEvent,
    ResetCompleteEvent,
]

TERMINAL_EVENTS = (
    LoadCompleteEvent,
    LoadErrorEvent,
    ChatCompleteEvent,
    ChatErrorEvent,
    ResetCompleteEvent,
)

MESSAGE_TYPES: dict[type, str] = {
    LoadCommand: "load",
    ChatCommand: "chat",
    ResetCommand: "reset",
    LoadProgressEvent: "load-progress",
    LoadCompleteEvent: "load-complete",
    LoadErrorEvent: "load-error",
    ChatChunkEvent: "chat-chunk",
    ChatCompleteEvent: "chat-complete",
    ChatErrorEvent: "chat-error",
    ResetCompleteEvent: "reset-complete",
}


def is_terminal(event: Event) -> bool:
    return isinstance(event, TERMINAL_EVENTS)


def make_context(history: Any) -> tuple[ContextMessage, ...]:
    """Build a validated, immutable context tuple from dicts or ContextMessages."""
    if not isinstance(history, (list, tuple)):
        raise ProtocolError("chat history must be a list")
    messages: list[ContextMessage] = []
    for idx, item in enumerate(history):
        if isinstance(item, ContextMessage):
            messages.append(item)
            continue
        if not isinstance(item, dict):
            raise ProtocolError(f"history[{idx}] is not an object")
        role = item.get("role")
        content = item.get("content")
        if role not in ROLES:
            raise ProtocolError(f"history[{idx}] has invalid role: {role!r}")
        if not isinstance(content, str):
            raise ProtocolError(f"history[{idx}] content must be a string")
        messages.append(ContextMessage(role=role, content=content))
    return tuple(messages)


# ---------------------------------------------------------------------------
# Wire codec
# ---------------------------------------------------------------------------

def encode(message: Command | Event) -> dict[str, Any]:
    msg_type = MESSAGE_TYPES.get(type(message))
    if msg_type is None:
        raise ProtocolError(f"not a protocol message: {message!r}")

    envelope: dict[str, Any] = {"type": msg_type, "id": message.request_id}
    if isinstance(message, ChatCommand):
        envelope["payload"] = {"history": [m.to_dict() for m in message.history]}
    elif isinstance(message, LoadProgressEvent):
        envelope["payload"] = {"text": message.text, "progress": message.progress}
    elif isinstance(message, (LoadErrorEvent, ChatErrorEvent)):
        envelope["payload"] = message.message
        if isinstance(message, ChatErrorEvent):
            envelope["code"] = message.code
    elif isinstance(message, ChatChunkEvent):
        envelope["payload"] = message.text
    return envelope


def _require_str(payload: Any, msg_type: str) -> str:
    if not isinstance(payload, str):
        raise ProtocolError(f"{msg_type} payload must be a string")
    return payload


def decode(envelope: Any) -> Command | Event:
    if not isinstance(envelope, dict):
        raise ProtocolError("envelope must be an object")
    msg_type = envelope.get("type")
    payload = envelope.get("payload")
    request_id = envelope.get("id", 0)
    if not isinstance(request_id, int) or isinstance(request_id, bool):
        raise ProtocolError(f"invalid correlation id: {request_id!r}")

    if msg_type == "load":
        return LoadCommand(request_id=request_id)
    if msg_type == "reset":
        return ResetCommand(request_id=request_id)
    if msg_type == "chat":
        if not isinstance(payload, dict):
            raise ProtocolError("chat payload must be an object")
        return ChatCommand(history=make_context(payload.get("history")), request_id=request_id)
    if msg_type == "load-progress":
        if not isinstance(payload, dict):
            raise ProtocolError("load-progress payload must be an object")
        progress = payload.get("progress", 0.0)
        if not isinstance(progress, (int, float)) or isinstance(progress, bool):
            raise ProtocolError("load-progress progress must be a number")
        return LoadProgressEvent(
            text=str(payload.get("text", "")),
            progress=float(progress),
            request_id=request_id,
        )
    if msg_type == "load-complete":
        return LoadCompleteEvent(request_id=request_id)
    if msg_type == "load-error":
        return LoadErrorEvent(message=_require_str(payload, msg_type), request_id=request_id)
    if msg_type == "chat-chunk":
        return ChatChunkEvent(text=_require_str(payload, msg_type), request_id=request_id)
    if msg_type == "chat-complete":
        return ChatCompleteEvent(request_id=request_id)
    if msg_type == "chat-error":
        code = envelope.get("code", GENERATION_FAILED)
        return ChatErrorEvent(
            message=_require_str(payload, msg_type),
            code=code if isinstance(code, str) else GENERATION_FAILED,
            request_id=request_id,
        )
    if msg_type == "reset-complete":
        return ResetCompleteEvent(request_id=request_id)
    raise ProtocolError(f"unknown message type: {msg_type!r}")
