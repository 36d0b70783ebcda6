"""
Wire events exchanged over the collaboration socket.

Every frame is ``{"event": <name>, "data": {...}}``. Inbound event kinds map to
a pydantic model each; anything else is a protocol error.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Type

from pydantic import ConfigDict, Field, ValidationError, field_validator

from liveroom.exceptions import ProtocolError
from .base import CamelModel
from .chat import MessageType


# Client -> server
JOIN_ROOM = "joinRoom"
LEAVE_ROOM = "leaveRoom"
CODE_CHANGE = "code-change"
NOTE_CHANGE = "note-change"
DRAW_EVENT = "draw-event"
CHAT_MESSAGE = "chat-message"
PRESENCE_UPDATE = "presence-update"
TYPING_START = "typing-start"
TYPING_STOP = "typing-stop"
PING = "ping"

# Server -> client
ROOM_JOINED = "roomJoined"
CHAT_HISTORY = "chatHistory"
USER_JOINED = "userJoined"
USER_LEFT = "userLeft"
USER_DISCONNECTED = "userDisconnected"
CODE_CHANGED = "code-changed"
NOTE_CHANGED = "note-changed"
DRAWING_UPDATED = "drawing-updated"
PRESENCE_UPDATED = "presence-updated"
PONG = "pong"
ERROR = "error"

# Outbound kinds that may be dropped or coalesced under backpressure
LOSSY_EVENTS = frozenset({PRESENCE_UPDATED, TYPING_START, TYPING_STOP, PING})


class InboundModel(CamelModel):
    model_config = ConfigDict(extra="ignore")


class JoinRoom(InboundModel):
    room_id: Optional[str] = Field(None, min_length=1, max_length=100)
    username: str = Field(..., min_length=1, max_length=50)
    preferences: Dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = Field(None, min_length=1, max_length=200)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        return value.strip()


class LeaveRoom(InboundModel):
    pass


class CodeChange(InboundModel):
    content: str
    language: Optional[str] = Field(None, min_length=1, max_length=40)
    cursor_position: Optional[Any] = None
    action_type: Optional[str] = Field(None, max_length=40)
    lines_changed: Optional[int] = None


class NoteChange(InboundModel):
    content: str
    action_type: Optional[str] = Field(None, max_length=40)
    words_changed: Optional[int] = None


class DrawEvent(InboundModel):
    drawing_data: Any
    action: Optional[str] = Field(None, max_length=40)
    action_type: Optional[str] = Field(None, max_length=40)
    shape_type: Optional[str] = Field(None, max_length=40)


class ChatMessage(InboundModel):
    message: str
    message_type: MessageType = MessageType.TEXT
    id: Optional[str] = Field(None, min_length=1, max_length=100)

    @field_validator("message")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message cannot be empty")
        return value


class CursorPosition(CamelModel):
    x: float
    y: float


class PresenceUpdate(InboundModel):
    cursor_position: Optional[CursorPosition] = None
    is_active: bool = True


class TypingStart(InboundModel):
    pass


class TypingStop(InboundModel):
    pass


class Ping(InboundModel):
    pass


INBOUND_EVENTS: Dict[str, Type[InboundModel]] = {
    JOIN_ROOM: JoinRoom,
    LEAVE_ROOM: LeaveRoom,
    CODE_CHANGE: CodeChange,
    NOTE_CHANGE: NoteChange,
    DRAW_EVENT: DrawEvent,
    CHAT_MESSAGE: ChatMessage,
    PRESENCE_UPDATE: PresenceUpdate,
    TYPING_START: TypingStart,
    TYPING_STOP: TypingStop,
    PING: Ping,
}


@dataclass
class InboundEvent:
    name: str
    payload: InboundModel


def parse_frame(raw: str) -> InboundEvent:
    """Decode one text frame into a typed inbound event."""
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        raise ProtocolError("Invalid JSON format")
    if not isinstance(frame, dict):
        raise ProtocolError("Frame must be an object")

    name = frame.get("event")
    if not isinstance(name, str):
        raise ProtocolError("Frame is missing an event name")
    model = INBOUND_EVENTS.get(name)
    if model is None:
        raise ProtocolError(f"Unknown event: {name}")

    data = frame.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ProtocolError(f"{name}: data must be an object")
    try:
        payload = model.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        where = ".".join(str(part) for part in first.get("loc", ())) or "data"
        raise ProtocolError(f"{name}: invalid {where}: {first.get('msg')}")
    return InboundEvent(name=name, payload=payload)


def encode_frame(event: str, data: Any) -> str:
    return json.dumps({"event": event, "data": data}, separators=(",", ":"), ensure_ascii=False)
