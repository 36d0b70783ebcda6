from pydantic import Field
from typing import Any, Dict, Optional
from enum import Enum

from .base import CamelModel


class MessageType(str, Enum):
    TEXT = "text"
    ANNOUNCEMENT = "announcement"
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"
    SYSTEM = "system"


class Message(CamelModel):
    id: str
    seq: int
    user_id: str
    username: str
    text: str
    message_type: MessageType = MessageType.TEXT
    timestamp: int
    color: Optional[str] = None

    def to_wire(self, **kwargs) -> dict:
        payload = super().to_wire(**kwargs)
        # older clients read ``message`` rather than ``text``
        payload["message"] = self.text
        return payload


class ActivityType(str, Enum):
    MESSAGE = "message"
    JOIN = "join"
    LEAVE = "leave"
    TYPING = "typing"
    DRAWING = "drawing"
    CODE = "code"
    NOTES = "notes"
    SYSTEM = "system"


class ActivityEntry(CamelModel):
    id: str
    seq: int
    type: ActivityType
    description: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int
    user_id: Optional[str] = None
    username: Optional[str] = None
