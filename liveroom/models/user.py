from pydantic import Field
from typing import Any, Dict, Optional

from .base import CamelModel


class UserStats(CamelModel):
    rooms_joined: int = 0
    messages_sent: int = 0
    last_room_joined_at: Optional[int] = None


class User(CamelModel):
    user_id: str
    username: str = Field(..., min_length=1, max_length=50)
    session_id: str
    preferences: Dict[str, Any] = Field(default_factory=dict)
    current_room: Optional[str] = None
    stats: UserStats = Field(default_factory=UserStats)
    created_at: int = 0
    last_seen: int = 0


class UserCreate(CamelModel):
    username: str = Field(..., min_length=1, max_length=50)
    session_id: Optional[str] = Field(None, min_length=1, max_length=200)
    preferences: Dict[str, Any] = Field(default_factory=dict)


class UserUpdate(CamelModel):
    username: Optional[str] = Field(None, min_length=1, max_length=50)
    preferences: Optional[Dict[str, Any]] = None


class UserResponse(CamelModel):
    user_id: str
    username: str
    session_id: str
    preferences: Dict[str, Any] = Field(default_factory=dict)
    current_room: Optional[str] = None
    stats: UserStats = Field(default_factory=UserStats)
    created_at: int
    last_seen: int
