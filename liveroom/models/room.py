from pydantic import Field
from typing import Any, Dict, List, Optional

from .base import CamelModel
from .chat import ActivityEntry, Message


class RoomSettings(CamelModel):
    allow_code_editing: bool = True
    allow_notes_editing: bool = True
    allow_canvas_drawing: bool = True
    allow_chat: bool = True
    allow_anonymous: bool = True
    is_public: bool = True


class CodeState(CamelModel):
    text: str = ""
    language: str = "javascript"


class Room(CamelModel):
    room_id: str
    room_name: str = "Untitled Room"
    description: str = ""
    created_by: str = ""
    created_at: int = 0
    max_participants: int = Field(50, ge=2, le=100)
    settings: RoomSettings = Field(default_factory=RoomSettings)
    code: CodeState = Field(default_factory=CodeState)
    notes: str = ""
    canvas: Any = Field(default_factory=dict)
    chat: List[Message] = Field(default_factory=list)
    activities: List[ActivityEntry] = Field(default_factory=list)
    participants_ever: List[str] = Field(default_factory=list)
    last_activity_at: int = 0
    active: bool = True
    version: int = 0


class RoomCreate(CamelModel):
    room_id: Optional[str] = Field(None, min_length=1, max_length=100)
    room_name: str = Field("Untitled Room", min_length=1, max_length=100)
    description: str = Field("", max_length=500)
    created_by: str = Field("system", min_length=1, max_length=50)
    max_participants: int = Field(50, ge=2, le=100)
    settings: RoomSettings = Field(default_factory=RoomSettings)


class RoomUpdate(CamelModel):
    room_name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    max_participants: Optional[int] = Field(None, ge=2, le=100)
    # partial: only the flags present are changed
    settings: Optional[Dict[str, bool]] = None


class RoomSummary(CamelModel):
    room_id: str
    room_name: str
    description: str
    created_by: str
    created_at: int
    max_participants: int
    current_participants: int = 0
    settings: RoomSettings
    last_activity_at: int
    active: bool

    @classmethod
    def from_room(cls, room: Room, current_participants: int = 0) -> "RoomSummary":
        return cls(
            room_id=room.room_id,
            room_name=room.room_name,
            description=room.description,
            created_by=room.created_by,
            created_at=room.created_at,
            max_participants=room.max_participants,
            current_participants=current_participants,
            settings=room.settings,
            last_activity_at=room.last_activity_at,
            active=room.active,
        )


class RoomPage(CamelModel):
    rooms: List[Room]
    page: int
    limit: int
    total: int


class RoomDetail(RoomSummary):
    participants: List[Dict[str, Any]] = Field(default_factory=list)


class Pagination(CamelModel):
    current_page: int
    total_pages: int
    total_rooms: int
    has_next_page: bool
    has_prev_page: bool


class RoomList(CamelModel):
    rooms: List[RoomSummary]
    pagination: Pagination
