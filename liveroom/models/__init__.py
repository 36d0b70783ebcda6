from .chat import Message, MessageType, ActivityEntry, ActivityType
from .room import (
    Room, RoomSettings, CodeState, RoomCreate, RoomUpdate, RoomSummary, RoomDetail, RoomPage, RoomList, Pagination,
)
from .user import User, UserCreate, UserUpdate, UserResponse, UserStats

__all__ = [
    "Message", "MessageType", "ActivityEntry", "ActivityType",
    "Room", "RoomSettings", "CodeState", "RoomCreate", "RoomUpdate", "RoomSummary", "RoomDetail", "RoomPage",
    "RoomList", "Pagination",
    "User", "UserCreate", "UserUpdate", "UserResponse", "UserStats",
]
