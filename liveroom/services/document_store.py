"""
Durable storage gateway for Room and User records.

Room records carry a monotonic ``version`` used for optimistic concurrency.
Chat and activity histories are bounded arrays that only grow through the
idempotent append operations; ``save_room`` never touches them.
"""

import abc
import asyncio
import logging
from typing import Dict, List, Optional

from liveroom.models import ActivityEntry, Message, Room, RoomPage, User

logger = logging.getLogger(__name__)

APPEND_ONLY_FIELDS = {"chat", "activities"}


class StoreError(Exception):
    pass


class RoomNotFound(StoreError):
    pass


class RoomExists(StoreError):
    pass


class UserNotFound(StoreError):
    pass


class UserExists(StoreError):
    """The session id is already bound to a user."""


class VersionConflict(StoreError):
    def __init__(self, room_id: str, expected: int, actual: int):
        self.room_id = room_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Room {room_id}: expected version {expected}, found {actual}")


class StoreUnavailable(StoreError):
    """Transient I/O failure; callers may retry."""


class DocumentStore(abc.ABC):
    def __init__(self, chat_cap: int = 1000, activity_cap: int = 500):
        self.chat_cap = chat_cap
        self.activity_cap = activity_cap

    # Room Operations
    @abc.abstractmethod
    async def load_room(self, room_id: str) -> Room:
        ...

    @abc.abstractmethod
    async def create_room(self, room: Room) -> Room:
        ...

    @abc.abstractmethod
    async def save_room(self, room: Room, expected_version: int) -> int:
        """Write every durable field except chat and activities; return the new version."""

    @abc.abstractmethod
    async def append_chat(self, room_id: str, message: Message) -> None:
        ...

    @abc.abstractmethod
    async def append_activity(self, room_id: str, entry: ActivityEntry) -> None:
        ...

    @abc.abstractmethod
    async def list_rooms(
        self,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
        active_only: bool = True,
    ) -> RoomPage:
        ...

    @abc.abstractmethod
    async def update_room_fields(self, room_id: str, fields: dict) -> Room:
        ...

    @abc.abstractmethod
    async def delete_room(self, room_id: str) -> None:
        ...

    @abc.abstractmethod
    async def deactivate_idle_rooms(self, cutoff_ms: int, keep: List[str]) -> int:
        """Mark rooms idle since ``cutoff_ms`` inactive, skipping ``keep``."""

    # User Operations
    @abc.abstractmethod
    async def create_user(self, user: User) -> User:
        ...

    @abc.abstractmethod
    async def load_user(self, user_id: str) -> User:
        ...

    @abc.abstractmethod
    async def load_user_by_session(self, session_id: str) -> Optional[User]:
        ...

    @abc.abstractmethod
    async def update_user(self, user: User) -> User:
        ...

    async def close(self) -> None:
        pass


def _matches(room: Room, search: Optional[str]) -> bool:
    if not search:
        return True
    needle = search.lower()
    return needle in room.room_name.lower() or needle in room.description.lower()


class MemoryDocumentStore(DocumentStore):
    """In-process store. Records are copied on the way in and out."""

    def __init__(self, chat_cap: int = 1000, activity_cap: int = 500):
        super().__init__(chat_cap, activity_cap)
        self._rooms: Dict[str, Room] = {}
        self._users: Dict[str, User] = {}
        self._sessions: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def load_room(self, room_id: str) -> Room:
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                raise RoomNotFound(room_id)
            return room.model_copy(deep=True)

    async def create_room(self, room: Room) -> Room:
        async with self._lock:
            if room.room_id in self._rooms:
                raise RoomExists(room.room_id)
            stored = room.model_copy(deep=True)
            stored.version = 1
            self._rooms[room.room_id] = stored
            return stored.model_copy(deep=True)

    async def save_room(self, room: Room, expected_version: int) -> int:
        async with self._lock:
            current = self._rooms.get(room.room_id)
            if current is None:
                raise RoomNotFound(room.room_id)
            if current.version != expected_version:
                raise VersionConflict(room.room_id, expected_version, current.version)
            updated = room.model_copy(
                deep=True,
                update={
                    "chat": current.chat,
                    "activities": current.activities,
                    "version": current.version + 1,
                },
            )
            self._rooms[room.room_id] = updated
            return updated.version

    async def append_chat(self, room_id: str, message: Message) -> None:
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                raise RoomNotFound(room_id)
            if any(existing.id == message.id for existing in room.chat):
                return
            room.chat.append(message.model_copy(deep=True))
            if len(room.chat) > self.chat_cap:
                del room.chat[: len(room.chat) - self.chat_cap]

    async def append_activity(self, room_id: str, entry: ActivityEntry) -> None:
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None:
                raise RoomNotFound(room_id)
            if any(existing.id == entry.id for existing in room.activities):
                return
            room.activities.append(entry.model_copy(deep=True))
            if len(room.activities) > self.activity_cap:
                del room.activities[: len(room.activities) - self.activity_cap]

    async def list_rooms(
        self,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
        active_only: bool = True,
    ) -> RoomPage:
        async with self._lock:
            rooms = [
                room for room in self._rooms.values()
                if (room.active or not active_only) and _matches(room, search)
            ]
        rooms.sort(key=lambda room: room.last_activity_at, reverse=True)
        start = (page - 1) * limit
        selected = [room.model_copy(deep=True) for room in rooms[start:start + limit]]
        return RoomPage(rooms=selected, page=page, limit=limit, total=len(rooms))

    async def update_room_fields(self, room_id: str, fields: dict) -> Room:
        async with self._lock:
            current = self._rooms.get(room_id)
            if current is None:
                raise RoomNotFound(room_id)
            fields = {k: v for k, v in fields.items() if k not in APPEND_ONLY_FIELDS}
            fields["version"] = current.version + 1
            updated = current.model_copy(deep=True, update=fields)
            self._rooms[room_id] = updated
            return updated.model_copy(deep=True)

    async def delete_room(self, room_id: str) -> None:
        async with self._lock:
            if self._rooms.pop(room_id, None) is None:
                raise RoomNotFound(room_id)

    async def deactivate_idle_rooms(self, cutoff_ms: int, keep: List[str]) -> int:
        count = 0
        async with self._lock:
            for room_id, room in list(self._rooms.items()):
                if room.active and room.last_activity_at < cutoff_ms and room_id not in keep:
                    self._rooms[room_id] = room.model_copy(
                        update={"active": False, "version": room.version + 1}
                    )
                    count += 1
        return count

    async def create_user(self, user: User) -> User:
        async with self._lock:
            if user.session_id in self._sessions:
                raise UserExists(user.session_id)
            self._users[user.user_id] = user.model_copy(deep=True)
            self._sessions[user.session_id] = user.user_id
            return user.model_copy(deep=True)

    async def load_user(self, user_id: str) -> User:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise UserNotFound(user_id)
            return user.model_copy(deep=True)

    async def load_user_by_session(self, session_id: str) -> Optional[User]:
        async with self._lock:
            user_id = self._sessions.get(session_id)
            if user_id is None:
                return None
            return self._users[user_id].model_copy(deep=True)

    async def update_user(self, user: User) -> User:
        async with self._lock:
            if user.user_id not in self._users:
                raise UserNotFound(user.user_id)
            self._users[user.user_id] = user.model_copy(deep=True)
            return user.model_copy(deep=True)
