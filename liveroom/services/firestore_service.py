from google.api_core import exceptions as google_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter
from google.oauth2 import service_account
from typing import List, Optional
import functools
import inspect
import logging

from liveroom.config import Settings
from liveroom.models import ActivityEntry, Message, Room, RoomPage, User
from liveroom.services.document_store import (
    APPEND_ONLY_FIELDS,
    DocumentStore,
    MemoryDocumentStore,
    RoomExists,
    RoomNotFound,
    StoreError,
    StoreUnavailable,
    UserExists,
    UserNotFound,
    VersionConflict,
)

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.Aborted,
    google_exceptions.InternalServerError,
    google_exceptions.TooManyRequests,
)


def _translate_errors(func):
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except TRANSIENT_ERRORS as exc:
            raise StoreUnavailable(str(exc)) from exc
    return wrapper


def _credentials(settings: Settings):
    """Service account key when configured, else default credentials (gcloud auth locally, Cloud Run in production)"""
    if not settings.google_application_credentials:
        return None
    return service_account.Credentials.from_service_account_file(settings.google_application_credentials)


def _room_doc(room: Room, exclude: Optional[set] = None) -> dict:
    return room.model_dump(by_alias=True, mode="json", exclude=exclude)


class FirestoreDocumentStore(DocumentStore):
    """
    One Firestore document per room (chat and activity arrays embedded and
    bounded) and one per user. Version checks and appends run in transactions.
    """

    def __init__(self, settings: Settings, client: Optional[firestore.AsyncClient] = None):
        super().__init__(settings.chat_ring_cap, settings.activity_ring_cap)
        self.db = client or firestore.AsyncClient(
            project=settings.google_project_id or None,
            credentials=_credentials(settings),
        )
        self.rooms_collection = self.db.collection(settings.firestore_collection_rooms)
        self.users_collection = self.db.collection(settings.firestore_collection_users)

    # Room Operations
    @_translate_errors
    async def load_room(self, room_id: str) -> Room:
        doc = await self.rooms_collection.document(room_id).get()
        if not doc.exists:
            raise RoomNotFound(room_id)
        return Room.model_validate(doc.to_dict())

    @_translate_errors
    async def create_room(self, room: Room) -> Room:
        stored = room.model_copy(update={"version": 1})
        try:
            await self.rooms_collection.document(room.room_id).create(_room_doc(stored))
        except google_exceptions.AlreadyExists as exc:
            raise RoomExists(room.room_id) from exc
        return stored

    @_translate_errors
    async def save_room(self, room: Room, expected_version: int) -> int:
        ref = self.rooms_collection.document(room.room_id)
        data = _room_doc(room, exclude=APPEND_ONLY_FIELDS)

        @firestore.async_transactional
        async def _save(transaction) -> int:
            doc = await ref.get(transaction=transaction)
            if not doc.exists:
                raise RoomNotFound(room.room_id)
            current = (doc.to_dict() or {}).get("version", 0)
            if current != expected_version:
                raise VersionConflict(room.room_id, expected_version, current)
            data["version"] = current + 1
            transaction.update(ref, data)
            return current + 1

        return await _save(self.db.transaction())

    async def _append(self, room_id: str, field: str, record: dict, cap: int) -> None:
        ref = self.rooms_collection.document(room_id)

        @firestore.async_transactional
        async def _push(transaction) -> None:
            doc = await ref.get(transaction=transaction)
            if not doc.exists:
                raise RoomNotFound(room_id)
            items = list((doc.to_dict() or {}).get(field) or [])
            if any(item.get("id") == record["id"] for item in items):
                return
            items.append(record)
            transaction.update(ref, {field: items[-cap:]})

        await _push(self.db.transaction())

    @_translate_errors
    async def append_chat(self, room_id: str, message: Message) -> None:
        record = message.model_dump(by_alias=True, mode="json")
        await self._append(room_id, "chat", record, self.chat_cap)

    @_translate_errors
    async def append_activity(self, room_id: str, entry: ActivityEntry) -> None:
        record = entry.model_dump(by_alias=True, mode="json")
        await self._append(room_id, "activities", record, self.activity_cap)

    @_translate_errors
    async def list_rooms(
        self,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
        active_only: bool = True,
    ) -> RoomPage:
        query = self.rooms_collection
        if active_only:
            query = query.where(filter=FieldFilter("active", "==", True))

        needle = search.lower() if search else None
        rooms: List[Room] = []
        async for doc in query.stream():
            room = Room.model_validate(doc.to_dict())
            if needle and needle not in room.room_name.lower() and needle not in room.description.lower():
                continue
            rooms.append(room)

        rooms.sort(key=lambda room: room.last_activity_at, reverse=True)
        start = (page - 1) * limit
        return RoomPage(rooms=rooms[start:start + limit], page=page, limit=limit, total=len(rooms))

    @_translate_errors
    async def update_room_fields(self, room_id: str, fields: dict) -> Room:
        ref = self.rooms_collection.document(room_id)
        patch = Room.model_construct(**fields).model_dump(
            by_alias=True, mode="json", include=set(fields) - APPEND_ONLY_FIELDS
        )

        @firestore.async_transactional
        async def _update(transaction) -> Room:
            doc = await ref.get(transaction=transaction)
            if not doc.exists:
                raise RoomNotFound(room_id)
            current = doc.to_dict() or {}
            patch["version"] = current.get("version", 0) + 1
            transaction.update(ref, patch)
            return Room.model_validate({**current, **patch})

        return await _update(self.db.transaction())

    @_translate_errors
    async def delete_room(self, room_id: str) -> None:
        room_doc = self.rooms_collection.document(room_id)
        doc = await room_doc.get()
        if not doc.exists:
            raise RoomNotFound(room_id)
        await room_doc.delete()

    @_translate_errors
    async def deactivate_idle_rooms(self, cutoff_ms: int, keep: List[str]) -> int:
        query = self.rooms_collection.where(filter=FieldFilter("lastActivityAt", "<", cutoff_ms))
        batch = self.db.batch()
        count = 0
        async for doc in query.stream():
            data = doc.to_dict() or {}
            if not data.get("active", True) or doc.id in keep:
                continue
            batch.update(doc.reference, {"active": False, "version": data.get("version", 0) + 1})
            count += 1
        if count:
            await batch.commit()
        return count

    # User Operations
    @_translate_errors
    async def create_user(self, user: User) -> User:
        if await self.load_user_by_session(user.session_id) is not None:
            raise UserExists(user.session_id)
        try:
            await self.users_collection.document(user.user_id).create(
                user.model_dump(by_alias=True, mode="json")
            )
        except google_exceptions.AlreadyExists as exc:
            raise StoreError(f"User {user.user_id} already exists") from exc
        return user

    @_translate_errors
    async def load_user(self, user_id: str) -> User:
        doc = await self.users_collection.document(user_id).get()
        if not doc.exists:
            raise UserNotFound(user_id)
        return User.model_validate(doc.to_dict())

    @_translate_errors
    async def load_user_by_session(self, session_id: str) -> Optional[User]:
        query = self.users_collection.where(filter=FieldFilter("sessionId", "==", session_id)).limit(1)
        async for doc in query.stream():
            return User.model_validate(doc.to_dict())
        return None

    @_translate_errors
    async def update_user(self, user: User) -> User:
        ref = self.users_collection.document(user.user_id)
        if not (await ref.get()).exists:
            raise UserNotFound(user.user_id)
        await ref.set(user.model_dump(by_alias=True, mode="json"))
        return user

    async def close(self) -> None:
        result = self.db.close()
        if inspect.isawaitable(result):
            await result


def create_document_store(settings: Settings) -> DocumentStore:
    """Build the store selected by ``settings.document_store``."""
    if settings.document_store == "firestore":
        logger.info("Using Firestore document store (project=%s)", settings.google_project_id or "default")
        return FirestoreDocumentStore(settings)
    logger.info("Using in-memory document store")
    return MemoryDocumentStore(settings.chat_ring_cap, settings.activity_ring_cap)
