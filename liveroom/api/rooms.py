import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from liveroom.models import (
    Pagination,
    Room,
    RoomCreate,
    RoomDetail,
    RoomList,
    RoomSettings,
    RoomSummary,
    RoomUpdate,
)
from liveroom.services.document_store import DocumentStore, RoomExists, RoomNotFound, StoreUnavailable
from liveroom.services.hub import CollaborationHub
from liveroom.utils.helpers import generate_id, now_ms
from .deps import get_hub, get_store

logger = logging.getLogger(__name__)

router = APIRouter()


def _live_count(hub: CollaborationHub, room_id: str) -> int:
    session = hub.registry.get(room_id)
    return session.live_count if session is not None else 0


async def _current_room(room_id: str, store: DocumentStore, hub: CollaborationHub) -> Room:
    session = hub.registry.get(room_id)
    if session is not None:
        return session.room.model_copy(deep=True)
    try:
        room = await store.load_room(room_id)
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Room storage unavailable")
    if not room.active:
        raise HTTPException(status_code=404, detail="Room not found")
    return room


@router.post("/", response_model=RoomSummary, status_code=201)
async def create_room(
    room_data: RoomCreate,
    store: DocumentStore = Depends(get_store),
):
    """Create a new room"""
    now = now_ms()
    room = Room(
        room_id=room_data.room_id or generate_id(),
        room_name=room_data.room_name.strip(),
        description=room_data.description.strip(),
        created_by=room_data.created_by,
        created_at=now,
        last_activity_at=now,
        max_participants=room_data.max_participants,
        settings=room_data.settings,
    )
    try:
        room = await store.create_room(room)
    except RoomExists:
        raise HTTPException(status_code=400, detail="A room with this ID already exists")
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Room storage unavailable")
    logger.info("Created room %s (%s)", room.room_id, room.room_name)
    return RoomSummary.from_room(room)


@router.get("/", response_model=RoomList)
async def list_rooms(
    search: Optional[str] = Query(None, min_length=1, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    store: DocumentStore = Depends(get_store),
    hub: CollaborationHub = Depends(get_hub),
):
    """List active rooms, most recently active first"""
    try:
        result = await store.list_rooms(search=search, page=page, limit=limit)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Room storage unavailable")
    total_pages = math.ceil(result.total / limit) if result.total else 0
    return RoomList(
        rooms=[RoomSummary.from_room(room, _live_count(hub, room.room_id)) for room in result.rooms],
        pagination=Pagination(
            current_page=page,
            total_pages=total_pages,
            total_rooms=result.total,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
        ),
    )


@router.get("/{room_id}", response_model=RoomDetail)
async def get_room(
    room_id: str,
    store: DocumentStore = Depends(get_store),
    hub: CollaborationHub = Depends(get_hub),
):
    """Get room details, including who is in it right now"""
    room = await _current_room(room_id, store, hub)
    session = hub.registry.get(room_id)
    participants = session.roster() if session is not None else []
    summary = RoomSummary.from_room(room, len(participants))
    return RoomDetail(**summary.model_dump(), participants=participants)


@router.put("/{room_id}", response_model=RoomSummary)
async def update_room(
    room_id: str,
    update: RoomUpdate,
    store: DocumentStore = Depends(get_store),
    hub: CollaborationHub = Depends(get_hub),
):
    """Update room name, description, capacity or settings"""
    room = await _current_room(room_id, store, hub)
    fields = update.model_dump(exclude_none=True, exclude={"settings"})
    if "room_name" in fields:
        fields["room_name"] = fields["room_name"].strip()
    if "description" in fields:
        fields["description"] = fields["description"].strip()
    if update.settings is not None:
        fields["settings"] = RoomSettings.model_validate({**room.settings.to_wire(), **update.settings})
    if not fields:
        return RoomSummary.from_room(room, _live_count(hub, room_id))

    session = hub.registry.get(room_id)
    if session is not None:
        # the live session owns the record; it persists the edit with its next flush
        room = await session.update_details(fields)
    else:
        try:
            room = await store.update_room_fields(room_id, fields)
        except RoomNotFound:
            raise HTTPException(status_code=404, detail="Room not found")
        except StoreUnavailable:
            raise HTTPException(status_code=503, detail="Room storage unavailable")
    return RoomSummary.from_room(room, _live_count(hub, room_id))


@router.delete("/{room_id}")
async def delete_room(
    room_id: str,
    hard: bool = Query(False),
    store: DocumentStore = Depends(get_store),
    hub: CollaborationHub = Depends(get_hub),
):
    """Deactivate a room; ``hard=true`` removes the record of a room nobody is in"""
    session = hub.registry.get(room_id)
    try:
        if hard:
            if session is not None and session.live_count:
                raise HTTPException(status_code=409, detail="Room has participants")
            if session is not None:
                await hub.registry.evict(room_id)
            await store.delete_room(room_id)
            return {"message": "Room deleted successfully", "roomId": room_id}

        await _current_room(room_id, store, hub)
        if session is not None:
            await session.update_details({"active": False})
        else:
            await store.update_room_fields(room_id, {"active": False})
    except RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Room storage unavailable")
    return {"message": "Room deactivated successfully", "roomId": room_id}
