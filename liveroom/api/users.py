import logging

from fastapi import APIRouter, Depends, HTTPException

from liveroom.models import User, UserCreate, UserResponse, UserUpdate
from liveroom.services.document_store import DocumentStore, StoreError, StoreUnavailable, UserExists, UserNotFound
from liveroom.utils.helpers import generate_id, merge_preferences, now_ms, validate_username
from .deps import get_store

logger = logging.getLogger(__name__)

router = APIRouter()

INVALID_USERNAME = "Username can only contain letters, numbers, spaces, hyphens, and underscores"


@router.post("/", response_model=UserResponse, status_code=201)
async def create_user(
    user_data: UserCreate,
    store: DocumentStore = Depends(get_store),
):
    """Create a new anonymous user session"""
    username = user_data.username.strip()
    if not validate_username(username):
        raise HTTPException(status_code=400, detail=INVALID_USERNAME)

    now = now_ms()
    user = User(
        user_id=generate_id(),
        username=username,
        session_id=user_data.session_id or generate_id("sess"),
        preferences=merge_preferences({}, user_data.preferences),
        created_at=now,
        last_seen=now,
    )
    try:
        user = await store.create_user(user)
    except UserExists:
        raise HTTPException(status_code=409, detail="Session already has a user")
    except StoreError:
        raise HTTPException(status_code=503, detail="User storage unavailable")
    return UserResponse(**user.model_dump())


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(user_id: str, store: DocumentStore = Depends(get_store)):
    """Get user by ID"""
    try:
        user = await store.load_user(user_id)
    except UserNotFound:
        raise HTTPException(status_code=404, detail="User not found")
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="User storage unavailable")
    return UserResponse(**user.model_dump())


@router.put("/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: str,
    update: UserUpdate,
    store: DocumentStore = Depends(get_store),
):
    """Update username and preferences"""
    try:
        user = await store.load_user(user_id)
        if update.username is not None:
            username = update.username.strip()
            if not validate_username(username):
                raise HTTPException(status_code=400, detail=INVALID_USERNAME)
            user.username = username
        if update.preferences is not None:
            user.preferences = merge_preferences(user.preferences, update.preferences)
        user.last_seen = now_ms()
        user = await store.update_user(user)
    except UserNotFound:
        raise HTTPException(status_code=404, detail="User not found")
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="User storage unavailable")
    return UserResponse(**user.model_dump())
