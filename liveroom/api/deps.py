from fastapi import HTTPException, Request

from liveroom.services.admission import RequestRateLimiter
from liveroom.services.document_store import DocumentStore
from liveroom.services.hub import CollaborationHub


def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def get_hub(request: Request) -> CollaborationHub:
    return request.app.state.hub


async def rate_limit(request: Request) -> None:
    """Per-client request budget for the CRUD routes"""
    limiter: RequestRateLimiter = request.app.state.rate_limiter
    client = request.client.host if request.client else "unknown"
    if not limiter.allow(client):
        raise HTTPException(status_code=429, detail="Too many requests, please try again later")
