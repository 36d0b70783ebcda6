from fastapi import APIRouter, Depends

from .deps import rate_limit
from .rooms import router as rooms_router
from .users import router as users_router

# Create main API router
api_router = APIRouter(prefix="/api")

# Include all routers
api_router.include_router(rooms_router, prefix="/rooms", tags=["rooms"], dependencies=[Depends(rate_limit)])
api_router.include_router(users_router, prefix="/users", tags=["users"], dependencies=[Depends(rate_limit)])
