import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from liveroom.api import api_router
from liveroom.config import Settings, settings as default_settings
from liveroom.services.admission import RequestRateLimiter
from liveroom.services.document_store import DocumentStore
from liveroom.services.firestore_service import create_document_store
from liveroom.services.hub import CollaborationHub
from liveroom.utils.helpers import now_ms

logger = logging.getLogger(__name__)


def _address(websocket: WebSocket) -> str:
    return websocket.client.host if websocket.client else "unknown"


def create_app(settings: Optional[Settings] = None, store: Optional[DocumentStore] = None) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        document_store = store or create_document_store(settings)
        hub = CollaborationHub(settings, document_store)
        app.state.store = document_store
        app.state.hub = hub
        app.state.rate_limiter = RequestRateLimiter(
            settings.http_rate_limit_requests, settings.http_rate_limit_window_ms
        )
        await hub.start()
        try:
            yield
        finally:
            await hub.stop()
            await document_store.close()

    # Create FastAPI app
    app = FastAPI(
        title=settings.app_name,
        description="Real-time collaboration hub: shared code, notes, canvas and chat rooms",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routes
    app.include_router(api_router)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": "LiveRoom Collaboration API",
            "version": "1.0.0",
            "status": "running",
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": now_ms()}

    @app.get("/api/hub/stats")
    async def hub_stats():
        """Live rooms, participants and connections"""
        return app.state.hub.stats()

    # Collaboration socket; the room comes from the joinRoom event
    @app.websocket("/ws")
    async def collaboration_endpoint(websocket: WebSocket):
        await app.state.hub.serve(websocket, _address(websocket))

    # Same socket with the room in the path, used when joinRoom omits roomId
    @app.websocket("/ws/{room_id}")
    async def room_collaboration_endpoint(websocket: WebSocket, room_id: str):
        await app.state.hub.serve(websocket, _address(websocket), room_hint=room_id)

    # Error handlers
    @app.exception_handler(404)
    async def not_found_handler(request, exc):
        return JSONResponse(
            status_code=404,
            content={"detail": getattr(exc, "detail", None) or "Resource not found"},
        )

    @app.exception_handler(500)
    async def internal_error_handler(request, exc):
        logger.error("Unhandled error on %s: %r", request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "liveroom.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
    )
