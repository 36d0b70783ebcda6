from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional
import os


class Settings(BaseSettings):
    # FastAPI Settings
    app_name: str = "LiveRoom Collaboration Hub"
    debug: bool = False
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    # CORS Settings
    allowed_origins: list = ["http://localhost:3000"]

    # Document store: "memory" for local development, "firestore" in production
    document_store: Literal["memory", "firestore"] = "memory"
    google_project_id: str = os.getenv("GOOGLE_PROJECT_ID", "")
    # google_application_credentials is optional - when not set, uses ADC
    google_application_credentials: Optional[str] = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")

    # Firestore Settings
    firestore_collection_rooms: str = "rooms"
    firestore_collection_users: str = "users"

    # Rooms
    auto_create_rooms: bool = True
    default_max_participants: int = 50
    room_cleanup_interval_ms: int = 300_000
    room_inactive_after_ms: int = 1_800_000

    # Admission / quota
    max_connections_per_address: int = 20
    event_rate_burst: int = 100
    event_rate_sustain: int = 50
    oversize_penalty_tokens: int = 10
    protocol_error_limit: int = 5
    protocol_error_window_ms: int = 10_000

    # Connection
    outbound_queue_depth: int = 256
    outbound_overflow_policy: Literal["drop-lossy", "disconnect"] = "drop-lossy"
    handshake_timeout_ms: int = 10_000
    connection_idle_ms: int = 300_000
    idle_pong_timeout_ms: int = 30_000
    departure_drain_timeout_ms: int = 2_000

    # Session
    idle_room_eviction_ms: int = 60_000
    chat_ring_cap: int = 1000
    activity_ring_cap: int = 500
    cursor_ttl_ms: int = 10_000
    typing_deadline_ms: int = 3_000
    typing_rebroadcast_ms: int = 1_000
    presence_interval_ms: int = 50
    activity_coalesce_ms: int = 5_000

    # Payload caps (bytes)
    max_notes_bytes: int = 1024 * 1024
    max_canvas_bytes: int = 4 * 1024 * 1024
    max_code_bytes: int = 2 * 1024 * 1024
    max_message_bytes: int = 8 * 1024

    # Persistence
    persistence_interval_ms: int = 5_000
    persistence_write_timeout_ms: int = 5_000
    persistence_backoff_cap_ms: int = 30_000
    degraded_after_failures: int = 3

    # HTTP rate limiting
    http_rate_limit_requests: int = 100
    http_rate_limit_window_ms: int = 900_000

    model_config = SettingsConfigDict(env_prefix="LIVEROOM_", env_file=".env", extra="ignore")

    @property
    def max_frame_bytes(self) -> int:
        """Largest raw frame accepted before JSON parsing."""
        return max(
            self.max_notes_bytes,
            self.max_canvas_bytes,
            self.max_code_bytes,
            self.max_message_bytes,
        ) + 64 * 1024


settings = Settings()
