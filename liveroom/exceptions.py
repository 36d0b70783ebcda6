"""Errors surfaced to clients as ``error { code, message }`` frames."""

from typing import Optional


class HubError(Exception):
    """Base class for errors reported back to the offending connection."""

    code = "InternalError"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message}


class ProtocolError(HubError):
    code = "ProtocolError"
    default_message = "Malformed or unexpected event"


class PayloadTooLarge(HubError):
    code = "PayloadTooLarge"
    default_message = "Payload exceeds the configured size limit"


class RoomFull(HubError):
    code = "RoomFull"
    default_message = "Room is at maximum capacity"


class NotJoined(HubError):
    code = "NotJoined"
    default_message = "Not in a room"


class RateLimited(HubError):
    code = "RateLimited"
    default_message = "Too many events"


class RoomUnavailable(HubError):
    code = "RoomNotFound"
    default_message = "Room not found"


class TooManyConnections(HubError):
    code = "RateLimited"
    default_message = "Too many connections from this address"


class InternalError(HubError):
    code = "InternalError"


class RoomInactive(RoomUnavailable):
    default_message = "Room is inactive"
