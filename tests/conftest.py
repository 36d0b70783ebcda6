from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from fastapi import WebSocketDisconnect

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from liveroom.config import Settings  # noqa: E402
from liveroom.models import Room  # noqa: E402
from liveroom.services.connection import Connection  # noqa: E402
from liveroom.services.document_store import MemoryDocumentStore  # noqa: E402

_DISCONNECT = object()


class FakeSocket:
    """Stands in for a Starlette WebSocket; frames are decoded as they are sent."""

    def __init__(self, fail_sends: bool = False) -> None:
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.accepted = False
        self.closed_with: Optional[tuple] = None
        self.fail_sends = fail_sends
        self.gate: Optional[asyncio.Event] = None

    async def accept(self) -> None:
        self.accepted = True

    async def receive_text(self) -> str:
        item = await self.inbox.get()
        if item is _DISCONNECT:
            raise WebSocketDisconnect(1000)
        return item

    async def send_text(self, text: str) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_sends or self.closed_with is not None:
            raise RuntimeError("socket is closed")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        self.closed_with = (code, reason)

    def push(self, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.inbox.put_nowait(json.dumps({"event": event, "data": data or {}}))

    def push_raw(self, raw: str) -> None:
        self.inbox.put_nowait(raw)

    def disconnect(self) -> None:
        self.inbox.put_nowait(_DISCONNECT)

    def events(self, name: Optional[str] = None) -> List[Dict[str, Any]]:
        return [frame["data"] for frame in self.sent if name is None or frame["event"] == name]

    def names(self) -> List[str]:
        return [frame["event"] for frame in self.sent]


class FakeClock:
    def __init__(self, start: int = 1_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "document_store": "memory",
        "idle_room_eviction_ms": 50,
        "departure_drain_timeout_ms": 200,
        "persistence_interval_ms": 20,
        "persistence_write_timeout_ms": 200,
        "handshake_timeout_ms": 500,
    }
    values.update(overrides)
    return Settings(**values)


def make_connection(settings: Settings, address: str = "10.0.0.1", **kwargs: Any) -> Connection:
    connection = Connection(FakeSocket(**kwargs), address, settings)
    connection.start()
    return connection


async def flush_outbound(*connections: Connection) -> None:
    for connection in connections:
        await connection.drain(1.0)


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_room(room_id: str = "r1", **fields: Any) -> Room:
    fields.setdefault("room_name", f"Room {room_id}")
    return Room(room_id=room_id, **fields)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()
