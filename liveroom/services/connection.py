"""
Per-socket connection: inbound parsing and validation, rate limiting, and a
bounded outbound queue drained by a single writer task.
"""

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Optional, Set, Tuple

from fastapi import WebSocketDisconnect

from liveroom.config import Settings
from liveroom.exceptions import HubError, PayloadTooLarge, ProtocolError, RateLimited
from liveroom.models import events
from liveroom.models.events import InboundEvent, encode_frame, parse_frame
from liveroom.services.admission import TokenBucket
from liveroom.utils.helpers import generate_id, monotonic_ms, payload_size

logger = logging.getLogger(__name__)

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_POLICY = 1008
CLOSE_INTERNAL = 1011
CLOSE_TRY_AGAIN = 1013
CLOSE_SUPERSEDED = 4000
CLOSE_IDLE = 4001


class ConnectionState(str, Enum):
    FRESH = "fresh"
    BOUND = "bound"
    CLOSED = "closed"


# (event name, coalescing key, encoded frame)
QueuedFrame = Tuple[str, Optional[str], str]


class Connection:
    def __init__(
        self,
        transport: Any,
        address: str,
        settings: Settings,
        clock: Callable[[], float] = monotonic_ms,
    ):
        self.id = generate_id("conn")
        self.transport = transport
        self.address = address
        self.settings = settings
        self.state = ConnectionState.FRESH
        self.close_reason: Optional[str] = None

        # Set once bound to a room session
        self.session = None
        self.room_id: Optional[str] = None
        self.user_id: Optional[str] = None

        self._clock = clock
        self._bucket = TokenBucket(settings.event_rate_sustain, settings.event_rate_burst, clock)
        self._protocol_errors: Deque[float] = deque()
        self.last_event_at = clock()

        self._queue: Deque[QueuedFrame] = deque()
        self._wakeup = asyncio.Event()
        self._drained = asyncio.Event()
        self._drained.set()
        self._closed = asyncio.Event()
        self._closing = False
        self._writer: Optional[asyncio.Task] = None
        self._closers: Set[asyncio.Task] = set()
        self.dropped = 0

    def __repr__(self) -> str:
        return f"<Connection {self.id} {self.state.value} room={self.room_id} user={self.user_id}>"

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.get_running_loop().create_task(self._write_loop())

    def bind(self, session, user_id: str) -> None:
        if self.state is not ConnectionState.FRESH:
            raise ProtocolError("Connection already joined a room")
        self.session = session
        self.room_id = session.room_id
        self.user_id = user_id
        self.state = ConnectionState.BOUND

    # Inbound ------------------------------------------------------------------
    async def receive(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Next inbound text frame, or None once the connection is closed.
        Raises ``asyncio.TimeoutError`` when nothing arrives within ``timeout`` seconds.
        """
        if self.closed:
            return None
        recv = asyncio.ensure_future(self.transport.receive_text())
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait(
                {recv, closed}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (recv, closed):
                if not task.done():
                    task.cancel()
        if recv in done:
            try:
                return recv.result()
            except WebSocketDisconnect:
                self._mark_closed("transport-closed")
                return None
            except KeyError:
                raise ProtocolError("Binary frames are not supported")
        if closed in done:
            return None
        raise asyncio.TimeoutError()

    def parse(self, raw: str) -> InboundEvent:
        """Validate one raw frame against rate limits, payload caps and the event schema."""
        self.last_event_at = self._clock()
        if not self._bucket.consume():
            raise RateLimited()
        if len(raw) > self.settings.max_frame_bytes:
            self._bucket.penalize(self.settings.oversize_penalty_tokens)
            raise PayloadTooLarge("Frame exceeds the maximum size")
        event = parse_frame(raw)
        self._check_payload_caps(event)
        return event

    def _check_payload_caps(self, event: InboundEvent) -> None:
        payload = event.payload
        limit = None
        size = 0
        if event.name == events.CODE_CHANGE:
            size, limit = payload_size(payload.content), self.settings.max_code_bytes
        elif event.name == events.NOTE_CHANGE:
            size, limit = payload_size(payload.content), self.settings.max_notes_bytes
        elif event.name == events.DRAW_EVENT:
            size, limit = payload_size(payload.drawing_data), self.settings.max_canvas_bytes
        elif event.name == events.CHAT_MESSAGE:
            size, limit = payload_size(payload.message), self.settings.max_message_bytes
        if limit is not None and size > limit:
            self._bucket.penalize(self.settings.oversize_penalty_tokens)
            raise PayloadTooLarge(f"{event.name} payload is {size} bytes; limit is {limit}")

    def record_protocol_error(self) -> bool:
        """Count a protocol error; True once the budget for the window is exceeded."""
        now = self._clock()
        window = self.settings.protocol_error_window_ms
        self._protocol_errors.append(now)
        while self._protocol_errors and now - self._protocol_errors[0] > window:
            self._protocol_errors.popleft()
        return len(self._protocol_errors) > self.settings.protocol_error_limit

    # Outbound -----------------------------------------------------------------
    def send(self, event: str, data: Any, key: Optional[str] = None) -> bool:
        """
        Enqueue an outbound event without waiting. Lossy events with the same
        ``key`` replace each other in the queue. Returns False when dropped.
        """
        if self.closed or self._closing:
            return False
        frame = encode_frame(event, data)
        lossy = event in events.LOSSY_EVENTS

        if lossy and key is not None:
            for index, (queued_event, queued_key, _) in enumerate(self._queue):
                if queued_event == event and queued_key == key:
                    del self._queue[index]
                    break

        if len(self._queue) >= self.settings.outbound_queue_depth:
            if not self._make_room(lossy):
                return False

        self._queue.append((event, key, frame))
        self._drained.clear()
        self._wakeup.set()
        return True

    def _make_room(self, incoming_lossy: bool) -> bool:
        if self.settings.outbound_overflow_policy == "drop-lossy":
            for index, (queued_event, _, _) in enumerate(self._queue):
                if queued_event in events.LOSSY_EVENTS:
                    del self._queue[index]
                    self.dropped += 1
                    return True
            if incoming_lossy:
                self.dropped += 1
                return False
        logger.warning("Outbound queue full for %r; closing as slow consumer", self)
        self._schedule_close("slow-consumer", CLOSE_TRY_AGAIN)
        return False

    def send_error(self, error: HubError) -> bool:
        return self.send(events.ERROR, error.to_payload())

    @property
    def queued(self) -> int:
        return len(self._queue)

    async def drain(self, timeout: float) -> bool:
        """Wait until every queued frame has been written."""
        try:
            await asyncio.wait_for(self._drained.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _write_loop(self) -> None:
        try:
            while True:
                while not self._queue:
                    self._drained.set()
                    self._wakeup.clear()
                    await self._wakeup.wait()
                _, _, frame = self._queue.popleft()
                await self.transport.send_text(frame)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Write failed on %r: %s", self, exc)
            self._queue.clear()
            self._drained.set()
            self._mark_closed("transport-error")

    # Teardown -----------------------------------------------------------------
    def _mark_closed(self, reason: str) -> None:
        if self.state is not ConnectionState.CLOSED:
            self.state = ConnectionState.CLOSED
            self.close_reason = self.close_reason or reason
        self._closed.set()

    def _schedule_close(self, reason: str, code: int) -> None:
        task = asyncio.get_running_loop().create_task(self.close(reason, code))
        self._closers.add(task)
        task.add_done_callback(self._closers.discard)

    async def close(self, reason: str, code: int = CLOSE_NORMAL, drain_timeout: Optional[float] = None) -> None:
        """Close the connection, optionally flushing queued frames first."""
        if self._closing:
            return
        self._closing = True
        self.close_reason = self.close_reason or reason
        if drain_timeout and not self.closed:
            await self.drain(drain_timeout)

        self._queue.clear()
        self._drained.set()
        self._mark_closed(reason)
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        try:
            await self.transport.close(code=code, reason=reason)
        except Exception as exc:
            # the peer may already be gone
            logger.debug("Transport close failed on %r: %s", self, exc)
        logger.info("Connection %s closed (%s)", self.id, reason)
