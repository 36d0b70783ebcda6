"""
Collaboration hub: accepts sockets, runs the ``joinRoom`` handshake and routes
every later event to the bound room session.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set, Tuple

from liveroom.config import Settings
from liveroom.exceptions import (
    HubError,
    InternalError,
    NotJoined,
    ProtocolError,
    TooManyConnections,
)
from liveroom.models import User
from liveroom.models import events
from liveroom.models.events import InboundEvent, JoinRoom
from liveroom.services.admission import AdmissionController
from liveroom.services.connection import CLOSE_IDLE, CLOSE_POLICY, Connection
from liveroom.services.document_store import DocumentStore, StoreError, UserExists
from liveroom.services.persistence import PersistenceScheduler
from liveroom.services.registry import RoomRegistry
from liveroom.services.room_session import Participant, RoomSession
from liveroom.utils.helpers import generate_id, merge_preferences, now_ms, pick_color, validate_username

logger = logging.getLogger(__name__)

# Errors that count against a connection's protocol-error budget
COUNTED_ERRORS = (ProtocolError, NotJoined)


class CollaborationHub:
    def __init__(self, settings: Settings, store: DocumentStore):
        self.settings = settings
        self.store = store
        self.scheduler = PersistenceScheduler(store, settings)
        self.registry = RoomRegistry(store, self.scheduler, settings)
        self.admission = AdmissionController(settings.max_connections_per_address)
        self._connections: Set[Connection] = set()
        self._resolving: Dict[str, asyncio.Task] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self.started_at: Optional[int] = None

    @property
    def drain_timeout(self) -> float:
        return self.settings.departure_drain_timeout_ms / 1000

    # Lifecycle ----------------------------------------------------------------
    async def start(self) -> None:
        self.started_at = now_ms()
        self.scheduler.start()
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())
        logger.info("Collaboration hub started (store=%s)", type(self.store).__name__)

    async def stop(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        connections = list(self._connections)
        if connections:
            await asyncio.gather(
                *(c.close("server-shutdown", drain_timeout=self.drain_timeout) for c in connections),
                return_exceptions=True,
            )
        await self.registry.shutdown()
        await self.scheduler.stop()
        logger.info("Collaboration hub stopped")

    async def _cleanup_loop(self) -> None:
        interval = self.settings.room_cleanup_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup_rooms()
            except StoreError as exc:
                logger.warning("Room cleanup failed: %s", exc)

    async def cleanup_rooms(self) -> int:
        """Deactivate stored rooms nobody has touched for a while."""
        cutoff = now_ms() - self.settings.room_inactive_after_ms
        count = await self.store.deactivate_idle_rooms(cutoff, keep=self.registry.room_ids())
        if count:
            logger.info("Deactivated %d idle rooms", count)
        return count

    def stats(self) -> Dict[str, Any]:
        return {
            "connections": len(self._connections),
            "startedAt": self.started_at,
            **self.registry.stats(),
        }

    # Socket lifecycle ---------------------------------------------------------
    async def serve(self, transport: Any, address: str, room_hint: Optional[str] = None) -> None:
        """Run one socket from accept to teardown."""
        await transport.accept()
        connection = Connection(transport, address, self.settings)
        connection.start()
        try:
            self.admission.admit(address)
        except TooManyConnections as exc:
            connection.send_error(exc)
            await connection.close("too-many-connections", CLOSE_POLICY, drain_timeout=self.drain_timeout)
            return

        self._connections.add(connection)
        joined: Optional[Tuple[RoomSession, Participant, User]] = None
        try:
            joined = await self._handshake(connection, room_hint)
            if joined is not None:
                await self._dispatch(connection, joined[0])
        except Exception:
            logger.exception("Unhandled error on %r", connection)
            raise
        finally:
            self._connections.discard(connection)
            if not connection.closed:
                await connection.close("server-closed", drain_timeout=self.drain_timeout)
            if joined is not None:
                await self._depart(connection, *joined)
            self.admission.release(address)

    async def _handshake(
        self, connection: Connection, room_hint: Optional[str]
    ) -> Optional[Tuple[RoomSession, Participant, User]]:
        timeout = self.settings.handshake_timeout_ms / 1000
        while True:
            try:
                raw = await connection.receive(timeout=timeout)
                if raw is None:
                    return None
                event = connection.parse(raw)
                if event.name != events.JOIN_ROOM:
                    raise ProtocolError("First event must be joinRoom")
                return await self._join(connection, event.payload, room_hint)
            except asyncio.TimeoutError:
                logger.info("Handshake timed out on %r", connection)
                connection.send_error(ProtocolError("Handshake timed out"))
                await connection.close("handshake-timeout", CLOSE_POLICY, drain_timeout=self.drain_timeout)
                return None
            except (ProtocolError, InternalError) as exc:
                connection.send_error(exc)
                await connection.close("handshake-failed", CLOSE_POLICY, drain_timeout=self.drain_timeout)
                return None
            except HubError as exc:
                # quota and availability errors leave the socket open for a retry
                logger.info("Join rejected on %r: %s", connection, exc.code)
                connection.send_error(exc)

    async def _join(
        self, connection: Connection, join: JoinRoom, room_hint: Optional[str]
    ) -> Tuple[RoomSession, Participant, User]:
        room_id = join.room_id or room_hint
        if not room_id:
            raise ProtocolError("roomId is required")
        if not validate_username(join.username):
            raise ProtocolError("Username may only contain letters, numbers, spaces, hyphens and underscores")

        user = await self._resolve_user(join)
        session = await self.registry.acquire(room_id)
        try:
            participant = await session.join(
                connection,
                user_id=user.user_id,
                username=join.username,
                session_id=user.session_id,
                color=pick_color(user.preferences, user.user_id),
                preferences=user.preferences,
            )
        except BaseException:
            await self.registry.release(session)
            raise

        now = now_ms()
        user.current_room = room_id
        user.last_seen = now
        user.stats.rooms_joined += 1
        user.stats.last_room_joined_at = now
        await self._save_user(user)
        return session, participant, user

    async def _resolve_user(self, join: JoinRoom) -> User:
        """Durable identity for a ``joinRoom``; the session id is the key."""
        session_id = join.session_id or generate_id("sess")
        # concurrent joins for one session share a single lookup
        lookup = self._resolving.get(session_id)
        if lookup is None:
            lookup = asyncio.get_running_loop().create_task(self._lookup_user(session_id, join.username))
            self._resolving[session_id] = lookup
            lookup.add_done_callback(lambda _: self._resolving.pop(session_id, None))
        user = (await asyncio.shield(lookup)).model_copy(deep=True)
        user.username = join.username
        user.preferences = merge_preferences(user.preferences, join.preferences)
        return user

    async def _lookup_user(self, session_id: str, username: str) -> User:
        try:
            user = await self.store.load_user_by_session(session_id)
        except StoreError as exc:
            logger.warning("User lookup for session %s failed: %s", session_id, exc)
            user = None
        if user is not None:
            return user

        now = now_ms()
        user = User(
            user_id=generate_id(),
            username=username,
            session_id=session_id,
            created_at=now,
            last_seen=now,
        )
        try:
            return await self.store.create_user(user)
        except UserExists:
            # another process bound the session first
            try:
                existing = await self.store.load_user_by_session(session_id)
            except StoreError as exc:
                raise InternalError("User record could not be resolved") from exc
            if existing is None:
                raise InternalError("User record could not be resolved")
            return existing
        except StoreError as exc:
            logger.warning("Could not persist user %s: %s", user.user_id, exc)
            return user

    async def _save_user(self, user: User) -> None:
        try:
            await self.store.update_user(user)
        except StoreError as exc:
            logger.warning("Could not update user %s: %s", user.user_id, exc)

    async def _dispatch(self, connection: Connection, session: RoomSession) -> None:
        idle = self.settings.connection_idle_ms / 1000
        pong_wait = self.settings.idle_pong_timeout_ms / 1000
        pinged = False
        while not connection.closed:
            try:
                raw = await connection.receive(timeout=pong_wait if pinged else idle)
                if raw is None:
                    return
                pinged = False
                event = connection.parse(raw)
                if await self._route(connection, session, event):
                    return
            except asyncio.TimeoutError:
                if pinged:
                    logger.info("Closing idle connection %r", connection)
                    await connection.close("idle", CLOSE_IDLE)
                    return
                connection.send(events.PING, {"timestamp": now_ms()})
                pinged = True
            except InternalError as exc:
                await self.registry.fail(session, str(exc))
                return
            except HubError as exc:
                connection.send_error(exc)
                if isinstance(exc, COUNTED_ERRORS) and connection.record_protocol_error():
                    logger.warning("Too many protocol errors on %r", connection)
                    await connection.close("protocol-errors", CLOSE_POLICY, drain_timeout=self.drain_timeout)
                    return

    async def _route(self, connection: Connection, session: RoomSession, event: InboundEvent) -> bool:
        """Apply one event; True once the connection has left its room."""
        name, payload = event.name, event.payload
        if name == events.JOIN_ROOM:
            raise ProtocolError("Connection already joined a room")
        elif name == events.LEAVE_ROOM:
            await session.leave(connection)
            return True
        elif name == events.CODE_CHANGE:
            await session.code_change(connection, payload)
        elif name == events.NOTE_CHANGE:
            await session.note_change(connection, payload)
        elif name == events.DRAW_EVENT:
            await session.draw_event(connection, payload)
        elif name == events.CHAT_MESSAGE:
            await session.chat_message(connection, payload)
        elif name == events.PRESENCE_UPDATE:
            await session.presence_update(connection, payload)
        elif name == events.TYPING_START:
            await session.typing_start(connection)
        elif name == events.TYPING_STOP:
            await session.typing_stop(connection)
        elif name == events.PING:
            session.ping(connection)
        return False

    async def _depart(
        self, connection: Connection, session: RoomSession, participant: Participant, user: User
    ) -> None:
        if not session.closed:
            await session.disconnect(connection)
        await self.registry.release(session)

        try:
            user = await self.store.load_user(user.user_id)
        except StoreError as exc:
            logger.warning("Reloading user %s failed: %s", user.user_id, exc)
        # a superseding connection keeps the user in the room
        current = session.participants.get(user.user_id)
        if current is None or current is participant:
            user.current_room = None
        user.last_seen = now_ms()
        user.stats.messages_sent += participant.messages_sent
        await self._save_user(user)
