"""
Registry of live room sessions, keyed by room id.

Sessions are reference counted by the connections bound to them. When the
count reaches zero the session lingers for ``idle_room_eviction_ms`` so a quick
rejoin resurrects it; after that it is flushed and forgotten.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from liveroom.config import Settings
from liveroom.exceptions import InternalError, RoomInactive, RoomUnavailable
from liveroom.models import Room
from liveroom.services.document_store import DocumentStore, RoomExists, RoomNotFound, StoreError
from liveroom.services.persistence import PersistenceScheduler
from liveroom.services.room_session import RoomSession
from liveroom.utils.helpers import now_ms

logger = logging.getLogger(__name__)


class RoomRegistry:
    def __init__(
        self,
        store: DocumentStore,
        scheduler: PersistenceScheduler,
        settings: Settings,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.scheduler = scheduler
        self.settings = settings
        self._clock = clock
        self._lock = asyncio.Lock()
        self._sessions: Dict[str, RoomSession] = {}
        self._refs: Dict[str, int] = {}
        self._loading: Dict[str, asyncio.Task] = {}
        self._evictions: Dict[str, asyncio.TimerHandle] = {}
        self._evicting: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    def get(self, room_id: str) -> Optional[RoomSession]:
        return self._sessions.get(room_id)

    def count(self) -> int:
        return len(self._sessions)

    def room_ids(self) -> List[str]:
        return list(self._sessions)

    def refs(self, room_id: str) -> int:
        return self._refs.get(room_id, 0)

    async def acquire(self, room_id: str) -> RoomSession:
        """Live session for ``room_id``, loading or creating the room on first use."""
        while True:
            async with self._lock:
                evicting = self._evicting.get(room_id)
                if evicting is None:
                    session = self._sessions.get(room_id)
                    if session is not None:
                        if not session.room.active:
                            raise RoomInactive()
                        self._retain(room_id)
                        return session
                    loading = self._loading.get(room_id)
                    if loading is None:
                        loading = asyncio.get_running_loop().create_task(self._load(room_id))
                        self._loading[room_id] = loading
            if evicting is not None:
                # the previous session is still flushing; load after it lands
                await asyncio.wait({evicting})
                continue
            break

        try:
            session = await asyncio.shield(loading)
        finally:
            async with self._lock:
                if self._loading.get(room_id) is loading:
                    del self._loading[room_id]

        async with self._lock:
            current = self._sessions.setdefault(room_id, session)
            if current is not session:
                session.close()
            self._retain(room_id)
            return current

    async def release(self, session: RoomSession) -> None:
        room_id = session.room_id
        async with self._lock:
            if self._sessions.get(room_id) is not session:
                return
            count = self._refs.get(room_id, 0) - 1
            if count > 0:
                self._refs[room_id] = count
                return
            self._refs.pop(room_id, None)
            delay = self.settings.idle_room_eviction_ms / 1000
            self._evictions[room_id] = asyncio.get_running_loop().call_later(
                delay, self._spawn_idle_eviction, room_id
            )
            logger.debug("Room %s idle; evicting in %.1fs", room_id, delay)

    async def evict(self, room_id: str) -> bool:
        """Flush the session, close it and forget it."""
        async with self._lock:
            session = self._sessions.pop(room_id, None)
            self._refs.pop(room_id, None)
            timer = self._evictions.pop(room_id, None)
            if timer is not None:
                timer.cancel()
            if session is None:
                task = self._evicting.get(room_id)
            else:
                session.close()
                task = asyncio.get_running_loop().create_task(self._finish_eviction(session))
                self._evicting[room_id] = task
        if task is None:
            return False
        await asyncio.wait({task})
        return session is not None

    async def fail(self, session: RoomSession, reason: str) -> None:
        """Tear down a session whose invariants no longer hold."""
        room_id = session.room_id
        async with self._lock:
            task = None
            if self._sessions.get(room_id) is session:
                # unlisted before the drain so a rejoin waits for a fresh load
                del self._sessions[room_id]
                self._refs.pop(room_id, None)
                timer = self._evictions.pop(room_id, None)
                if timer is not None:
                    timer.cancel()
                task = asyncio.get_running_loop().create_task(self._finish_failure(session, reason))
                self._evicting[room_id] = task
        if task is None:
            if not session.closed:
                await session.fail(reason)
            return
        await asyncio.wait({task})

    async def shutdown(self) -> None:
        async with self._lock:
            room_ids = list(self._sessions)
        if room_ids:
            await asyncio.gather(*(self.evict(room_id) for room_id in room_ids))
        logger.info("Registry shut down; evicted %d rooms", len(room_ids))

    def stats(self) -> Dict[str, Any]:
        rooms: List[Dict[str, Any]] = [
            {
                "roomId": room_id,
                "participants": session.live_count,
                "connections": self._refs.get(room_id, 0),
                "seq": session.seq,
                "dirty": session.dirty,
                "degraded": session.degraded,
            }
            for room_id, session in self._sessions.items()
        ]
        return {
            "rooms": len(rooms),
            "participants": sum(room["participants"] for room in rooms),
            "details": rooms,
        }

    # Internals ----------------------------------------------------------------
    def _retain(self, room_id: str) -> None:
        self._refs[room_id] = self._refs.get(room_id, 0) + 1
        timer = self._evictions.pop(room_id, None)
        if timer is not None:
            timer.cancel()
            logger.debug("Room %s resurrected before eviction", room_id)

    def _spawn_idle_eviction(self, room_id: str) -> None:
        self._evictions.pop(room_id, None)
        task = asyncio.get_running_loop().create_task(self._evict_if_idle(room_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _evict_if_idle(self, room_id: str) -> None:
        if self._refs.get(room_id, 0) > 0 or room_id in self._evictions:
            return
        await self.evict(room_id)

    async def _finish_failure(self, session: RoomSession, reason: str) -> None:
        try:
            await session.fail(reason)
        finally:
            await self._finish_eviction(session)

    async def _finish_eviction(self, session: RoomSession) -> None:
        room_id = session.room_id
        try:
            flushed = await asyncio.wait_for(
                self.scheduler.flush(session),
                self.settings.persistence_write_timeout_ms / 1000,
            )
            if not flushed:
                logger.error("Room %s evicted with unsaved changes", room_id)
        except asyncio.TimeoutError:
            logger.error("Timed out flushing room %s on eviction", room_id)
        finally:
            self.scheduler.forget(room_id)
            self._evicting.pop(room_id, None)
            logger.info("Evicted room %s", room_id)

    async def _load(self, room_id: str) -> RoomSession:
        try:
            room = await self.store.load_room(room_id)
        except RoomNotFound:
            if not self.settings.auto_create_rooms:
                raise RoomUnavailable()
            room = await self._create(room_id)
        except StoreError as exc:
            logger.error("Loading room %s failed: %s", room_id, exc)
            raise InternalError("Room could not be loaded") from exc
        if not room.active:
            raise RoomInactive()
        logger.info("Loaded room %s (version %d)", room_id, room.version)
        return RoomSession(room, self.settings, self.scheduler)

    async def _create(self, room_id: str) -> Room:
        now = self._clock()
        room = Room(
            room_id=room_id,
            room_name=f"Room {room_id}",
            created_by="system",
            created_at=now,
            last_activity_at=now,
            max_participants=self.settings.default_max_participants,
        )
        try:
            created = await self.store.create_room(room)
        except RoomExists:
            return await self.store.load_room(room_id)
        except StoreError as exc:
            raise InternalError("Room could not be created") from exc
        logger.info("Created room %s on first join", room_id)
        return created
