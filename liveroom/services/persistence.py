"""
Persistence scheduler: coalesces dirty room sessions into batched writes.

Flushes happen on a fixed interval, inline (but asynchronously) after chat
appends, and synchronously before a session is evicted. Chat and activity
records go through the store's idempotent appends; the remaining durable
fields are written with ``save_room`` under optimistic concurrency, with the
in-memory session winning any conflict.
"""

import asyncio
import logging
from typing import Dict, Optional, Set

from liveroom.config import Settings
from liveroom.models import Room
from liveroom.services.document_store import (
    DocumentStore,
    RoomNotFound,
    StoreError,
    StoreUnavailable,
    VersionConflict,
)
from liveroom.utils.helpers import monotonic_ms

logger = logging.getLogger(__name__)

BACKOFF_BASE_MS = 500
MAX_CONFLICT_RETRIES = 3


class PersistenceScheduler:
    def __init__(self, store: DocumentStore, settings: Settings):
        self.store = store
        self.settings = settings
        self._dirty: Dict[str, object] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._failures: Dict[str, int] = {}
        self._retry_at: Dict[str, float] = {}
        self._inline_rooms: Set[str] = set()
        self._inline_tasks: Set[asyncio.Task] = set()
        self._task: Optional[asyncio.Task] = None

    @property
    def write_timeout(self) -> float:
        return self.settings.persistence_write_timeout_ms / 1000

    def mark_dirty(self, session) -> None:
        self._dirty[session.room_id] = session

    def is_dirty(self, room_id: str) -> bool:
        return room_id in self._dirty

    def failures(self, room_id: str) -> int:
        return self._failures.get(room_id, 0)

    def flush_soon(self, session) -> None:
        """Schedule an inline flush, typically right after a chat append."""
        room_id = session.room_id
        self.mark_dirty(session)
        if room_id in self._inline_rooms or self._backing_off(room_id):
            return
        self._inline_rooms.add(room_id)
        task = asyncio.get_running_loop().create_task(self._inline_flush(session))
        self._inline_tasks.add(task)
        task.add_done_callback(self._inline_tasks.discard)

    async def _inline_flush(self, session) -> None:
        async with self._lock_for(session.room_id):
            self._inline_rooms.discard(session.room_id)
            await self._flush_locked(session)

    async def flush(self, session) -> bool:
        """Write everything the session has pending. Returns False on failure."""
        async with self._lock_for(session.room_id):
            return await self._flush_locked(session)

    async def flush_dirty(self) -> None:
        now = monotonic_ms()
        due = [
            session for room_id, session in list(self._dirty.items())
            if self._retry_at.get(room_id, 0) <= now
        ]
        if due:
            await asyncio.gather(*(self.flush(session) for session in due))

    async def flush_all(self) -> None:
        sessions = list(self._dirty.values())
        if sessions:
            await asyncio.gather(*(self.flush(session) for session in sessions))

    def forget(self, room_id: str) -> None:
        self._dirty.pop(room_id, None)
        self._failures.pop(room_id, None)
        self._retry_at.pop(room_id, None)
        self._locks.pop(room_id, None)

    async def _flush_locked(self, session) -> bool:
        room_id = session.room_id
        chat, activities = session.drain_pending()
        snapshot, generation = session.durable_snapshot() if session.dirty else (None, None)
        if not chat and not activities and snapshot is None:
            self._dirty.pop(room_id, None)
            return True

        chat_done = activities_done = 0
        try:
            for message in chat:
                await asyncio.wait_for(self.store.append_chat(room_id, message), self.write_timeout)
                chat_done += 1
            for entry in activities:
                await asyncio.wait_for(self.store.append_activity(room_id, entry), self.write_timeout)
                activities_done += 1
            if snapshot is not None:
                version = await self._save(session, snapshot)
                session.mark_persisted(version, generation)
        except RoomNotFound:
            logger.error("Room %s disappeared from the store; dropping %d pending writes",
                         room_id, len(chat) - chat_done + len(activities) - activities_done)
            self._record_failure(session)
            return False
        except (StoreError, asyncio.TimeoutError) as exc:
            session.requeue_pending(chat[chat_done:], activities[activities_done:])
            self._record_failure(session)
            logger.warning("Persisting room %s failed (attempt %d): %r",
                           room_id, self._failures[room_id], exc)
            return False
        except Exception:
            session.requeue_pending(chat[chat_done:], activities[activities_done:])
            self._record_failure(session)
            logger.exception("Unexpected error persisting room %s", room_id)
            return False

        if self._failures.pop(room_id, None) is not None:
            logger.info("Room %s persisted again after failures", room_id)
        self._retry_at.pop(room_id, None)
        session.degraded = False
        if not session.dirty and not session.has_pending:
            self._dirty.pop(room_id, None)
        logger.debug("Flushed room %s: %d chat, %d activities, saved=%s",
                     room_id, len(chat), len(activities), snapshot is not None)
        return True

    async def _save(self, session, snapshot: Room) -> int:
        expected = session.version
        for attempt in range(1, MAX_CONFLICT_RETRIES + 1):
            try:
                return await asyncio.wait_for(self.store.save_room(snapshot, expected), self.write_timeout)
            except VersionConflict as conflict:
                # the live session is the authority: adopt the stored version and overwrite
                logger.warning("Version conflict saving room %s (attempt %d): %s",
                               session.room_id, attempt, conflict)
                current = await asyncio.wait_for(self.store.load_room(session.room_id), self.write_timeout)
                expected = current.version
        raise StoreUnavailable(f"Room {session.room_id}: conflicts persisted after {MAX_CONFLICT_RETRIES} attempts")

    def _record_failure(self, session) -> None:
        room_id = session.room_id
        count = self._failures.get(room_id, 0) + 1
        self._failures[room_id] = count
        delay = min(self.settings.persistence_backoff_cap_ms, BACKOFF_BASE_MS * 2 ** (count - 1))
        self._retry_at[room_id] = monotonic_ms() + delay
        self._dirty[room_id] = session
        if count >= self.settings.degraded_after_failures and not session.degraded:
            session.degraded = True
            logger.error("Room %s marked degraded after %d failed flushes", room_id, count)

    def _backing_off(self, room_id: str) -> bool:
        return self._retry_at.get(room_id, 0) > monotonic_ms()

    def _lock_for(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        return lock

    # Lifecycle ----------------------------------------------------------------
    async def run(self) -> None:
        interval = self.settings.persistence_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                await self.flush_dirty()
            except Exception:
                logger.exception("Periodic flush failed")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self.run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._inline_tasks:
            await asyncio.gather(*list(self._inline_tasks), return_exceptions=True)
        await self.flush_all()
