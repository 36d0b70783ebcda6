"""
Room sessions: the authoritative in-memory state of one live room.

Every mutation runs under the session's ``asyncio.Lock``. The lock is FIFO, so
mutations apply in arrival order and the broadcasts they produce reach every
participant in that same order. Nothing awaits while the lock is held: outbound
frames are enqueued on each Connection without blocking.

Each non-lossy broadcast takes the next ``seq``. Presence and typing events are
lossy; they carry the current ``seq`` without consuming one.
"""

import asyncio
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from liveroom.config import Settings
from liveroom.exceptions import InternalError, NotJoined, ProtocolError, RoomFull
from liveroom.models import ActivityEntry, ActivityType, Message, Room
from liveroom.models import events
from liveroom.models.events import ChatMessage, CodeChange, DrawEvent, NoteChange, PresenceUpdate
from liveroom.services.connection import CLOSE_INTERNAL, CLOSE_NORMAL, CLOSE_SUPERSEDED, Connection
from liveroom.utils.helpers import generate_id, now_ms

logger = logging.getLogger(__name__)


class ParticipantState(str, Enum):
    JOINING = "joining"
    LIVE = "live"
    DEPARTING = "departing"
    GONE = "gone"


@dataclass
class Participant:
    user_id: str
    username: str
    color: str
    session_id: str
    connection: Connection
    joined_at: int
    last_activity_at: int
    preferences: Dict[str, Any] = field(default_factory=dict)
    state: ParticipantState = ParticipantState.JOINING
    is_active: bool = True
    messages_sent: int = 0
    departure_event: Optional[str] = None

    def public(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "color": self.color,
            "joinedAt": self.joined_at,
            "lastActivityAt": self.last_activity_at,
            "isActive": self.is_active,
            "accessibility": self.preferences.get("accessibility") or {},
        }


class CursorState:
    """Last known cursor per user; entries older than the TTL are pruned on read."""

    def __init__(self, ttl_ms: int, clock: Callable[[], int]):
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._entries: Dict[str, Dict[str, float]] = {}

    def update(self, user_id: str, x: float, y: float) -> Dict[str, float]:
        entry = {"x": x, "y": y, "timestamp": self._clock()}
        self._entries[user_id] = entry
        return entry

    def get(self, user_id: str) -> Optional[Dict[str, float]]:
        self._prune()
        return self._entries.get(user_id)

    def remove(self, user_id: str) -> None:
        self._entries.pop(user_id, None)

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        self._prune()
        return {user_id: dict(entry) for user_id, entry in self._entries.items()}

    def _prune(self) -> None:
        cutoff = self._clock() - self.ttl_ms
        stale = [user_id for user_id, entry in self._entries.items() if entry["timestamp"] < cutoff]
        for user_id in stale:
            del self._entries[user_id]


class TypingSet:
    """Users currently typing, each with a deadline."""

    def __init__(self, deadline_ms: int, clock: Callable[[], int]):
        self.deadline_ms = deadline_ms
        self._clock = clock
        self._deadlines: Dict[str, int] = {}

    def start(self, user_id: str) -> int:
        deadline = self._clock() + self.deadline_ms
        self._deadlines[user_id] = deadline
        return deadline

    def stop(self, user_id: str) -> bool:
        return self._deadlines.pop(user_id, None) is not None

    def active(self) -> List[str]:
        now = self._clock()
        for user_id in [u for u, deadline in self._deadlines.items() if deadline <= now]:
            del self._deadlines[user_id]
        return sorted(self._deadlines)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._deadlines


def _remember(window: "OrderedDict[str, None]", key: str, size: int) -> None:
    window[key] = None
    while len(window) > size:
        window.popitem(last=False)


class RoomSession:
    def __init__(
        self,
        room: Room,
        settings: Settings,
        scheduler=None,
        clock: Callable[[], int] = now_ms,
    ):
        self.room_id = room.room_id
        self.settings = settings
        self.version = room.version
        self._scheduler = scheduler
        self._clock = clock
        self._lock = asyncio.Lock()

        self.seq = 0
        self.participants: Dict[str, Participant] = {}
        self._departing: Dict[str, Participant] = {}
        self.cursors = CursorState(settings.cursor_ttl_ms, clock)
        self.typing = TypingSet(settings.typing_deadline_ms, clock)

        chat_cap = settings.chat_ring_cap
        activity_cap = settings.activity_ring_cap
        self.chat: Deque[Message] = deque(room.chat[-chat_cap:], maxlen=chat_cap)
        self.activities: Deque[ActivityEntry] = deque(room.activities[-activity_cap:], maxlen=activity_cap)
        self._chat_seq = self.chat[-1].seq if self.chat else 0
        self._activity_seq = self.activities[-1].seq if self.activities else 0
        self._chat_ids: "OrderedDict[str, None]" = OrderedDict((m.id, None) for m in self.chat)
        self._activity_last: Dict[Tuple[ActivityType, str], int] = {}

        # Durable projection without the append-only histories
        self.room = room.model_copy(deep=True, update={"chat": [], "activities": []})

        self._pending_chat: List[Message] = []
        self._pending_activities: List[ActivityEntry] = []
        self.dirty = False
        self._generation = 0
        self.degraded = False
        self.closed = False

        self._presence_sent: Dict[str, int] = {}
        self._presence_pending: Set[str] = set()
        self._presence_timers: Dict[str, asyncio.TimerHandle] = {}
        self._typing_sent: Dict[str, int] = {}
        self._typing_timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()

    def __repr__(self) -> str:
        return f"<RoomSession {self.room_id} seq={self.seq} participants={len(self.participants)}>"

    # Membership ---------------------------------------------------------------
    async def join(
        self,
        connection: Connection,
        user_id: str,
        username: str,
        session_id: str,
        color: str,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> Participant:
        """Admit a participant, superseding an older connection of the same user."""
        async with self._lock:
            self._ensure_open()
            existing = self.participants.get(user_id)
            if existing is None and len(self.participants) >= self.room.max_participants:
                raise RoomFull()
            connection.bind(self, user_id)
            if existing is not None:
                self._supersede(existing)

            now = self._clock()
            participant = Participant(
                user_id=user_id,
                username=username,
                color=color,
                session_id=session_id,
                connection=connection,
                joined_at=now,
                last_activity_at=now,
                preferences=dict(preferences or {}),
            )
            self.participants[user_id] = participant
            rejoining = user_id in self.room.participants_ever
            if not rejoining:
                self.room.participants_ever.append(user_id)
            self.room.last_activity_at = now
            self._assert_roster()

            seq = self._next_seq()
            self._record_activity(ActivityType.JOIN, f"{username} joined the room", participant)
            connection.send(events.ROOM_JOINED, self._snapshot(participant, seq))
            if self.chat:
                connection.send(events.CHAT_HISTORY, [m.to_wire() for m in self.chat])
            participant.state = ParticipantState.LIVE

            joined = participant.public()
            joined.update(
                seq=seq,
                timestamp=now,
                metadata=self._metadata(participant, now, "join"),
            )
            self._broadcast(events.USER_JOINED, joined, exclude=participant)
            self._mark_dirty()
            logger.info("%s (%s) joined room %s at seq %d", username, user_id, self.room_id, seq)
            return participant

    async def leave(self, connection: Connection) -> Participant:
        """Explicit leave: drain the leaver's queue, close it, then announce ``userLeft``."""
        async with self._lock:
            participant = self._participant_for(connection)
            self._begin_departure(participant, events.USER_LEFT)
        await self._complete_departure(participant, "left", CLOSE_NORMAL)
        return participant

    async def disconnect(self, connection: Connection) -> Optional[Participant]:
        """Transport closed: the participant goes straight to GONE."""
        async with self._lock:
            participant = self._find(connection)
            if participant is None or participant.state is ParticipantState.GONE:
                return participant
            if participant.state is not ParticipantState.DEPARTING:
                self._begin_departure(participant, events.USER_DISCONNECTED)
            self._gone(participant, connection.close_reason or "disconnected")
            return participant

    def _supersede(self, old: Participant) -> None:
        old.state = ParticipantState.DEPARTING
        old.departure_event = None
        del self.participants[old.user_id]
        self._departing[old.connection.id] = old
        self._clear_transient(old.user_id)

        now = self._clock()
        notice = {
            "userId": old.user_id,
            "username": old.username,
            "reason": "superseded",
            "seq": self._next_seq(),
            "timestamp": now,
        }
        old.connection.send(events.USER_DISCONNECTED, notice)
        self._broadcast(events.USER_DISCONNECTED, notice)
        self._spawn(self._complete_departure(old, "superseded", CLOSE_SUPERSEDED))
        logger.info("User %s superseded in room %s (old connection %s)", old.user_id, self.room_id, old.connection.id)

    def _begin_departure(self, participant: Participant, event: str) -> None:
        participant.state = ParticipantState.DEPARTING
        participant.departure_event = event
        self._departing[participant.connection.id] = participant
        self._clear_transient(participant.user_id)

    async def _complete_departure(self, participant: Participant, reason: str, code: int) -> None:
        timeout = self.settings.departure_drain_timeout_ms / 1000
        await participant.connection.close(reason, code, drain_timeout=timeout)
        async with self._lock:
            if participant.state is not ParticipantState.GONE:
                self._gone(participant, reason)

    def _gone(self, participant: Participant, reason: str) -> None:
        participant.state = ParticipantState.GONE
        self._departing.pop(participant.connection.id, None)
        if self.participants.get(participant.user_id) is not participant:
            return
        del self.participants[participant.user_id]
        self._clear_transient(participant.user_id)
        self._assert_roster()

        now = self._clock()
        self.room.last_activity_at = now
        event = participant.departure_event or events.USER_DISCONNECTED
        self._broadcast(
            event,
            {
                "userId": participant.user_id,
                "username": participant.username,
                "reason": reason,
                "seq": self._next_seq(),
                "timestamp": now,
                "metadata": self._metadata(participant, now, "leave" if event == events.USER_LEFT else "disconnect"),
            },
        )
        self._record_activity(ActivityType.LEAVE, f"{participant.username} left the room", participant)
        self._mark_dirty()
        logger.info("%s left room %s (%s)", participant.username, self.room_id, reason)

    # Content ------------------------------------------------------------------
    async def code_change(self, connection: Connection, change: CodeChange) -> int:
        """Replace the shared code and broadcast it to the other participants."""
        async with self._lock:
            participant = self._participant_for(connection)
            if not self.room.settings.allow_code_editing:
                raise ProtocolError("Code editing is disabled in this room")
            now = self._touch(participant)
            self.room.code.text = change.content
            if change.language:
                self.room.code.language = change.language
            metadata = self._metadata(participant, now, change.action_type or "edit")
            if change.lines_changed is not None:
                metadata["linesChanged"] = change.lines_changed
            seq = self._next_seq()
            self._broadcast(
                events.CODE_CHANGED,
                {
                    "content": self.room.code.text,
                    "language": self.room.code.language,
                    "userId": participant.user_id,
                    "username": participant.username,
                    "cursorPosition": change.cursor_position,
                    "metadata": metadata,
                    "seq": seq,
                    "timestamp": now,
                },
                exclude=participant,
            )
            self._record_activity(
                ActivityType.CODE,
                f"{participant.username} edited the code",
                participant,
                details={"language": self.room.code.language},
                coalesce=True,
            )
            self._mark_dirty()
            return seq

    async def note_change(self, connection: Connection, change: NoteChange) -> int:
        """Replace the shared notes and broadcast them to the other participants."""
        async with self._lock:
            participant = self._participant_for(connection)
            if not self.room.settings.allow_notes_editing:
                raise ProtocolError("Notes editing is disabled in this room")
            now = self._touch(participant)
            self.room.notes = change.content
            metadata = self._metadata(participant, now, change.action_type or "edit")
            if change.words_changed is not None:
                metadata["wordsChanged"] = change.words_changed
            seq = self._next_seq()
            self._broadcast(
                events.NOTE_CHANGED,
                {
                    "content": self.room.notes,
                    "userId": participant.user_id,
                    "username": participant.username,
                    "metadata": metadata,
                    "seq": seq,
                    "timestamp": now,
                },
                exclude=participant,
            )
            self._record_activity(ActivityType.NOTES, f"{participant.username} edited the notes", participant, coalesce=True)
            self._mark_dirty()
            return seq

    async def draw_event(self, connection: Connection, draw: DrawEvent) -> int:
        """Relay a canvas action to the other participants."""
        async with self._lock:
            participant = self._participant_for(connection)
            if not self.room.settings.allow_canvas_drawing:
                raise ProtocolError("Canvas drawing is disabled in this room")
            now = self._touch(participant)
            self.room.canvas = draw.drawing_data
            metadata = self._metadata(participant, now, draw.action_type or "draw")
            metadata["shapeType"] = draw.shape_type or "unknown"
            seq = self._next_seq()
            self._broadcast(
                events.DRAWING_UPDATED,
                {
                    "drawingData": self.room.canvas,
                    "action": draw.action,
                    "userId": participant.user_id,
                    "username": participant.username,
                    "metadata": metadata,
                    "seq": seq,
                    "timestamp": now,
                },
                exclude=participant,
            )
            self._record_activity(
                ActivityType.DRAWING,
                f"{participant.username} updated the canvas",
                participant,
                details={"action": draw.action},
                coalesce=True,
            )
            self._mark_dirty()
            return seq

    async def chat_message(self, connection: Connection, chat: ChatMessage) -> Optional[Message]:
        """Append a chat message; a repeated id is a no-op and returns None."""
        async with self._lock:
            participant = self._participant_for(connection)
            if not self.room.settings.allow_chat:
                raise ProtocolError("Chat is disabled in this room")
            message_id = chat.id or generate_id("msg")
            if message_id in self._chat_ids:
                logger.debug("Duplicate chat message %s in room %s ignored", message_id, self.room_id)
                return None

            now = self._touch(participant)
            last_ts = self.chat[-1].timestamp if self.chat else 0
            self._chat_seq += 1
            message = Message(
                id=message_id,
                seq=self._chat_seq,
                user_id=participant.user_id,
                username=participant.username,
                text=chat.message,
                message_type=chat.message_type,
                timestamp=max(now, last_ts + 1),
                color=participant.color,
            )
            _remember(self._chat_ids, message_id, 2 * self.settings.chat_ring_cap)
            self.chat.append(message)
            self._pending_chat.append(message)
            participant.messages_sent += 1

            payload = message.to_wire()
            payload.update(
                messageSeq=message.seq,
                seq=self._next_seq(),
                metadata=self._metadata(participant, now, "send"),
            )
            self._broadcast(events.CHAT_MESSAGE, payload)
            self._record_activity(
                ActivityType.MESSAGE,
                f"{participant.username} sent a message",
                participant,
                details={"messageId": message.id},
            )
            self._mark_dirty()
            if self._scheduler is not None:
                self._scheduler.flush_soon(self)
            return message

    # Presence -----------------------------------------------------------------
    async def presence_update(self, connection: Connection, update: PresenceUpdate) -> None:
        """Record a cursor move, emitting at most once per presence interval."""
        async with self._lock:
            participant = self._participant_for(connection)
            now = self._touch(participant)
            participant.is_active = update.is_active
            if update.cursor_position is not None:
                self.cursors.update(participant.user_id, update.cursor_position.x, update.cursor_position.y)

            user_id = participant.user_id
            interval = self.settings.presence_interval_ms
            last = self._presence_sent.get(user_id)
            if user_id not in self._presence_timers and (last is None or now - last >= interval):
                self._presence_pending.discard(user_id)
                self._emit_presence(participant, now)
                return
            # inside the window: the trailing emit carries the newest position
            self._presence_pending.add(user_id)
            if user_id not in self._presence_timers:
                delay = max(0, interval - (now - last)) / 1000
                self._presence_timers[user_id] = asyncio.get_running_loop().call_later(
                    delay, self._spawn_flush_presence, user_id
                )

    def _spawn_flush_presence(self, user_id: str) -> None:
        self._presence_timers.pop(user_id, None)
        self._spawn(self._flush_presence(user_id))

    async def _flush_presence(self, user_id: str) -> None:
        async with self._lock:
            participant = self.participants.get(user_id)
            if user_id not in self._presence_pending or participant is None:
                return
            if participant.state is not ParticipantState.LIVE:
                return
            self._presence_pending.discard(user_id)
            self._emit_presence(participant, self._clock())

    def _emit_presence(self, participant: Participant, now: int) -> None:
        self._presence_sent[participant.user_id] = now
        cursor = self.cursors.get(participant.user_id)
        self._broadcast(
            events.PRESENCE_UPDATED,
            {
                "userId": participant.user_id,
                "username": participant.username,
                "cursorPosition": {"x": cursor["x"], "y": cursor["y"]} if cursor else None,
                "isActive": participant.is_active,
                "seq": self.seq,
                "timestamp": now,
            },
            exclude=participant,
            key=f"presence:{participant.user_id}",
        )

    async def typing_start(self, connection: Connection) -> None:
        """Mark the sender as typing until the deadline expires."""
        async with self._lock:
            participant = self._participant_for(connection)
            now = self._touch(participant)
            user_id = participant.user_id
            self.typing.start(user_id)

            timer = self._typing_timers.pop(user_id, None)
            if timer is not None:
                timer.cancel()
            self._typing_timers[user_id] = asyncio.get_running_loop().call_later(
                self.settings.typing_deadline_ms / 1000, self._spawn_expire_typing, user_id
            )

            last = self._typing_sent.get(user_id)
            if last is None or now - last >= self.settings.typing_rebroadcast_ms:
                self._typing_sent[user_id] = now
                self._broadcast(
                    events.TYPING_START,
                    {"userId": user_id, "username": participant.username, "seq": self.seq, "timestamp": now},
                    exclude=participant,
                    key=f"typing:{user_id}",
                )

    async def typing_stop(self, connection: Connection) -> None:
        """Clear the typing flag and tell the others if it was set."""
        async with self._lock:
            participant = self._participant_for(connection)
            now = self._touch(participant)
            if self._stop_typing(participant.user_id):
                self._broadcast(
                    events.TYPING_STOP,
                    {"userId": participant.user_id, "seq": self.seq, "timestamp": now},
                    exclude=participant,
                    key=f"typing:{participant.user_id}",
                )

    def _spawn_expire_typing(self, user_id: str) -> None:
        handle = self._typing_timers.pop(user_id, None)
        if handle is not None:
            self._spawn(self._expire_typing(user_id))

    async def _expire_typing(self, user_id: str) -> None:
        async with self._lock:
            # a newer typing-start re-armed the timer
            if user_id in self._typing_timers:
                return
            if self.typing.stop(user_id):
                self._broadcast(
                    events.TYPING_STOP,
                    {"userId": user_id, "seq": self.seq, "timestamp": self._clock(), "reason": "timeout"},
                    exclude=self.participants.get(user_id),
                    key=f"typing:{user_id}",
                )

    def _stop_typing(self, user_id: str) -> bool:
        timer = self._typing_timers.pop(user_id, None)
        if timer is not None:
            timer.cancel()
        return self.typing.stop(user_id)

    async def update_details(self, fields: Dict[str, Any]) -> Room:
        """Apply an out-of-band room edit (name, description, limits, settings)."""
        async with self._lock:
            self._ensure_open()
            for name, value in fields.items():
                setattr(self.room, name, value)
            if fields.get("active") is False:
                self._record_activity(ActivityType.SYSTEM, "Room was deactivated")
            self._mark_dirty()
            return self.room.model_copy(deep=True)

    def ping(self, connection: Connection) -> None:
        """Answer a client ping."""
        connection.send(events.PONG, {"timestamp": self._clock()})

    # Snapshots ----------------------------------------------------------------
    def _snapshot(self, participant: Participant, seq: int) -> Dict[str, Any]:
        return {
            "roomId": self.room_id,
            "roomName": self.room.room_name,
            "description": self.room.description,
            "userId": participant.user_id,
            "sessionId": participant.session_id,
            "color": participant.color,
            "participants": [
                p.public() for p in self.participants.values()
                if p.state is not ParticipantState.DEPARTING
            ],
            "codeContent": self.room.code.text,
            "codeLanguage": self.room.code.language,
            "notesContent": self.room.notes,
            "canvasData": self.room.canvas,
            "chatHistory": [m.to_wire() for m in self.chat],
            "activities": [a.to_wire() for a in self.activities],
            "cursors": self.cursors.snapshot(),
            "typing": self.typing.active(),
            "settings": self.room.settings.to_wire(),
            "maxParticipants": self.room.max_participants,
            "seq": seq,
            "timestamp": self._clock(),
        }

    def durable_snapshot(self) -> Tuple[Room, int]:
        """Copy of the durable fields plus the dirty generation it reflects."""
        return self.room.model_copy(deep=True), self._generation

    def drain_pending(self) -> Tuple[List[Message], List[ActivityEntry]]:
        chat, activities = self._pending_chat, self._pending_activities
        self._pending_chat, self._pending_activities = [], []
        return chat, activities

    def requeue_pending(self, chat: List[Message], activities: List[ActivityEntry]) -> None:
        self._pending_chat[:0] = chat
        self._pending_activities[:0] = activities

    @property
    def has_pending(self) -> bool:
        return bool(self._pending_chat or self._pending_activities)

    def mark_persisted(self, version: int, generation: int) -> None:
        self.version = version
        if generation == self._generation:
            self.dirty = False

    @property
    def live_count(self) -> int:
        return sum(1 for p in self.participants.values() if p.state is ParticipantState.LIVE)

    def roster(self) -> List[Dict[str, Any]]:
        return [p.public() for p in self.participants.values() if p.state is ParticipantState.LIVE]

    def connections(self) -> List[Connection]:
        attached = [p.connection for p in self.participants.values()]
        attached.extend(p.connection for p in self._departing.values())
        return attached

    # Teardown -----------------------------------------------------------------
    async def fail(self, reason: str) -> None:
        """Fatal invariant violation: tell every attached client and close them."""
        logger.error("Room session %s failed: %s", self.room_id, reason)
        error = InternalError("Room session failed; rejoin to continue")
        attached = self.connections()
        self.closed = True
        for connection in attached:
            connection.send_error(error)
        timeout = self.settings.departure_drain_timeout_ms / 1000
        await asyncio.gather(
            *(c.close("internal-error", CLOSE_INTERNAL, drain_timeout=timeout) for c in attached),
            return_exceptions=True,
        )
        for participant in list(self.participants.values()) + list(self._departing.values()):
            participant.state = ParticipantState.GONE
        self.participants.clear()
        self._departing.clear()
        self.close()

    def close(self) -> None:
        self.closed = True
        for timer in list(self._presence_timers.values()) + list(self._typing_timers.values()):
            timer.cancel()
        self._presence_timers.clear()
        self._typing_timers.clear()
        for task in list(self._tasks):
            task.cancel()

    # Internals ----------------------------------------------------------------
    def _ensure_open(self) -> None:
        if self.closed:
            raise InternalError("Room session is closing; retry the join")

    def _next_seq(self) -> int:
        self.seq += 1
        return self.seq

    def _find(self, connection: Connection) -> Optional[Participant]:
        participant = self.participants.get(connection.user_id) if connection.user_id else None
        if participant is not None and participant.connection is connection:
            return participant
        return self._departing.get(connection.id)

    def _participant_for(self, connection: Connection) -> Participant:
        participant = self.participants.get(connection.user_id) if connection.user_id else None
        if participant is None or participant.connection is not connection:
            raise NotJoined()
        if participant.state is not ParticipantState.LIVE:
            raise NotJoined("Leaving the room")
        return participant

    def _touch(self, participant: Participant) -> int:
        now = self._clock()
        participant.last_activity_at = now
        self.room.last_activity_at = now
        return now

    def _broadcast(
        self,
        event: str,
        data: Dict[str, Any],
        exclude: Optional[Participant] = None,
        key: Optional[str] = None,
    ) -> None:
        for participant in list(self.participants.values()):
            if participant is exclude or participant.state is not ParticipantState.LIVE:
                continue
            participant.connection.send(event, data, key=key)

    def _metadata(self, participant: Participant, now: int, action_type: str) -> Dict[str, Any]:
        return {
            "author": participant.username,
            "userId": participant.user_id,
            "actionType": action_type,
            "timestamp": now,
        }

    def _record_activity(
        self,
        activity_type: ActivityType,
        description: str,
        participant: Optional[Participant] = None,
        details: Optional[Dict[str, Any]] = None,
        coalesce: bool = False,
    ) -> None:
        now = self._clock()
        if coalesce and participant is not None:
            key = (activity_type, participant.user_id)
            last = self._activity_last.get(key)
            if last is not None and now - last < self.settings.activity_coalesce_ms:
                return
            self._activity_last[key] = now
        last_ts = self.activities[-1].timestamp if self.activities else 0
        self._activity_seq += 1
        entry = ActivityEntry(
            id=generate_id("act"),
            seq=self._activity_seq,
            type=activity_type,
            description=description,
            details=details or {},
            timestamp=max(now, last_ts + 1),
            user_id=participant.user_id if participant else None,
            username=participant.username if participant else None,
        )
        self.activities.append(entry)
        self._pending_activities.append(entry)

    def _clear_transient(self, user_id: str) -> None:
        self.cursors.remove(user_id)
        self._stop_typing(user_id)
        self._typing_sent.pop(user_id, None)
        self._presence_sent.pop(user_id, None)
        self._presence_pending.discard(user_id)
        timer = self._presence_timers.pop(user_id, None)
        if timer is not None:
            timer.cancel()

    def _mark_dirty(self) -> None:
        self.dirty = True
        self._generation += 1
        if self._scheduler is not None:
            self._scheduler.mark_dirty(self)

    def _assert_roster(self) -> None:
        for user_id, participant in self.participants.items():
            if participant.user_id != user_id or participant.connection.session is not self:
                raise InternalError(f"Participant map diverged for {user_id}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Room %s background task failed", self.room_id, exc_info=task.exception())
