from __future__ import annotations

import asyncio
from typing import List

import pytest

from conftest import FakeClock, FakeSocket, flush_outbound, make_connection, make_room, make_settings
from liveroom.exceptions import NotJoined, ProtocolError, RoomFull
from liveroom.models import ActivityType, RoomSettings, events
from liveroom.models.events import ChatMessage, CodeChange, CursorPosition, DrawEvent, NoteChange, PresenceUpdate
from liveroom.services.connection import CLOSE_SUPERSEDED, Connection
from liveroom.services.room_session import ParticipantState, RoomSession


class RecordingScheduler:
    def __init__(self) -> None:
        self.dirty: List[str] = []
        self.flushes = 0

    def mark_dirty(self, session: RoomSession) -> None:
        self.dirty.append(session.room_id)

    def flush_soon(self, session: RoomSession) -> None:
        self.flushes += 1


async def _join(session: RoomSession, user_id: str, settings=None) -> Connection:
    connection = make_connection(settings or session.settings)
    await session.join(connection, user_id, user_id.upper(), f"sess-{user_id}", "#3B82F6")
    return connection


def _seqs(connection: Connection) -> List[int]:
    socket: FakeSocket = connection.transport
    return [
        frame["data"]["seq"]
        for frame in socket.sent
        if frame["event"] not in events.LOSSY_EVENTS and isinstance(frame["data"], dict) and "seq" in frame["data"]
    ]


def _chat(text: str, message_id: str = None) -> ChatMessage:
    return ChatMessage(message=text, id=message_id)


def test_join_sends_snapshot_and_announces() -> None:
    async def scenario() -> None:
        session = RoomSession(make_room("r1"), make_settings())
        a = await _join(session, "a")
        b = await _join(session, "b")
        await flush_outbound(a, b)

        snapshot = b.transport.events(events.ROOM_JOINED)[0]
        assert snapshot["roomId"] == "r1"
        assert {p["userId"] for p in snapshot["participants"]} == {"a", "b"}
        assert snapshot["seq"] == 2

        joined = a.transport.events(events.USER_JOINED)
        assert [j["userId"] for j in joined] == ["b"]
        assert joined[0]["seq"] == 2
        assert session.live_count == 2
        assert session.room.participants_ever == ["a", "b"]
        session.close()

    asyncio.run(scenario())


def test_room_full_rejects_without_state_change() -> None:
    async def scenario() -> None:
        session = RoomSession(make_room("r1", max_participants=2), make_settings())
        await _join(session, "a")
        await _join(session, "b")
        seq = session.seq
        with pytest.raises(RoomFull):
            await _join(session, "c")
        assert session.seq == seq
        assert set(session.participants) == {"a", "b"}
        session.close()

    asyncio.run(scenario())


def test_concurrent_joins_admit_exactly_the_remaining_seats() -> None:
    async def scenario() -> None:
        session = RoomSession(make_room("r1", max_participants=3), make_settings())
        await _join(session, "a")
        await _join(session, "b")
        results = await asyncio.gather(
            *(_join(session, name) for name in ("c", "d", "e")), return_exceptions=True
        )
        admitted = [r for r in results if isinstance(r, Connection)]
        rejected = [r for r in results if isinstance(r, RoomFull)]
        assert len(admitted) == 1 and len(rejected) == 2
        assert len(session.participants) == 3
        session.close()

    asyncio.run(scenario())


def test_ordered_chat() -> None:
    async def scenario() -> None:
        scheduler = RecordingScheduler()
        session = RoomSession(make_room("r1"), make_settings(), scheduler)
        a = await _join(session, "a")
        b = await _join(session, "b")
        await session.chat_message(a, _chat("hi", "m1"))
        await session.chat_message(b, _chat("yo", "m2"))
        await flush_outbound(a, b)

        for connection in (a, b):
            received = connection.transport.events(events.CHAT_MESSAGE)
            assert [m["id"] for m in received] == ["m1", "m2"]
            assert received[0]["seq"] < received[1]["seq"]
            assert received[0]["messageSeq"] + 1 == received[1]["messageSeq"]
            assert received[0]["message"] == "hi"
        assert [m.id for m in session.chat][-2:] == ["m1", "m2"]
        assert scheduler.flushes == 2
        session.close()

    asyncio.run(scenario())


def test_last_writer_wins_in_arrival_order() -> None:
    async def scenario() -> None:
        session = RoomSession(make_room("r1"), make_settings())
        a = await _join(session, "a")
        b = await _join(session, "b")
        observer = await _join(session, "c")

        # B's change arrives first even though A typed earlier
        await session.code_change(b, CodeChange(content="print('b')"))
        await session.code_change(a, CodeChange(content="print('a')"))
        await flush_outbound(a, b, observer)

        seen = observer.transport.events(events.CODE_CHANGED)
        assert [e["content"] for e in seen] == ["print('b')", "print('a')"]
        assert seen[0]["seq"] < seen[1]["seq"]
        assert [e["content"] for e in a.transport.events(events.CODE_CHANGED)] == ["print('b')"]
        assert [e["content"] for e in b.transport.events(events.CODE_CHANGED)] == ["print('a')"]
        assert session.room.code.text == "print('a')"
        session.close()

    asyncio.run(scenario())


def test_every_participant_sees_strictly_increasing_seq() -> None:
    async def scenario() -> None:
        session = RoomSession(make_room("r1"), make_settings())
        a = await _join(session, "a")
        b = await _join(session, "b")
        c = await _join(session, "c")

        operations = []
        for index in range(10):
            operations.append(session.code_change(a, CodeChange(content=f"a{index}")))
            operations.append(session.note_change(b, NoteChange(content=f"b{index}")))
            operations.append(session.chat_message(c, _chat(f"c{index}")))
            operations.append(session.draw_event(a, DrawEvent(drawing_data={"shapes": [index]})))
            operations.append(session.presence_update(b, PresenceUpdate(cursor_position=CursorPosition(x=index, y=1))))
        await asyncio.gather(*operations)
        await flush_outbound(a, b, c)

        for connection in (a, b, c):
            seqs = _seqs(connection)
            assert seqs == sorted(set(seqs))
        session.close()

    asyncio.run(scenario())


def test_events_after_snapshot_have_higher_seq() -> None:
    async def scenario() -> None:
        session = RoomSession(make_room("r1"), make_settings())
        a = await _join(session, "a")
        await session.code_change(a, CodeChange(content="x = 1"))
        b = await _join(session, "b")
        await session.code_change(a, CodeChange(content="x = 2"))
        await flush_outbound(b)

        snapshot = b.transport.events(events.ROOM_JOINED)[0]
        assert snapshot["codeContent"] == "x = 1"
        later = b.transport.events(events.CODE_CHANGED)
        assert later[0]["content"] == "x = 2"
        assert later[0]["seq"] > snapshot["seq"]
        session.close()

    asyncio.run(scenario())


def test_duplicate_chat_id_is_stored_once() -> None:
    async def scenario() -> None:
        clock = FakeClock()
        session = RoomSession(make_room("r1"), make_settings(), clock=clock)
        a = await _join(session, "a")
        first = await session.chat_message(a, _chat("hello", "m1"))
        again = await session.chat_message(a, _chat("hello", "m1"))
        other = await session.chat_message(a, _chat("next"))

        assert first is not None and again is None
        assert [m.id for m in session.chat].count("m1") == 1
        assert other.seq == first.seq + 1
        # same clock reading, still strictly increasing timestamps
        assert other.timestamp > first.timestamp
        pending_chat, _ = session.drain_pending()
        assert [m.id for m in pending_chat] == ["m1", other.id]
        session.close()

    asyncio.run(scenario())


def test_chat_ring_evicts_oldest() -> None:
    async def scenario() -> None:
        session = RoomSession(make_room("r1"), make_settings(chat_ring_cap=3))
        a = await _join(session, "a")
        for index in range(1, 5):
            await session.chat_message(a, _chat(f"message {index}", f"m{index}"))
        late = await _join(session, "late")
        await flush_outbound(late)

        history = late.transport.events(events.ROOM_JOINED)[0]["chatHistory"]
        assert [m["id"] for m in history] == ["m2", "m3", "m4"]
        assert [m["id"] for m in late.transport.events(events.CHAT_HISTORY)[0]] == ["m2", "m3", "m4"]
        seqs = [m.seq for m in session.chat]
        assert seqs == list(range(seqs[0], seqs[0] + 3))
        session.close()

    asyncio.run(scenario())


def test_chat_sequence_continues_after_reload() -> None:
    async def scenario() -> None:
        settings = make_settings()
        first = RoomSession(make_room("r1"), settings)
        a = await _join(first, "a")
        await first.chat_message(a, _chat("one", "m1"))
        await first.chat_message(a, _chat("two", "m2"))
        first.close()

        room = make_room("r1")
        room.chat = list(first.chat)
        second = RoomSession(room, settings)
        b = await _join(second, "b")
        message = await second.chat_message(b, _chat("three", "m3"))
        assert message.seq == 3
        # ids seen before the reload are still deduplicated
        assert await second.chat_message(b, _chat("one", "m1")) is None
        second.close()

    asyncio.run(scenario())


def test_presence_updates_are_coalesced() -> None:
    async def scenario() -> None:
        clock = FakeClock()
        session = RoomSession(make_room("r1"), make_settings(presence_interval_ms=50), clock=clock)
        a = await _join(session, "a")
        b = await _join(session, "b")

        for index in range(100):
            await session.presence_update(a, PresenceUpdate(cursor_position=CursorPosition(x=index, y=index)))
            clock.advance(10)
        await asyncio.sleep(0.1)
        await flush_outbound(b)

        updates = b.transport.events(events.PRESENCE_UPDATED)
        assert 0 < len(updates) <= 20
        assert updates[-1]["cursorPosition"] == {"x": 99, "y": 99}
        xs = [u["cursorPosition"]["x"] for u in updates]
        assert xs == sorted(xs)
        assert a.transport.events(events.PRESENCE_UPDATED) == []
        session.close()

    asyncio.run(scenario())


def test_typing_expires_after_deadline() -> None:
    async def scenario() -> None:
        session = RoomSession(make_room("r1"), make_settings(typing_deadline_ms=30))
        a = await _join(session, "a")
        b = await _join(session, "b")
        await session.typing_start(a)
        assert "a" in session.typing
        await asyncio.sleep(0.1)
        await flush_outbound(a, b)

        assert "a" not in session.typing
        stops = b.transport.events(events.TYPING_STOP)
        assert [s["userId"] for s in stops] == ["a"]
        assert stops[0]["reason"] == "timeout"
        assert a.transport.events(events.TYPING_STOP) == []
        session.close()

    asyncio.run(scenario())


def test_typing_start_rebroadcast_is_throttled() -> None:
    async def scenario() -> None:
        clock = FakeClock()
        session = RoomSession(make_room("r1"), make_settings(), clock=clock)
        a = await _join(session, "a")
        b = await _join(session, "b")
        for _ in range(5):
            await session.typing_start(a)
            clock.advance(100)
        clock.advance(1000)
        await session.typing_start(a)
        await session.typing_stop(a)
        await flush_outbound(b)

        assert b.transport.names().count(events.TYPING_START) == 2
        assert b.transport.names().count(events.TYPING_STOP) == 1
        assert "a" not in session.typing
        session.close()

    asyncio.run(scenario())


def test_disabled_surfaces_reject_without_mutation() -> None:
    async def scenario() -> None:
        room = make_room("r1", settings=RoomSettings(allow_code_editing=False, allow_chat=False))
        session = RoomSession(room, make_settings())
        a = await _join(session, "a")
        seq = session.seq
        with pytest.raises(ProtocolError):
            await session.code_change(a, CodeChange(content="x"))
        with pytest.raises(ProtocolError):
            await session.chat_message(a, _chat("hi"))
        assert session.seq == seq
        assert session.room.code.text == ""
        await session.note_change(a, NoteChange(content="allowed"))
        assert session.room.notes == "allowed"
        session.close()

    asyncio.run(scenario())


def test_events_from_unbound_connection_are_not_joined() -> None:
    async def scenario() -> None:
        session = RoomSession(make_room("r1"), make_settings())
        stranger = make_connection(session.settings)
        with pytest.raises(NotJoined):
            await session.code_change(stranger, CodeChange(content="x"))
        session.close()

    asyncio.run(scenario())


def test_supersession_leaves_one_live_participant() -> None:
    async def scenario() -> None:
        session = RoomSession(make_room("r1"), make_settings())
        other = await _join(session, "other")
        first = await _join(session, "u7")
        second = await _join(session, "u7")
        await asyncio.sleep(0.05)
        await flush_outbound(other, second)

        assert session.participants["u7"].connection is second
        assert session.live_count == 2
        assert first.closed
        assert first.transport.closed_with[0] == CLOSE_SUPERSEDED
        assert first.transport.events(events.USER_DISCONNECTED)[0]["reason"] == "superseded"

        names = other.transport.names()
        assert names.count(events.USER_JOINED) == 2
        assert names.count(events.USER_DISCONNECTED) == 1
        assert names.index(events.USER_DISCONNECTED) < len(names) - 1
        assert names[-1] == events.USER_JOINED

        # the old socket closing later must not remove the new participant
        await session.disconnect(first)
        assert session.participants["u7"].connection is second
        session.close()

    asyncio.run(scenario())


def test_leave_drains_then_announces() -> None:
    async def scenario() -> None:
        session = RoomSession(make_room("r1"), make_settings())
        a = await _join(session, "a")
        b = await _join(session, "b")
        participant = await session.leave(a)
        await flush_outbound(b)

        assert participant.state is ParticipantState.GONE
        assert a.closed and a.transport.closed_with[0] == 1000
        left = b.transport.events(events.USER_LEFT)
        assert [e["userId"] for e in left] == ["a"]
        assert "a" not in session.participants
        assert session.activities[-1].type is ActivityType.LEAVE

        # a second teardown of the same connection is a no-op
        await session.disconnect(a)
        assert len(b.transport.events(events.USER_LEFT)) == 1
        assert b.transport.events(events.USER_DISCONNECTED) == []
        session.close()

    asyncio.run(scenario())


def test_transport_close_announces_disconnect() -> None:
    async def scenario() -> None:
        session = RoomSession(make_room("r1"), make_settings())
        a = await _join(session, "a")
        b = await _join(session, "b")
        await session.typing_start(a)
        await session.disconnect(a)
        await flush_outbound(b)

        assert [e["userId"] for e in b.transport.events(events.USER_DISCONNECTED)] == ["a"]
        assert "a" not in session.typing
        assert session.live_count == 1
        session.close()

    asyncio.run(scenario())


def test_activity_feed_coalesces_edits() -> None:
    async def scenario() -> None:
        clock = FakeClock()
        session = RoomSession(make_room("r1"), make_settings(activity_coalesce_ms=5000), clock=clock)
        a = await _join(session, "a")
        for index in range(5):
            await session.code_change(a, CodeChange(content=str(index)))
            clock.advance(100)
        clock.advance(5000)
        await session.code_change(a, CodeChange(content="later"))

        kinds = [entry.type for entry in session.activities]
        assert kinds == [ActivityType.JOIN, ActivityType.CODE, ActivityType.CODE]
        assert [entry.seq for entry in session.activities] == [1, 2, 3]
        session.close()

    asyncio.run(scenario())


def test_persistence_bookkeeping() -> None:
    async def scenario() -> None:
        scheduler = RecordingScheduler()
        session = RoomSession(make_room("r1", version=4), make_settings(), scheduler)
        a = await _join(session, "a")
        await session.note_change(a, NoteChange(content="draft"))
        assert session.dirty and scheduler.dirty

        snapshot, generation = session.durable_snapshot()
        assert snapshot.notes == "draft" and snapshot.chat == []
        await session.note_change(a, NoteChange(content="draft 2"))
        session.mark_persisted(5, generation)
        # a newer edit landed after the snapshot, so the session stays dirty
        assert session.dirty and session.version == 5

        snapshot, generation = session.durable_snapshot()
        session.mark_persisted(6, generation)
        assert not session.dirty

        chat, activities = session.drain_pending()
        assert not session.has_pending
        session.requeue_pending(chat, activities)
        assert session.has_pending
        session.close()

    asyncio.run(scenario())


def test_fail_closes_every_connection_with_internal_error() -> None:
    async def scenario() -> None:
        session = RoomSession(make_room("r1"), make_settings())
        a = await _join(session, "a")
        b = await _join(session, "b")
        await session.fail("participant map diverged")

        for connection in (a, b):
            assert connection.closed
            assert connection.transport.closed_with[0] == 1011
            errors = connection.transport.events(events.ERROR)
            assert errors[-1]["code"] == "InternalError"
        assert session.participants == {}
        assert session.closed

    asyncio.run(scenario())
