import asyncio

import pytest

from models.chat import Message, SenderRole
from services.chat_log import ChatLog
from services.errors import SessionClosed, SessionNotFound
from services.event_bus import EventBus
from tests.conftest import EventRecorder

@pytest.fixture
def bus():
    return EventBus()

@pytest.fixture
def chat_log(repository, bus):
    return ChatLog(repository, bus)

def _message(body, sender=SenderRole.PATIENT):
    return Message(sender=sender, body=body)

async def test_append_assigns_increasing_positions(chat_log, pending_session):
    first = await chat_log.append(pending_session.session_id, _message("hello"))
    second = await chat_log.append(pending_session.session_id, _message("hi", SenderRole.PROVIDER))

    assert (first.sequence, second.sequence) == (1, 2)

async def test_replay_is_prefix_growth(chat_log, pending_session):
    session_id = pending_session.session_id
    for i in range(3):
        await chat_log.append(session_id, _message(f"m{i}"))
    earlier = await chat_log.replay(session_id)

    for i in range(3, 5):
        await chat_log.append(session_id, _message(f"m{i}"))
    later = await chat_log.replay(session_id)

    assert [m.body for m in earlier] == ["m0", "m1", "m2"]
    assert [m.body for m in later] == ["m0", "m1", "m2", "m3", "m4"]
    assert [m.sequence for m in later[:3]] == [m.sequence for m in earlier]

async def test_concurrent_appends_keep_distinct_positions(chat_log, pending_session):
    session_id = pending_session.session_id
    stored = await asyncio.gather(*[chat_log.append(session_id, _message(f"m{i}")) for i in range(10)])

    replay = await chat_log.replay(session_id)
    assert sorted(m.sequence for m in stored) == list(range(1, 11))
    assert [m.sequence for m in replay] == list(range(1, 11))
    by_sequence = {m.sequence: m.body for m in stored}
    assert [m.body for m in replay] == [by_sequence[i] for i in range(1, 11)]

async def test_append_publishes_event(chat_log, bus, pending_session):
    recorder = EventRecorder()
    bus.subscribe(recorder, event_types=("chat_message_appended",))

    await chat_log.append(pending_session.session_id, _message("ping"))

    assert len(recorder.events) == 1
    assert recorder.events[0].message.body == "ping"
    assert recorder.events[0].message.sequence == 1

async def test_unknown_session(chat_log):
    with pytest.raises(SessionNotFound):
        await chat_log.append("missing", _message("x"))
    with pytest.raises(SessionNotFound):
        await chat_log.replay("missing")

async def test_append_guarded_by_status_at_write_time(chat_log, pending_session):
    with pytest.raises(SessionClosed):
        await chat_log.append(pending_session.session_id, _message("too early"), ["scheduled", "ongoing"])

    assert await chat_log.replay(pending_session.session_id) == []
