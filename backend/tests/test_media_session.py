import asyncio

import pytest

from models.chat import Message, SenderRole
from services.errors import AlreadyInCall, InvalidTransition, MediaAccessDenied, NegotiationFailed
from services.media_session import MediaSession, MediaState
from tests.conftest import FakeDevices, FakePeerFactory

SESSION_ID = "session-media-1"

class RecordingSink:
    def __init__(self):
        self.messages = []

    async def __call__(self, message: Message) -> Message:
        stored = message.model_copy(update={"sequence": len(self.messages) + 1})
        self.messages.append(stored)
        return stored

def make_media(hub, role, devices=None, peer_factory=None, **kwargs):
    return MediaSession(
        session_id=SESSION_ID,
        role=role,
        devices=devices or FakeDevices(),
        peer_factory=peer_factory or FakePeerFactory(),
        relay=hub,
        chat_sink=kwargs.pop("chat_sink", RecordingSink()),
        **kwargs,
    )

async def wait_until(predicate, timeout: float = 2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)

@pytest.fixture
async def connected_pair(hub):
    patient_factory, provider_factory = FakePeerFactory(), FakePeerFactory()
    patient = make_media(hub, SenderRole.PATIENT, peer_factory=patient_factory)
    provider = make_media(hub, SenderRole.PROVIDER, peer_factory=provider_factory)
    await patient.join()
    await provider.join()
    await provider.wait_connected(timeout=2)
    await patient.wait_connected(timeout=2)
    yield patient, provider, patient_factory, provider_factory
    await patient.teardown("test_done")
    await provider.teardown("test_done")

async def test_handshake_connects_both_sides(connected_pair):
    patient, provider, patient_factory, provider_factory = connected_pair

    assert patient.state == MediaState.CONNECTED
    assert provider.state == MediaState.CONNECTED
    # Only the provider offers
    assert provider_factory.created[0].offers_created == 1
    assert patient_factory.created[0].offers_created == 0
    assert patient_factory.created[0].remote_description["type"] == "offer"
    assert provider_factory.created[0].remote_description["type"] == "answer"

async def test_denied_capture_returns_to_idle_and_can_retry(hub):
    devices = FakeDevices(deny=True)
    media = make_media(hub, SenderRole.PATIENT, devices=devices)

    with pytest.raises(MediaAccessDenied):
        await media.join()
    assert media.state == MediaState.IDLE
    assert devices.streams == []

    devices.deny = False
    await media.join()
    assert media.state == MediaState.NEGOTIATING
    await media.teardown()

async def test_capture_timeout_is_access_denied(hub, monkeypatch):
    from config.settings import settings
    monkeypatch.setattr(settings, "capture_timeout_seconds", 0.05)
    devices = FakeDevices()
    devices.gate = asyncio.Event()
    media = make_media(hub, SenderRole.PATIENT, devices=devices)

    with pytest.raises(MediaAccessDenied):
        await media.join()
    assert media.state == MediaState.IDLE

async def test_teardown_during_capture_releases_late_stream(hub):
    devices = FakeDevices()
    devices.gate = asyncio.Event()
    media = make_media(hub, SenderRole.PATIENT, devices=devices)

    join = asyncio.create_task(media.join())
    await asyncio.sleep(0)
    assert media.state == MediaState.CAPTURING

    await media.teardown("session_cancelled")
    devices.gate.set()

    with pytest.raises(NegotiationFailed):
        await join
    assert media.state == MediaState.ENDED
    assert all(track.stopped for track in devices.streams[0].tracks)

async def test_negotiation_timeout_tears_down(hub, fast_negotiation_timeout):
    devices, factory = FakeDevices(), FakePeerFactory()
    media = make_media(hub, SenderRole.PATIENT, devices=devices, peer_factory=factory)

    await media.join()
    with pytest.raises(NegotiationFailed):
        await media.wait_connected(timeout=2)

    assert media.state == MediaState.ENDED
    assert media.end_reason == "negotiation_failed"
    assert all(track.stopped for track in devices.streams[0].tracks)
    assert factory.created[0].closed

async def test_join_twice_is_rejected(hub):
    media = make_media(hub, SenderRole.PATIENT)
    await media.join()

    with pytest.raises(AlreadyInCall):
        await media.join()
    await media.teardown()

async def test_toggles_flip_tracks_without_renegotiation(connected_pair):
    patient, provider, patient_factory, provider_factory = connected_pair
    tracks = patient_factory.created[0].tracks
    audio = next(t for t in tracks if t.kind == "audio")
    video = next(t for t in tracks if t.kind == "video")

    assert patient.toggle_mute() is True
    assert audio.enabled is False
    assert patient.toggle_video() is False
    assert video.enabled is False
    assert patient.toggle_mute() is False
    assert audio.enabled is True

    assert patient.state == MediaState.CONNECTED
    assert provider_factory.created[0].offers_created == 1
    assert patient_factory.created[0].offers_created == 0

async def test_toggles_need_a_connected_call(hub):
    media = make_media(hub, SenderRole.PATIENT)
    await media.join()

    with pytest.raises(InvalidTransition):
        media.toggle_mute()
    with pytest.raises(InvalidTransition):
        media.toggle_video()
    await media.teardown()

async def test_candidates_are_buffered_until_remote_description(hub):
    factory = FakePeerFactory(auto_connect=False)
    patient = make_media(hub, SenderRole.PATIENT, peer_factory=factory)
    await patient.join()
    pc = factory.created[0]

    await hub.send(SESSION_ID, "patient", {"type": "candidate", "candidate": {"candidate": "early"}})
    await hub.drain(SESSION_ID)
    assert pc.candidates == []

    await hub.send(SESSION_ID, "patient", {"type": "offer", "description": {"type": "offer", "sdp": "x"}})
    await hub.send(SESSION_ID, "patient", {"type": "candidate", "candidate": {"candidate": "late"}})
    await hub.drain(SESSION_ID)
    assert pc.candidates == [{"candidate": "early"}, {"candidate": "late"}]
    await patient.teardown()

async def test_teardown_is_idempotent(connected_pair):
    patient, provider, patient_factory, _ = connected_pair
    ended = []

    async def on_ended(media, reason):
        ended.append(reason)

    patient.on_ended = on_ended
    await patient.teardown("left")
    await patient.teardown("left_again")

    assert ended == ["left"]
    assert patient.end_reason == "left"
    assert patient_factory.created[0].closed
    assert all(track.stopped for track in patient_factory.created[0].tracks)

async def test_peer_bye_ends_remote_side(hub, connected_pair):
    patient, provider, _, provider_factory = connected_pair

    await patient.teardown("left")
    await wait_until(lambda: provider.state == MediaState.ENDED)

    assert provider.end_reason == "left"
    assert provider_factory.created[0].closed

async def test_chat_is_stored_then_mirrored(hub, connected_pair):
    patient, provider, _, _ = connected_pair
    received = []

    async def on_remote_chat(payload):
        received.append(payload)

    provider.on_remote_chat = on_remote_chat
    stored = await patient.send_chat("Feeling better today")
    await hub.drain(SESSION_ID)

    assert stored.sequence == 1
    assert received[0]["message"]["body"] == "Feeling better today"
    assert received[0]["message"]["sequence"] == 1

async def test_chat_mirror_failure_keeps_stored_message(connected_pair, monkeypatch):
    patient, provider, _, _ = connected_pair

    async def broken_send(*args, **kwargs):
        raise ConnectionError("relay down")

    monkeypatch.setattr(patient.relay, "send", broken_send)
    stored = await patient.send_chat("Still here")

    assert stored.body == "Still here"
    assert patient.chat_sink.messages[-1].body == "Still here"
    assert patient.state == MediaState.CONNECTED

async def test_context_manager_tears_down(hub):
    factory = FakePeerFactory()
    async with make_media(hub, SenderRole.PATIENT, peer_factory=factory) as media:
        await media.join()
    assert media.state == MediaState.ENDED
    assert factory.created[0].closed
