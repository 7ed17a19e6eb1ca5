import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from config.settings import settings
from database.repository import InMemorySessionRepository
from models.actor import Actor
from models.session import ReviewDecision, SessionCreate, SessionStatus
from services.collaborators import StaticTokenIdentityProvider
from services.coordinator import SessionCoordinator
from services.event_bus import EventBus
from services.signaling import InProcessSignalingHub

PATIENT = Actor.patient("patient-1")
PROVIDER = Actor.provider("doctor-1")
OTHER_PROVIDER = Actor.provider("doctor-2")
ADMIN = Actor.admin("admin-1")

class FakeTrack:
    def __init__(self, kind: str):
        self.kind = kind
        self.enabled = True
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True

class FakeStream:
    def __init__(self, video: bool = True):
        self.tracks = [FakeTrack("audio")]
        if video:
            self.tracks.append(FakeTrack("video"))

class FakeDevices:
    """Camera/microphone stand-in; can refuse or hold the permission prompt"""

    def __init__(self, deny: bool = False):
        self.deny = deny
        self.gate: Optional[asyncio.Event] = None
        self.streams: List[FakeStream] = []

    async def get_user_media(self, audio: bool, video: bool) -> FakeStream:
        if self.gate is not None:
            await self.gate.wait()
        if self.deny:
            raise PermissionError("NotAllowedError: permission denied")
        stream = FakeStream(video=video)
        self.streams.append(stream)
        return stream

class FakePeerConnection:
    """Fires the remote track once both descriptions are in place"""

    def __init__(self, ice_servers: List[str], auto_connect: bool = True):
        self.ice_servers = ice_servers
        self.auto_connect = auto_connect
        self.handlers: Dict[str, Any] = {}
        self.tracks: List[FakeTrack] = []
        self.local_description: Optional[dict] = None
        self.remote_description: Optional[dict] = None
        self.candidates: List[dict] = []
        self.offers_created = 0
        self.closed = False

    def add_track(self, track) -> None:
        self.tracks.append(track)

    def on(self, event: str, callback) -> None:
        self.handlers[event] = callback

    async def create_offer(self) -> dict:
        self.offers_created += 1
        return {"type": "offer", "sdp": "v=0 offer"}

    async def create_answer(self) -> dict:
        return {"type": "answer", "sdp": "v=0 answer"}

    async def set_local_description(self, description: dict) -> None:
        self.local_description = description
        self.handlers["icecandidate"]({"candidate": f"candidate:{description['type']}"})
        self._maybe_connect()

    async def set_remote_description(self, description: dict) -> None:
        self.remote_description = description
        self._maybe_connect()

    async def add_ice_candidate(self, candidate: dict) -> None:
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True

    def fire_track(self) -> None:
        self.handlers["track"](FakeTrack("video"))

    def _maybe_connect(self) -> None:
        if self.auto_connect and self.local_description and self.remote_description:
            self.fire_track()

class FakePeerFactory:
    def __init__(self, auto_connect: bool = True):
        self.auto_connect = auto_connect
        self.created: List[FakePeerConnection] = []

    def __call__(self, ice_servers: List[str]) -> FakePeerConnection:
        pc = FakePeerConnection(ice_servers, auto_connect=self.auto_connect)
        self.created.append(pc)
        return pc

class RecordingCollaborator:
    def __init__(self):
        self.events = []

    async def finalize(self, event) -> None:
        self.events.append(event)

class EventRecorder:
    def __init__(self):
        self.events = []

    async def __call__(self, event) -> None:
        self.events.append(event)

    def statuses(self) -> List[str]:
        return [e.status for e in self.events if e.type == "session_status_changed"]

def make_client(repository, hub=None, devices=None, peer_factory=None, billing=None, records=None):
    """One client process: own event bus and media, shared store and relay"""
    return SessionCoordinator(
        repository=repository,
        identity=StaticTokenIdentityProvider({}),
        event_bus=EventBus(),
        relay=hub,
        devices=devices,
        peer_factory=peer_factory,
        billing=billing,
        records=records,
    )

async def wait_for_status(repository, session_id: str, status: str, timeout: float = 2.0):
    async def poll():
        while True:
            session = await repository.get(session_id)
            if session.status == status:
                return session
            await asyncio.sleep(0.01)
    return await asyncio.wait_for(poll(), timeout)

@pytest.fixture
def repository():
    return InMemorySessionRepository()

@pytest.fixture
def hub():
    return InProcessSignalingHub()

@pytest.fixture
def billing():
    return RecordingCollaborator()

@pytest.fixture
def records():
    return RecordingCollaborator()

@pytest.fixture
def patient_devices():
    return FakeDevices()

@pytest.fixture
def provider_devices():
    return FakeDevices()

@pytest.fixture
def patient_client(repository, hub, patient_devices):
    return make_client(repository, hub, patient_devices, FakePeerFactory())

@pytest.fixture
def provider_client(repository, hub, provider_devices, billing, records):
    return make_client(repository, hub, provider_devices, FakePeerFactory(), billing, records)

@pytest.fixture
def admin_client(repository, hub, billing, records):
    return make_client(repository, hub, billing=billing, records=records)

@pytest.fixture
async def pending_session(admin_client):
    return await admin_client.create_session(ADMIN, SessionCreate(
        patient_id=PATIENT.identity,
        provider_id=PROVIDER.identity,
        scheduled_time=datetime.now(timezone.utc) + timedelta(hours=1),
        fee=50.0,
    ))

@pytest.fixture
async def scheduled_session(admin_client, pending_session):
    return await admin_client.review(pending_session.session_id, PROVIDER, ReviewDecision.APPROVE)

@pytest.fixture
async def ongoing_session(repository, patient_client, provider_client, scheduled_session):
    session_id = scheduled_session.session_id
    await patient_client.request_join(session_id, PATIENT)
    media = await provider_client.request_join(session_id, PROVIDER)
    await media.wait_connected(timeout=2)
    return await wait_for_status(repository, session_id, SessionStatus.ONGOING.value)

@pytest.fixture
def fast_negotiation_timeout(monkeypatch):
    monkeypatch.setattr(settings, "negotiation_timeout_seconds", 0.05)
