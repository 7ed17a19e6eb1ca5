from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from database.repository import InMemorySessionRepository, MongoSessionRepository
from models.actor import Actor
from models.events import FinalizeEvent
from models.session import Session
from services.collaborators import MongoBillingOutbox, MongoRecordsOutbox, StaticTokenIdentityProvider
from services.errors import InfrastructureError, Unauthorized

def make_session(session_id="s-1", **overrides) -> Session:
    data = {
        "session_id": session_id,
        "room_id": f"room_{session_id}",
        "patient_id": "patient-1",
        "provider_id": "doctor-1",
        "scheduled_time": datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc),
        "fee": 25.0,
    }
    data.update(overrides)
    return Session(**data)

class FailingCollection:
    def __init__(self, error):
        self.error = error

    async def insert_one(self, document):
        raise self.error

    async def find_one(self, query):
        raise self.error

    async def find_one_and_update(self, *args, **kwargs):
        raise self.error

class RecordingCollection:
    def __init__(self):
        self.documents = []
        self.updates = []

    async def insert_one(self, document):
        if any(d["session_id"] == document["session_id"] for d in self.documents):
            raise DuplicateKeyError("duplicate session_id")
        self.documents.append(document)

    async def find_one_and_update(self, query, update, **kwargs):
        self.updates.append((query, update))
        return None

# In-memory repository

async def test_compare_and_set_checks_status_and_absent_fields():
    repository = InMemorySessionRepository()
    await repository.insert(make_session())

    assert await repository.compare_and_set("s-1", ["scheduled"], {"status": "scheduled"}) is None
    updated = await repository.compare_and_set("s-1", ["pending"], {"status": "scheduled", "call.patient_joined": True})
    assert updated.status == "scheduled"
    assert updated.call.patient_joined is True

    await repository.compare_and_set("s-1", ["scheduled"], {"patient_rating": 3})
    assert await repository.compare_and_set(
        "s-1", ["scheduled"], {"patient_rating": 4}, require_absent=["patient_rating"]
    ) is None
    assert (await repository.get("s-1")).patient_rating == 3

async def test_invalid_update_leaves_record_untouched():
    repository = InMemorySessionRepository()
    await repository.insert(make_session())

    with pytest.raises(ValueError):
        await repository.compare_and_set("s-1", ["pending"], {"patient_rating": 11})
    assert (await repository.get("s-1")).patient_rating is None

async def test_push_returns_positions_and_replays_in_order():
    repository = InMemorySessionRepository()
    await repository.insert(make_session())

    first = await repository.push("s-1", "chat_history", {"sender": "patient", "body": "one"})
    second = await repository.push("s-1", "chat_history", {"sender": "provider", "body": "two"})
    assert (first, second) == (1, 2)
    assert await repository.push("missing", "chat_history", {"sender": "patient", "body": "x"}) is None
    assert await repository.push("s-1", "chat_history", {"sender": "patient", "body": "x"}, ["completed"]) is None

    session = await repository.get("s-1")
    assert [(m.sequence, m.body) for m in session.chat_history] == [(1, "one"), (2, "two")]

async def test_find_filters_and_orders_newest_first():
    repository = InMemorySessionRepository()
    await repository.insert(make_session("early", scheduled_time=datetime(2026, 1, 1, tzinfo=timezone.utc)))
    await repository.insert(make_session("late", scheduled_time=datetime(2026, 6, 1, tzinfo=timezone.utc)))
    await repository.insert(make_session("other", provider_id="doctor-2"))

    found = await repository.find(provider_id="doctor-1")
    assert [s.session_id for s in found] == ["late", "early"]
    assert await repository.find(status="completed") == []

async def test_duplicate_insert_is_rejected():
    repository = InMemorySessionRepository()
    await repository.insert(make_session())
    with pytest.raises(InfrastructureError):
        await repository.insert(make_session())

def test_document_strips_storage_only_fields():
    session = make_session()
    document = session.to_document()
    assert document["chat_count"] == 0
    assert document["issue_count"] == 0

    document["_id"] = "object-id"
    restored = Session.from_document(document)
    assert restored.session_id == session.session_id

# MongoDB repository

async def test_driver_errors_become_infrastructure_errors():
    failing = FailingCollection(ServerSelectionTimeoutError("no primary"))
    repository = MongoSessionRepository(SimpleNamespace(telemedicine_sessions=failing))

    with pytest.raises(InfrastructureError):
        await repository.get("s-1")
    with pytest.raises(InfrastructureError):
        await repository.compare_and_set("s-1", ["pending"], {"status": "scheduled"})
    with pytest.raises(InfrastructureError):
        await repository.push("s-1", "chat_history", {"sender": "patient", "body": "x"})

async def test_mongo_compare_and_set_builds_guarded_update():
    collection = RecordingCollection()
    repository = MongoSessionRepository(SimpleNamespace(telemedicine_sessions=collection))

    result = await repository.compare_and_set(
        "s-1", ["ongoing"], {"status": "completed"}, require_absent=["clinical"]
    )

    assert result is None
    query, update = collection.updates[0]
    assert query == {"session_id": "s-1", "status": {"$in": ["ongoing"]}, "clinical": None}
    assert update["$set"]["status"] == "completed"
    assert "updated_at" in update["$set"]

# Collaborators

async def test_outboxes_write_once():
    billing_collection, records_collection = RecordingCollection(), RecordingCollection()
    db = SimpleNamespace(billing_outbox=billing_collection, records_outbox=records_collection)
    event = FinalizeEvent(
        session_id="s-1",
        fee=25.0,
        completed_at=datetime.now(timezone.utc),
        prescription_notes="Ibuprofen 400mg",
        follow_up_required=False,
    )

    await MongoBillingOutbox(db).finalize(event)
    await MongoBillingOutbox(db).finalize(event)
    await MongoRecordsOutbox(db).finalize(event)

    assert len(billing_collection.documents) == 1
    assert billing_collection.documents[0]["fee"] == 25.0
    assert billing_collection.documents[0]["delivered"] is False
    assert records_collection.documents[0]["prescription_notes"] == "Ibuprofen 400mg"

async def test_outbox_outage_is_infrastructure_error():
    db = SimpleNamespace(billing_outbox=FailingCollection(ServerSelectionTimeoutError("down")))
    event = FinalizeEvent(session_id="s-1", fee=1.0, completed_at=datetime.now(timezone.utc))

    with pytest.raises(InfrastructureError):
        await MongoBillingOutbox(db).finalize(event)

def test_static_token_identity():
    identity = StaticTokenIdentityProvider({"t1": "provider:doctor-1", "t2": "admin:ops"})

    assert identity.resolve("t1") == Actor.provider("doctor-1")
    with pytest.raises(Unauthorized):
        identity.resolve("unknown")
    with pytest.raises(Unauthorized):
        identity.resolve(None)

    session = make_session()
    assert identity.is_authorized_reviewer(Actor.provider("doctor-1"), session)
    assert identity.is_authorized_reviewer(Actor.admin("ops"), session)
    assert not identity.is_authorized_reviewer(Actor.provider("doctor-2"), session)
    assert not identity.is_authorized_reviewer(Actor.patient("patient-1"), session)
