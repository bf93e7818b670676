"""
Shared fixtures for the sync orchestrator tests.

Every test gets its own SQLite file registry, so single-flight and cleanup
behaviour run against the real partial unique index rather than a mock.
"""

import asyncio
import os
import sys

import pytest
import pytest_asyncio

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# auth_service refuses to import without a secret
os.environ.setdefault("JWT_SECRET", "test-secret-not-for-production")

from database import build_engine, build_session_factory, create_tables
from operation_registry import OperationRegistry
from supabase_contacts import SupabaseContactStore
from sync_backends import TargetCRM
from sync_executor import SyncExecutor


CONTACT_1 = {
    "id": 1,
    "email": "ada@example.com",
    "hs_object_id": "c1",
    "email_verification_status": "unverified",
    "firstname": "Ada",
    "lastname": "Lovelace",
}

CONTACT_2 = {
    "id": 2,
    "email": "grace@example.com",
    "hs_object_id": "c2",
    "email_verification_status": "verified",
    "firstname": "Grace",
    "lastname": "Hopper",
}

CONTACT_NO_EMAIL = {
    "id": 3,
    "email": None,
    "hs_object_id": "c3",
    "email_verification_status": "pending",
}


class FakeSourceStore(SupabaseContactStore):
    """Supabase store with an in-memory table; keeps the real validate_for_sync."""

    def __init__(self, contacts=None, error: Exception = None, delay: float = 0):
        super().__init__(supabase=None)
        self.contacts = {c["id"]: dict(c) for c in (contacts or [])}
        self.error = error
        self.delay = delay
        self.calls = []

    async def get_by_id(self, contact_id):
        self.calls.append(contact_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.contacts.get(contact_id)


class FakeTargetCRM(TargetCRM):
    """HubSpot stand-in. `gate` blocks update_field until set."""

    def __init__(
        self,
        contacts=None,
        exists_error: Exception = None,
        update_error: Exception = None,
        delay: float = 0,
        gate: asyncio.Event = None,
    ):
        self.contacts = dict(contacts or {})
        self.exists_error = exists_error
        self.update_error = update_error
        self.delay = delay
        self.gate = gate
        self.update_started = asyncio.Event()
        self.updates = []

    async def exists(self, contact_id):
        if self.exists_error:
            raise self.exists_error
        return contact_id in self.contacts

    async def update_field(self, contact_id, value):
        self.update_started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.update_error:
            raise self.update_error
        self.updates.append((contact_id, value))
        self.contacts[contact_id] = value
        return {"id": contact_id, "properties": {"email_verification_status": value}}


@pytest_asyncio.fixture
async def registry(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync_operations.db'}")
    await create_tables(engine)
    yield OperationRegistry(build_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def source():
    return FakeSourceStore([CONTACT_1, CONTACT_2, CONTACT_NO_EMAIL])


@pytest.fixture
def target():
    return FakeTargetCRM({"c1": "unverified", "c2": "verified", "c3": "pending"})


@pytest.fixture
def executor(registry, source, target):
    return SyncExecutor(registry, source, target, step_timeout=2.0)
