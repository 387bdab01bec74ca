from datetime import datetime, timedelta, timezone

import pytest

from printchat.models.chat import Audience, PrintJob
from printchat.models.user import User, UserRole
from printchat.services.chat_service import ChatService
from printchat.services.lock_service import SessionLockManager
from printchat.storage.memory import InMemoryChatStore

T0 = datetime(2025, 10, 10, 10, 0, tzinfo=timezone.utc)

JOB_ID = "job-000000abc123"
CUSTOMER_ID = "customer-1"
AGENT_ID = "agent-1"
OTHER_CUSTOMER_ID = "customer-2"


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingBroadcaster:
    """Captures events the chat service emits instead of writing to sockets"""

    def __init__(self):
        self.events = []

    async def emit_to_session(self, session_id, event_type, data, exclude=None):
        self.events.append(("session", session_id, event_type, data))
        return 1

    async def emit_to_user(self, user_id, event_type, data):
        self.events.append(("user", user_id, event_type, data))
        return 1

    def of_type(self, event_type):
        return [e for e in self.events if e[2] == event_type]


def customer(user_id: str = CUSTOMER_ID) -> User:
    return User(user_id=user_id, role=UserRole.CUSTOMER)


def agent(user_id: str = AGENT_ID) -> User:
    return User(user_id=user_id, role=UserRole.PRINT_AGENT)


def admin(user_id: str = "admin-1") -> User:
    return User(user_id=user_id, role=UserRole.ADMIN)


def seed_job(store: InMemoryChatStore, job_id: str = JOB_ID, pages: int = 12, is_color: bool = True,
             customer_id: str = CUSTOMER_ID, agent_id: str = AGENT_ID) -> PrintJob:
    job = PrintJob(
        id=job_id,
        customer_id=customer_id,
        print_agent_id=agent_id,
        print_job_title="Thesis",
        pages=pages,
        is_color=is_color,
    )
    store.add_print_job(job)
    return job


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    store = InMemoryChatStore()
    store.add_user(CUSTOMER_ID, Audience.CUSTOMER, full_name="Cathy Customer", email="cathy@example.com")
    store.add_user(OTHER_CUSTOMER_ID, Audience.CUSTOMER, full_name="Otto Other")
    store.add_user(AGENT_ID, Audience.AGENT, full_name="Arun Agent", business_name="Arun Prints")
    seed_job(store)
    return store


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def service(store, broadcaster, clock):
    return ChatService(
        store,
        locks=SessionLockManager(),
        broadcaster=broadcaster,
        clock=clock,
    )


@pytest.fixture
async def session(service):
    return await service.create_session(JOB_ID, CUSTOMER_ID, AGENT_ID)
