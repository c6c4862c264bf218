"""
Shared fixtures: an in-memory document store, a controllable clock and
helpers for seeding customers, projects and users.
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add the project root to the Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from crm.models import CustomerProfile, Project, StageContent, StageTask, UserRef
from crm.services import (
    DeadLetterQueue,
    LeadScoreService,
    NotificationSink,
    QuotationService,
)
from crm.utils.memory_store import InMemoryDocumentStore


class FakeClock:
    """Callable clock that only moves when told to"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 14, 30, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def dead_letters(store):
    return DeadLetterQueue(store)


@pytest.fixture
def notifications(store, dead_letters):
    return NotificationSink(store, dead_letters)


@pytest.fixture
def lead_scores(store, dead_letters, clock):
    return LeadScoreService(store, dead_letters, clock)


@pytest.fixture
def quotations(store, clock):
    return QuotationService(store, clock)


@pytest.fixture
def alice():
    return UserRef(id="alice", name="Alice", email="alice@example.com")


@pytest.fixture
def bob():
    return UserRef(id="bob", name="Bob", email="bob@example.com")


@pytest.fixture
def carol():
    return UserRef(id="carol", name="Carol", email="carol@example.com")


def save_user(store, user: UserRef):
    store.set(f"users/{user.id}", user.model_dump(mode="json", exclude={"id"}))


def save_customer(store, customer_id="cust-1", tasks=None, **fields) -> CustomerProfile:
    """Store a customer on the default Working/Qualified/Converted pipeline"""
    customer = CustomerProfile(id=customer_id, **fields)
    for stage, names in (tasks or {}).items():
        customer.stage_data[stage] = StageContent(tasks=[StageTask(name=n) for n in names])
    store.set(f"customerProfiles/{customer_id}", customer.model_dump(mode="json", exclude={"id"}))
    return customer


def save_project(store, project_id="proj-1", **fields) -> Project:
    project = Project(id=project_id, name=fields.pop("name", "Website"), **fields)
    store.set(f"projects/{project_id}", project.model_dump(mode="json", exclude={"id"}))
    return project
