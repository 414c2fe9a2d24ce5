"""
Shared fixtures: a controllable clock, an isolated in-memory database per
test, a set of actors in one tenant, and an engine whose event bus delivers
inline so notification assertions are deterministic.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from application import (
    CreateRequestCommand,
    DispatchEngine,
    RegisterProviderCommand,
    TransitionCommand,
    UpsertSlaPolicyCommand,
)
from infrastructure import (
    InMemoryDatabase,
    InMemoryUnitOfWork,
    RecordingNotificationDispatcher,
    build_event_bus,
)
from model import Actor, Priority, ProviderKind, ProviderStatus, Role, Stage

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

# 1 degree of latitude on a 6371 km sphere
KM_PER_DEGREE = 6371.0 * 3.141592653589793 / 180.0


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    return InMemoryDatabase(cache_ttl_seconds=30.0)


@pytest.fixture
def uow(db):
    return InMemoryUnitOfWork(db)


@pytest.fixture
def dispatcher():
    return RecordingNotificationDispatcher()


@pytest.fixture
def engine(clock, dispatcher):
    bus = build_event_bus(dispatcher, workers=0)
    return DispatchEngine(publisher=bus, clock=clock)


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------

@pytest.fixture
def company_id():
    return uuid.uuid4()


@pytest.fixture
def branch_id():
    return uuid.uuid4()


def _actor(role, company_id, branch_id=None):
    return Actor(id=uuid.uuid4(), role=role, company_id=company_id, branch_id=branch_id)


@pytest.fixture
def admin(company_id):
    return _actor(Role.ADMIN, company_id)


@pytest.fixture
def manager(company_id):
    return _actor(Role.MANAGER, company_id)


@pytest.fixture
def staff(company_id, branch_id):
    return _actor(Role.STAFF, company_id, branch_id)


@pytest.fixture
def customer(company_id, branch_id):
    return _actor(Role.CUSTOMER, company_id, branch_id)


@pytest.fixture
def technician(company_id):
    return _actor(Role.TECHNICIAN, company_id)


@pytest.fixture
def outsider():
    return _actor(Role.ADMIN, uuid.uuid4())


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

@pytest.fixture
def add_policy(engine, uow, admin):
    def _add(priority=Priority.HIGH, category=None, accept=30, arrive=120, complete=480):
        return engine.upsert_sla_policy(
            UpsertSlaPolicyCommand(
                actor=admin,
                priority=priority,
                category=category,
                accept_within_min=accept,
                arrive_within_min=arrive,
                complete_within_min=complete,
            ),
            uow,
        )
    return _add


@pytest.fixture
def create_request(engine, uow, customer):
    def _create(actor=None, **overrides):
        fields = dict(
            actor=actor or customer,
            title="Leaking pipe under sink",
            category="plumbing",
            priority=Priority.HIGH,
            initial_stage=Stage.SUBMITTED,
        )
        fields.update(overrides)
        return engine.create_request(CreateRequestCommand(**fields), uow)
    return _create


@pytest.fixture
def add_provider(engine, uow, admin):
    def _add(distance_km=None, **overrides):
        """Providers are placed due north of (0, 0) at the given distance."""
        fields = dict(
            actor=admin,
            name="Provider",
            kind=ProviderKind.TECHNICIAN,
            specializations=["plumbing"],
            status=ProviderStatus.AVAILABLE,
            rating=4.0,
        )
        if distance_km is not None:
            fields["latitude"] = distance_km / KM_PER_DEGREE
            fields["longitude"] = 0.0
        fields.update(overrides)
        return engine.register_provider(RegisterProviderCommand(**fields), uow)
    return _add


@pytest.fixture
def move(engine, uow):
    """Walk a request through a list of stages, one transition each."""
    def _move(request_id, stages, actor, **kwargs):
        result = None
        for stage in stages:
            result = engine.transition(
                TransitionCommand(
                    request_id=uuid.UUID(str(request_id)),
                    target_stage=stage,
                    actor=actor,
                    **kwargs,
                ),
                uow,
            )
        return result
    return _move


TO_SCHEDULED = [
    Stage.UNDER_REVIEW,
    Stage.APPROVED,
    Stage.ASSIGNED,
    Stage.ACCEPTED,
    Stage.SCHEDULED,
]

SCHEDULED_TO_CLOSED = [
    Stage.IN_PROGRESS,
    Stage.PENDING_INSPECTION,
    Stage.INSPECTION_PASSED,
    Stage.COMPLETED,
    Stage.BILLED,
    Stage.PAID,
    Stage.CLOSED,
]
