"""
infrastructure.py

In-memory implementation of all repository interfaces, the Unit of Work,
and the in-process event bus.

Everything is stored in plain Python dicts keyed by UUID, guarded by one
lock.  Repositories hand out deep copies, so a caller can never mutate
stored state behind the Unit of Work's back.  Writes are buffered and
applied at commit(), where the optimistic version check runs under the
lock: either every buffered write lands, or none does.

To swap in a real database (e.g. SQLAlchemy + PostgreSQL) later, implement
the same Abstract* interfaces from application.py and override get_uow() in
api.py:

    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(session)

The compare-and-swap in InMemoryMaintenanceRequestRepository.save() then
becomes `UPDATE ... WHERE id = :id AND version = :expected`.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Hashable, List, Optional

from application import (
    AbstractEventPublisher,
    AbstractMaintenanceRequestRepository,
    AbstractNotificationDispatcher,
    AbstractProviderRepository,
    AbstractRequestEventRepository,
    AbstractSlaPolicyRepository,
    AbstractUnitOfWork,
    ConflictError,
    TransitionNotice,
)
from config import settings
from model import MaintenanceRequest, Priority, Provider, RequestEvent, SlaPolicy

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A plain dict that stores and returns copies of its objects."""

    def fetch(self, key: uuid.UUID):
        obj = self.get(key)
        return copy.deepcopy(obj) if obj is not None else None

    def put(self, obj) -> None:
        self[obj.id] = copy.deepcopy(obj)

    def all(self) -> list:
        return [copy.deepcopy(v) for v in self.values()]


class _TtlCache:
    """Tiny read-through cache for read-mostly lookups (policies, providers)."""

    _MISSING = object()

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[Hashable, tuple] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        now = self._clock()
        with self._lock:
            value, expires = self._entries.get(key, (self._MISSING, 0.0))
            if value is not self._MISSING and now < expires:
                self.hits += 1
                return copy.deepcopy(value)
            self.misses += 1
        value = loader()
        if self._ttl > 0:
            with self._lock:
                self._entries[key] = (value, now + self._ttl)
        return copy.deepcopy(value)

    def invalidate(self) -> None:
        with self._lock:
            self._entries.clear()


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process - restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self, cache_ttl_seconds: float = 30.0):
        self.lock = threading.RLock()
        self.requests:     _Store = _Store()
        self.providers:    _Store = _Store()
        self.sla_policies: _Store = _Store()
        self.events:       _Store = _Store()
        self.policy_cache = _TtlCache(cache_ttl_seconds)
        self.provider_cache = _TtlCache(cache_ttl_seconds)
        self._sequence = itertools.count(1)

    def next_sequence(self) -> int:
        return next(self._sequence)


# Module-level singleton - shared across all requests
_db = InMemoryDatabase(settings.cache_ttl_seconds)


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryMaintenanceRequestRepository(AbstractMaintenanceRequestRepository):
    def __init__(self, db: InMemoryDatabase, uow: "InMemoryUnitOfWork"):
        self._db = db
        self._uow = uow

    def get(self, request_id):
        with self._db.lock:
            return self._db.requests.fetch(request_id)

    def list_for_company(self, company_id, branch_id=None):
        with self._db.lock:
            rows = self._db.requests.all()
        return [
            r for r in rows
            if r.company_id == company_id
            and (branch_id is None or r.branch_id is None or r.branch_id == branch_id)
        ]

    def add(self, request: MaintenanceRequest) -> None:
        def check():
            if request.id in self._db.requests:
                raise ConflictError(f"Request {request.id} already exists.")

        def write():
            self._db.requests.put(request)

        self._uow.stage(check, write)

    def save(self, request: MaintenanceRequest, expected_version: int) -> None:
        def check():
            stored = self._db.requests.get(request.id)
            actual = stored.version if stored is not None else None
            if actual != expected_version:
                raise ConflictError(
                    f"Request {request.id} changed concurrently "
                    f"(expected version {expected_version}, found {actual}).",
                    expected_version=expected_version,
                    actual_version=actual,
                )

        def write():
            request.version = expected_version + 1
            self._db.requests.put(request)

        self._uow.stage(check, write)


class InMemoryProviderRepository(AbstractProviderRepository):
    def __init__(self, db: InMemoryDatabase, uow: "InMemoryUnitOfWork"):
        self._db = db
        self._uow = uow

    def get(self, provider_id):
        with self._db.lock:
            return self._db.providers.fetch(provider_id)

    def list_active(self, company_id, specialization=None):
        def load():
            with self._db.lock:
                return [
                    p for p in self._db.providers.all()
                    if p.company_id == company_id and p.is_active
                ]

        roster: List[Provider] = self._db.provider_cache.get_or_load(company_id, load)
        if specialization:
            roster = [p for p in roster if p.offers(specialization)]
        return roster

    def save(self, provider: Provider) -> None:
        def write():
            self._db.providers.put(provider)
            self._db.provider_cache.invalidate()

        self._uow.stage(None, write)


class InMemorySlaPolicyRepository(AbstractSlaPolicyRepository):
    def __init__(self, db: InMemoryDatabase, uow: "InMemoryUnitOfWork"):
        self._db = db
        self._uow = uow

    def get(self, priority: Priority, category: Optional[str]):
        wanted = category.strip().lower() if category else None
        for policy in self.list_for_priority(priority):
            have = policy.category.strip().lower() if policy.category else None
            if have == wanted:
                return policy
        return None

    def list_for_priority(self, priority: Priority) -> List[SlaPolicy]:
        def load():
            with self._db.lock:
                return [p for p in self._db.sla_policies.all() if p.priority == priority]

        return self._db.policy_cache.get_or_load(priority, load)

    def save(self, policy: SlaPolicy) -> None:
        def write():
            self._db.sla_policies.put(policy)
            self._db.policy_cache.invalidate()

        self._uow.stage(None, write)


class InMemoryRequestEventRepository(AbstractRequestEventRepository):
    """Append-only; the sequence number is assigned when the append commits."""

    def __init__(self, db: InMemoryDatabase, uow: "InMemoryUnitOfWork"):
        self._db = db
        self._uow = uow

    def append(self, event: RequestEvent) -> None:
        def check():
            if event.id in self._db.events:
                raise ConflictError(f"Event {event.id} was already appended.")

        def write():
            event.sequence = self._db.next_sequence()
            self._db.events.put(event)

        self._uow.stage(check, write)

    def list_for_request(self, request_id):
        with self._db.lock:
            rows = [e for e in self._db.events.all() if e.request_id == request_id]
        return sorted(rows, key=lambda e: e.order_key)


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps all in-memory repositories.

    Reads go straight to the shared store.  Writes are staged as
    (check, write) pairs; commit() runs every check and then every write
    while holding the database lock, so a failed version check leaves the
    store untouched.  rollback() discards whatever is staged.
    """

    def __init__(self, db: InMemoryDatabase = _db):
        self._db = db
        self._staged: List[tuple] = []
        self.requests     = InMemoryMaintenanceRequestRepository(db, self)
        self.providers    = InMemoryProviderRepository(db, self)
        self.sla_policies = InMemorySlaPolicyRepository(db, self)
        self.events       = InMemoryRequestEventRepository(db, self)

    def stage(self, check: Optional[Callable[[], None]], write: Callable[[], None]) -> None:
        self._staged.append((check, write))

    def commit(self) -> None:
        if not self._staged:
            return
        staged, self._staged = self._staged, []
        with self._db.lock:
            for check, _ in staged:
                if check is not None:
                    check()
            for _, write in staged:
                write()

    def rollback(self) -> None:
        self._staged = []


# ---------------------------------------------------------------------------
# Event bus and notifications
# ---------------------------------------------------------------------------

Subscriber = Callable[[TransitionNotice], None]


class InProcessEventBus(AbstractEventPublisher):
    """
    Publish/subscribe fan-out.

    Each subscriber runs on a worker thread (or inline when no executor is
    given, which keeps tests deterministic).  A failing subscriber is logged
    with its context and never affects the publisher or other subscribers.
    """

    def __init__(self, executor: Optional[ThreadPoolExecutor] = None):
        self._executor = executor
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(subscriber)

    def publish(self, notice: TransitionNotice) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            if self._executor is None:
                self._deliver(subscriber, notice)
            else:
                try:
                    self._executor.submit(self._deliver, subscriber, notice)
                except RuntimeError:
                    logger.warning(
                        "Event bus is shut down; dropping %s for request %s",
                        notice.event_type.value, notice.request_id,
                    )

    @staticmethod
    def _deliver(subscriber: Subscriber, notice: TransitionNotice) -> None:
        try:
            subscriber(notice)
        except Exception:
            logger.warning(
                "Subscriber %s failed for %s on request %s (%s -> %s)",
                getattr(subscriber, "__name__", type(subscriber).__name__),
                notice.event_type.value,
                notice.request_id,
                notice.from_stage.value if notice.from_stage else None,
                notice.to_stage.value,
                exc_info=True,
            )

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


class NotificationSubscriber:
    """Bridges bus notices to the external notification dispatcher."""

    def __init__(self, dispatcher: AbstractNotificationDispatcher):
        self._dispatcher = dispatcher

    def __call__(self, notice: TransitionNotice) -> None:
        self._dispatcher.notify(notice.request_id, notice.event_type.value, notice.as_payload())


class LoggingNotificationDispatcher(AbstractNotificationDispatcher):
    """Default dispatcher: records the notification in the application log."""

    def notify(self, request_id: uuid.UUID, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info(
            "Notify %s for request %s: %s -> %s",
            event_type, request_id, payload.get("from"), payload.get("to"),
        )


class RecordingNotificationDispatcher(AbstractNotificationDispatcher):
    """Keeps every notification in memory; handy for demos and tests."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def notify(self, request_id: uuid.UUID, event_type: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.sent.append({"request_id": request_id, "event_type": event_type, **payload})


def build_event_bus(
    dispatcher: Optional[AbstractNotificationDispatcher] = None,
    workers: int = 4,
) -> InProcessEventBus:
    """Event bus with the notification subscriber attached.  workers=0 → inline delivery."""
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="notify") if workers > 0 else None
    bus = InProcessEventBus(executor)
    bus.subscribe(NotificationSubscriber(dispatcher or LoggingNotificationDispatcher()))
    return bus
