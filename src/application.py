"""
application.py

Application layer for the Maintenance Request Lifecycle & Dispatch Engine.

Overview
--------
The application layer sits between the presentation layer (API) and the
domain / service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry only the data
     the presentation layer needs - no raw domain objects are leaked upward.
  2. Declaring abstract Repository interfaces so that the application layer
     remains fully persistence-agnostic (implementations live in infrastructure.py).
  3. Declaring the UnitOfWork abstraction so that the request row and its
     ledger event are committed atomically, guarded by an optimistic version check.
  4. Declaring the event publisher / notification dispatcher seams through
     which side effects leave the engine, after commit and without blocking.
  5. Implementing Use Case handlers - one class per public operation.

Structure
---------
Errors
    ApplicationError, NotFoundError, AuthorizationError,
    TransitionError, InvalidTransition, Forbidden, TenantMismatch,
    AlreadyTerminal, ConflictError, NotificationFailed

DTOs
    MaintenanceRequestDTO, RequestEventDTO, ProviderDTO, ProviderMatchDTO,
    MatchResultDTO, SlaStatusDTO, TransitionResultDTO, SlaViolationDTO,
    SlaDashboardDTO, SlaPolicyDTO, TransitionEdgeDTO

Repository interfaces
    AbstractMaintenanceRequestRepository
    AbstractProviderRepository
    AbstractSlaPolicyRepository
    AbstractRequestEventRepository

Unit of Work
    AbstractUnitOfWork

Side-effect seams
    TransitionNotice, AbstractEventPublisher, AbstractNotificationDispatcher

Use Cases
    --- Request lifecycle ---
    CreateRequestUseCase
    TransitionRequestUseCase
    RetryingTransitionUseCase
    GetRequestUseCase
    ListRequestsUseCase
    GetHistoryUseCase

    --- Dispatch ---
    MatchProviderUseCase
    RegisterProviderUseCase
    UpdateProviderLocationUseCase

    --- SLA ---
    GetSlaStatusUseCase
    ScanSlaViolationsUseCase
    GetSlaDashboardUseCase
    UpsertSlaPolicyUseCase

    --- Workflow ---
    ListTransitionsUseCase

Facade
    DispatchEngine - the public operation surface, wired once per process.

Design notes
------------
- Use cases receive commands and return DTOs; no domain objects cross the
  application boundary.
- Validation failures (InvalidTransition, Forbidden, TenantMismatch,
  AlreadyTerminal) are raised synchronously.  ConflictError is retryable.
- "No SLA policy" and "no provider match" are typed outcomes, not errors.
- Notices are published only after a successful commit; publishing never
  raises into the caller.
"""

from __future__ import annotations

import abc
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt

from model import (
    Actor,
    EventType,
    MaintenanceRequest,
    Priority,
    Provider,
    ProviderKind,
    ProviderMatch,
    ProviderStatus,
    RequestEvent,
    Role,
    SlaClock,
    SlaPolicy,
    Stage,
)
from service import (
    DEFAULT_AVAILABLE_STATUSES,
    CheckCode,
    EventLedgerService,
    ProviderMatcher,
    RequestService,
    RequestStateMachine,
    SlaHealth,
    SlaMonitorService,
    SlaPolicyResolver,
    SlaViolation,
    SlaWindowService,
    _check_coordinates,
    _utcnow,
)
from workflow import TransitionTable, default_transition_table, is_terminal

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""


class AuthorizationError(ApplicationError):
    """Raised when the acting user lacks the required role or scope."""


class TransitionError(ApplicationError):
    """Base class for synchronous transition validation failures."""


class InvalidTransition(TransitionError):
    """The (current → target) edge is not in the transition table."""


class Forbidden(TransitionError, AuthorizationError):
    """The actor's role is not allowed on the edge."""


class TenantMismatch(TransitionError, AuthorizationError):
    """The actor is not scoped to the request's company / branch."""


class AlreadyTerminal(TransitionError):
    """The request is closed, archived, cancelled or rejected."""


class ConflictError(ApplicationError):
    """Optimistic-lock failure: the row changed since it was read."""

    def __init__(self, message: str, expected_version: Optional[int] = None,
                 actual_version: Optional[int] = None):
        super().__init__(message)
        self.expected_version = expected_version
        self.actual_version = actual_version


class NotificationFailed(Exception):
    """Raised by dispatcher implementations; always caught and logged by the bus."""


_CHECK_ERRORS = {
    CheckCode.INVALID_TRANSITION: InvalidTransition,
    CheckCode.FORBIDDEN: Forbidden,
    CheckCode.TENANT_MISMATCH: TenantMismatch,
    CheckCode.ALREADY_TERMINAL: AlreadyTerminal,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _sid(value: Optional[uuid.UUID]) -> Optional[str]:
    return str(value) if value else None


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

@dataclass
class MaintenanceRequestDTO:
    id: str
    company_id: str
    branch_id: Optional[str]
    title: str
    description: str
    category: str
    subcategory: str
    priority: str
    stage: str
    status: str
    sla_accept_due: Optional[str]
    sla_arrive_due: Optional[str]
    sla_complete_due: Optional[str]
    sla_policy_missing: bool
    latitude: Optional[float]
    longitude: Optional[float]
    location: str
    assigned_provider_id: Optional[str]
    proposed_provider_id: Optional[str]
    created_at: str
    updated_at: str
    archived_at: Optional[str]
    version: int


@dataclass
class RequestEventDTO:
    id: str
    request_id: str
    sequence: int
    event_type: str
    from_stage: Optional[str]
    to_stage: str
    actor_id: Optional[str]
    actor_role: Optional[str]
    occurred_at: str
    metadata: Dict[str, Any]
    note: str


@dataclass
class ProviderDTO:
    id: str
    company_id: str
    name: str
    kind: str
    specializations: List[str]
    status: str
    is_active: bool
    current_latitude: Optional[float]
    current_longitude: Optional[float]
    location_updated_at: Optional[str]
    service_radius_km: Optional[float]
    rating: float


@dataclass
class ProviderMatchDTO:
    provider: ProviderDTO
    distance_km: float


@dataclass
class MatchResultDTO:
    """matched == False is the "no provider match" outcome; `reason` says why."""
    request_id: str
    matched: bool
    reason: Optional[str]
    candidates: List[ProviderMatchDTO]


@dataclass
class SlaStatusDTO:
    request_id: str
    stage: str
    accept_due: Optional[str]
    arrive_due: Optional[str]
    complete_due: Optional[str]
    breached: Dict[str, bool]
    closed_at: Dict[str, Optional[str]]
    policy_missing: bool
    evaluated_at: str


@dataclass
class TransitionResultDTO:
    request: MaintenanceRequestDTO
    changed: bool
    event: Optional[RequestEventDTO]
    proposed_provider: Optional[ProviderMatchDTO]
    sla_policy_found: Optional[bool]


@dataclass
class SlaViolationDTO:
    request_id: str
    violation_type: str
    stage: str
    due_at: str
    minutes_overdue: int


@dataclass
class SlaDashboardDTO:
    total_open: int
    on_time: int
    at_risk: int
    overdue: int
    violations: List[SlaViolationDTO]
    evaluated_at: str


@dataclass
class SlaPolicyDTO:
    id: str
    priority: str
    category: Optional[str]
    accept_within_min: int
    arrive_within_min: int
    complete_within_min: int


@dataclass
class TransitionEdgeDTO:
    from_stage: str
    to_stage: str
    roles: List[str]


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def request(r: MaintenanceRequest) -> MaintenanceRequestDTO:
        return MaintenanceRequestDTO(
            id=str(r.id),
            company_id=str(r.company_id),
            branch_id=_sid(r.branch_id),
            title=r.title,
            description=r.description,
            category=r.category,
            subcategory=r.subcategory,
            priority=r.priority.value,
            stage=r.stage.value,
            status=r.status.value,
            sla_accept_due=_fmt(r.sla_accept_due),
            sla_arrive_due=_fmt(r.sla_arrive_due),
            sla_complete_due=_fmt(r.sla_complete_due),
            sla_policy_missing=r.sla_policy_missing,
            latitude=r.latitude,
            longitude=r.longitude,
            location=r.location,
            assigned_provider_id=_sid(r.assigned_provider_id),
            proposed_provider_id=_sid(r.proposed_provider_id),
            created_at=_fmt(r.created_at),
            updated_at=_fmt(r.updated_at),
            archived_at=_fmt(r.archived_at),
            version=r.version,
        )

    @staticmethod
    def event(e: RequestEvent) -> RequestEventDTO:
        return RequestEventDTO(
            id=str(e.id),
            request_id=str(e.request_id),
            sequence=e.sequence,
            event_type=e.event_type.value,
            from_stage=e.from_stage.value if e.from_stage else None,
            to_stage=e.to_stage.value,
            actor_id=_sid(e.actor_id),
            actor_role=e.actor_role.value if e.actor_role else None,
            occurred_at=_fmt(e.occurred_at),
            metadata=dict(e.metadata),
            note=e.note,
        )

    @staticmethod
    def provider(p: Provider) -> ProviderDTO:
        return ProviderDTO(
            id=str(p.id),
            company_id=str(p.company_id),
            name=p.name,
            kind=p.kind.value,
            specializations=list(p.specializations),
            status=p.status.value,
            is_active=p.is_active,
            current_latitude=p.current_latitude,
            current_longitude=p.current_longitude,
            location_updated_at=_fmt(p.location_updated_at),
            service_radius_km=p.service_radius_km,
            rating=p.rating,
        )

    @staticmethod
    def match(m: ProviderMatch) -> ProviderMatchDTO:
        return ProviderMatchDTO(
            provider=_Assembler.provider(m.provider),
            distance_km=round(m.distance_km, 3),
        )

    @staticmethod
    def violation(v: SlaViolation) -> SlaViolationDTO:
        return SlaViolationDTO(
            request_id=str(v.request_id),
            violation_type=v.clock.value,
            stage=v.stage.value,
            due_at=_fmt(v.due_at),
            minutes_overdue=v.minutes_overdue,
        )

    @staticmethod
    def policy(p: SlaPolicy) -> SlaPolicyDTO:
        return SlaPolicyDTO(
            id=str(p.id),
            priority=p.priority.value,
            category=p.category,
            accept_within_min=p.accept_within_min,
            arrive_within_min=p.arrive_within_min,
            complete_within_min=p.complete_within_min,
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractMaintenanceRequestRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, request_id: uuid.UUID) -> Optional[MaintenanceRequest]: ...
    @abc.abstractmethod
    def list_for_company(
        self, company_id: uuid.UUID, branch_id: Optional[uuid.UUID] = None
    ) -> List[MaintenanceRequest]: ...
    @abc.abstractmethod
    def add(self, request: MaintenanceRequest) -> None: ...
    @abc.abstractmethod
    def save(self, request: MaintenanceRequest, expected_version: int) -> None:
        """Write only if the stored version still equals expected_version (else ConflictError)."""


class AbstractProviderRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, provider_id: uuid.UUID) -> Optional[Provider]: ...
    @abc.abstractmethod
    def list_active(
        self, company_id: uuid.UUID, specialization: Optional[str] = None
    ) -> List[Provider]: ...
    @abc.abstractmethod
    def save(self, provider: Provider) -> None: ...


class AbstractSlaPolicyRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, priority: Priority, category: Optional[str]) -> Optional[SlaPolicy]: ...
    @abc.abstractmethod
    def list_for_priority(self, priority: Priority) -> List[SlaPolicy]: ...
    @abc.abstractmethod
    def save(self, policy: SlaPolicy) -> None: ...


class AbstractRequestEventRepository(abc.ABC):
    """Append-only: there is deliberately no update or delete."""
    @abc.abstractmethod
    def append(self, event: RequestEvent) -> None: ...
    @abc.abstractmethod
    def list_for_request(self, request_id: uuid.UUID) -> List[RequestEvent]: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.requests.save(request, expected_version=3)
            uow.events.append(event)
            uow.commit()
    """
    requests: AbstractMaintenanceRequestRepository
    providers: AbstractProviderRepository
    sla_policies: AbstractSlaPolicyRepository
    events: AbstractRequestEventRepository

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# SIDE-EFFECT SEAMS
# ===========================================================================

@dataclass(frozen=True)
class TransitionNotice:
    """Typed event published once per committed ledger event."""
    request_id: uuid.UUID
    event_type: EventType
    from_stage: Optional[Stage]
    to_stage: Stage
    actor_id: Optional[uuid.UUID]
    occurred_at: datetime
    company_id: uuid.UUID
    payload: Dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> Dict[str, Any]:
        return {
            "request_id": str(self.request_id),
            "event_type": self.event_type.value,
            "from": self.from_stage.value if self.from_stage else None,
            "to": self.to_stage.value,
            "actor_id": _sid(self.actor_id),
            "company_id": str(self.company_id),
            "occurred_at": _fmt(self.occurred_at),
            **self.payload,
        }


class AbstractEventPublisher(abc.ABC):
    """Publish/subscribe seam.  publish() must never raise into the caller."""

    @abc.abstractmethod
    def publish(self, notice: TransitionNotice) -> None: ...


class AbstractNotificationDispatcher(abc.ABC):
    """External SMS / WhatsApp / push / email collaborator (fire-and-forget)."""

    @abc.abstractmethod
    def notify(self, request_id: uuid.UUID, event_type: str, payload: Dict[str, Any]) -> None: ...


def _notice_for(event: RequestEvent, request: MaintenanceRequest) -> TransitionNotice:
    return TransitionNotice(
        request_id=event.request_id,
        event_type=event.event_type,
        from_stage=event.from_stage,
        to_stage=event.to_stage,
        actor_id=event.actor_id,
        occurred_at=event.occurred_at,
        company_id=request.company_id,
        payload=dict(event.metadata),
    )


def _publish(publisher: Optional[AbstractEventPublisher], notices: List[TransitionNotice]) -> None:
    if publisher is None:
        return
    for notice in notices:
        try:
            publisher.publish(notice)
        except Exception:
            logger.warning(
                "Publishing %s for request %s failed; transition already committed",
                notice.event_type.value, notice.request_id, exc_info=True,
            )


# ===========================================================================
# SERVICE SINGLETONS (stateless, shared across use cases)
# ===========================================================================

_request_svc = RequestService()
_ledger_svc = EventLedgerService()
_sla_resolver = SlaPolicyResolver()
_windows_svc = SlaWindowService(_sla_resolver)
_monitor_svc = SlaMonitorService(_windows_svc)

_ADMIN_ROLES = frozenset({Role.ADMIN, Role.MANAGER, Role.SYSTEM})


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_request_or_raise(uow: AbstractUnitOfWork, request_id: uuid.UUID) -> MaintenanceRequest:
    request = uow.requests.get(request_id)
    if request is None:
        raise NotFoundError(f"MaintenanceRequest {request_id} not found.")
    return request


def _get_provider_or_raise(uow: AbstractUnitOfWork, provider_id: uuid.UUID) -> Provider:
    provider = uow.providers.get(provider_id)
    if provider is None:
        raise NotFoundError(f"Provider {provider_id} not found.")
    return provider


def _require_scope(actor: Actor, request: MaintenanceRequest) -> None:
    """Raise TenantMismatch unless the actor may see / act on the request."""
    if actor.company_id != request.company_id:
        raise TenantMismatch(f"Request {request.id} belongs to another company.")
    if (
        actor.branch_id is not None
        and request.branch_id is not None
        and actor.branch_id != request.branch_id
    ):
        raise TenantMismatch(f"Request {request.id} belongs to another branch.")


def _require_admin(actor: Actor) -> None:
    if actor.role not in _ADMIN_ROLES:
        raise AuthorizationError(
            f"Role '{actor.role.value}' may not perform this operation; "
            f"requires one of {sorted(r.value for r in _ADMIN_ROLES)}."
        )


def _policies_for(uow: AbstractUnitOfWork, priority: Priority) -> List[SlaPolicy]:
    return uow.sla_policies.list_for_priority(priority)


def _declined_providers(uow: AbstractUnitOfWork, request_id: uuid.UUID) -> List[uuid.UUID]:
    """Providers that turned this request down, according to its ledger."""
    return [
        uuid.UUID(e.metadata["declined_provider_id"])
        for e in uow.events.list_for_request(request_id)
        if e.metadata.get("declined_provider_id")
    ]


# ===========================================================================
# USE CASES - REQUEST LIFECYCLE
# ===========================================================================

@dataclass
class CreateRequestCommand:
    actor: Actor
    title: str
    category: str
    priority: Priority
    initial_stage: Stage = Stage.SUBMITTED
    description: str = ""
    subcategory: str = ""
    branch_id: Optional[uuid.UUID] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location: str = ""


class CreateRequestUseCase:
    """
    Create a request in `draft` or `submitted`.  Requests created directly
    in `submitted` start their SLA clocks at creation time.
    """

    def __init__(
        self,
        state_machine: Optional[RequestStateMachine] = None,
        publisher: Optional[AbstractEventPublisher] = None,
        clock: Clock = _utcnow,
    ):
        self._sm = state_machine or RequestStateMachine(default_transition_table())
        self._publisher = publisher
        self._clock = clock

    def execute(self, cmd: CreateRequestCommand, uow: AbstractUnitOfWork) -> MaintenanceRequestDTO:
        actor = cmd.actor
        branch_id = cmd.branch_id or actor.branch_id
        if actor.branch_id is not None and branch_id != actor.branch_id:
            raise TenantMismatch("Actors scoped to a branch may only create requests in it.")

        now = self._clock()
        with uow:
            try:
                request = _request_svc.create_request(
                    company_id=actor.company_id,
                    branch_id=branch_id,
                    title=cmd.title,
                    category=cmd.category,
                    priority=cmd.priority,
                    initial_stage=cmd.initial_stage,
                    created_by_id=actor.id,
                    now=now,
                    description=cmd.description,
                    subcategory=cmd.subcategory,
                    latitude=cmd.latitude,
                    longitude=cmd.longitude,
                    location=cmd.location,
                )
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc

            resolution = self._sm.start_sla_on_creation(
                request, now, _policies_for(uow, request.priority)
            )
            metadata: Dict[str, Any] = {"priority": request.priority.value, "category": request.category}
            if resolution is not None:
                metadata["sla_policy_found"] = resolution.policy_found

            event = _ledger_svc.record(
                request_id=request.id,
                event_type=EventType.REQUEST_CREATED,
                from_stage=None,
                to_stage=request.stage,
                actor=actor,
                occurred_at=now,
                metadata=metadata,
            )
            uow.requests.add(request)
            uow.events.append(event)
            uow.commit()

        logger.info("Created request %s in stage %s", request.id, request.stage.value)
        _publish(self._publisher, [_notice_for(event, request)])
        return _Assembler.request(request)


@dataclass
class TransitionCommand:
    request_id: uuid.UUID
    target_stage: Stage
    actor: Actor
    note: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    expected_version: Optional[int] = None   # client-held version for compare-and-swap


class TransitionRequestUseCase:
    """
    Move a request to a new stage.

    Reads the row, validates the edge, applies side effects, and writes the
    row plus exactly one ledger event only if the version is unchanged since
    the read.  Same-stage calls succeed without writing anything.
    """

    def __init__(
        self,
        state_machine: Optional[RequestStateMachine] = None,
        publisher: Optional[AbstractEventPublisher] = None,
        clock: Clock = _utcnow,
    ):
        self._sm = state_machine or RequestStateMachine(default_transition_table())
        self._publisher = publisher
        self._clock = clock

    def execute(self, cmd: TransitionCommand, uow: AbstractUnitOfWork) -> TransitionResultDTO:
        with uow:
            request = _get_request_or_raise(uow, cmd.request_id)
            read_version = request.version
            if cmd.expected_version is not None and cmd.expected_version != read_version:
                raise ConflictError(
                    f"Request {request.id} is at version {read_version}, "
                    f"not {cmd.expected_version}.",
                    expected_version=cmd.expected_version,
                    actual_version=read_version,
                )

            check = self._sm.check(request, cmd.target_stage, cmd.actor)
            if not check.allowed:
                raise _CHECK_ERRORS[check.code](check.reason)
            if check.code == CheckCode.NOOP:
                return TransitionResultDTO(
                    request=_Assembler.request(request),
                    changed=False,
                    event=None,
                    proposed_provider=None,
                    sla_policy_found=None,
                )

            self._validate_manual_provider(uow, request, cmd.metadata)
            policies: List[SlaPolicy] = []
            providers: List[Provider] = []
            declined: List[uuid.UUID] = []
            if cmd.target_stage == Stage.SUBMITTED:
                policies = _policies_for(uow, request.priority)
            if (
                cmd.target_stage == Stage.ASSIGNED
                and request.assigned_provider_id is None
                and "provider_id" not in cmd.metadata
                and request.has_location
            ):
                providers = uow.providers.list_active(request.company_id)
                declined = _declined_providers(uow, request.id)

            try:
                outcome = self._sm.apply(
                    request,
                    cmd.target_stage,
                    cmd.actor,
                    now=self._clock(),
                    note=cmd.note,
                    metadata=cmd.metadata,
                    policies=policies,
                    providers=providers,
                    declined=declined,
                )
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc

            uow.requests.save(request, expected_version=read_version)
            uow.events.append(outcome.event)
            uow.commit()

        logger.info(
            "Request %s moved %s -> %s by %s (%s)",
            request.id, outcome.from_stage.value, request.stage.value,
            cmd.actor.id, cmd.actor.role.value,
        )
        if cmd.target_stage == Stage.ASSIGNED and outcome.event.metadata.get("assignment") == "no_provider_match":
            logger.info("No provider match for request %s; manual assignment required", request.id)

        _publish(self._publisher, [_notice_for(outcome.event, request)])
        return TransitionResultDTO(
            request=_Assembler.request(request),
            changed=True,
            event=_Assembler.event(outcome.event),
            proposed_provider=_Assembler.match(outcome.proposal) if outcome.proposal else None,
            sla_policy_found=outcome.sla.policy_found if outcome.sla else None,
        )

    @staticmethod
    def _validate_manual_provider(
        uow: AbstractUnitOfWork,
        request: MaintenanceRequest,
        metadata: Dict[str, Any],
    ) -> None:
        raw = metadata.get("provider_id")
        if raw is None:
            return
        try:
            provider_id = uuid.UUID(str(raw))
        except ValueError as exc:
            raise ApplicationError(f"provider_id {raw!r} is not a valid UUID.") from exc
        provider = _get_provider_or_raise(uow, provider_id)
        if provider.company_id != request.company_id:
            raise TenantMismatch(f"Provider {provider_id} belongs to another company.")
        if not provider.is_active:
            raise ApplicationError(f"Provider {provider_id} is not active.")


class RetryingTransitionUseCase:
    """
    Reload-and-retry wrapper around TransitionRequestUseCase.

    On ConflictError the request is re-read and the transition re-validated
    against the fresh state, up to `max_attempts` times in total.  A retry
    that finds the request already in the target stage is a no-op success.
    """

    def __init__(self, inner: TransitionRequestUseCase, max_attempts: int = 3):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        self._inner = inner
        self._max_attempts = max_attempts

    def execute(self, cmd: TransitionCommand, uow: AbstractUnitOfWork) -> TransitionResultDTO:
        # every attempt validates against whatever version is current when it reads
        fresh = replace(cmd, expected_version=None)
        for attempt in Retrying(
            stop=stop_after_attempt(self._max_attempts),
            retry=retry_if_exception_type(ConflictError),
            before_sleep=lambda state: self._log_conflict(fresh, state),
            reraise=True,
        ):
            with attempt:
                return self._inner.execute(fresh, uow)

    def _log_conflict(self, cmd: TransitionCommand, retry_state: RetryCallState) -> None:
        logger.warning(
            "Conflict on request %s (attempt %d/%d): %s; reloading",
            cmd.request_id,
            retry_state.attempt_number,
            self._max_attempts,
            retry_state.outcome.exception(),
        )


class GetRequestUseCase:
    def execute(self, request_id: uuid.UUID, actor: Actor, uow: AbstractUnitOfWork) -> MaintenanceRequestDTO:
        with uow:
            request = _get_request_or_raise(uow, request_id)
            _require_scope(actor, request)
            return _Assembler.request(request)


class ListRequestsUseCase:
    def execute(
        self,
        actor: Actor,
        uow: AbstractUnitOfWork,
        stage: Optional[Stage] = None,
    ) -> List[MaintenanceRequestDTO]:
        with uow:
            requests = uow.requests.list_for_company(actor.company_id, actor.branch_id)
            if stage is not None:
                requests = [r for r in requests if r.stage == stage]
            return [
                _Assembler.request(r)
                for r in sorted(requests, key=lambda r: r.created_at)
            ]


class GetHistoryUseCase:
    """Ledger for one request, oldest first.  Safe to call any number of times."""

    def execute(self, request_id: uuid.UUID, actor: Actor, uow: AbstractUnitOfWork) -> List[RequestEventDTO]:
        with uow:
            request = _get_request_or_raise(uow, request_id)
            _require_scope(actor, request)
            events = _ledger_svc.ordered(uow.events.list_for_request(request_id))
            return [_Assembler.event(e) for e in events]


# ===========================================================================
# USE CASES - DISPATCH
# ===========================================================================

REQUEST_HAS_NO_LOCATION = "request_has_no_location"
NO_QUALIFIED_PROVIDER = "no_qualified_provider"


@dataclass
class MatchProviderCommand:
    request_id: uuid.UUID
    actor: Actor
    specialization: Optional[str] = None
    max_distance_km: Optional[float] = None
    limit: Optional[int] = None


class MatchProviderUseCase:
    def __init__(self, matcher: Optional[ProviderMatcher] = None):
        self._matcher = matcher or ProviderMatcher()

    def execute(self, cmd: MatchProviderCommand, uow: AbstractUnitOfWork) -> MatchResultDTO:
        with uow:
            request = _get_request_or_raise(uow, cmd.request_id)
            _require_scope(cmd.actor, request)
            if not request.has_location:
                logger.info("Request %s has no coordinates; no provider match", request.id)
                return MatchResultDTO(
                    request_id=str(request.id),
                    matched=False,
                    reason=REQUEST_HAS_NO_LOCATION,
                    candidates=[],
                )
            providers = uow.providers.list_active(request.company_id, cmd.specialization)
            try:
                ranked = self._matcher.find_nearest(
                    (request.latitude, request.longitude),
                    providers,
                    specialization=cmd.specialization,
                    max_distance_km=cmd.max_distance_km,
                )
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc

        if cmd.limit is not None:
            ranked = ranked[: max(cmd.limit, 0)]
        if not ranked:
            logger.info("No qualified provider for request %s", request.id)
        return MatchResultDTO(
            request_id=str(request.id),
            matched=bool(ranked),
            reason=None if ranked else NO_QUALIFIED_PROVIDER,
            candidates=[_Assembler.match(m) for m in ranked],
        )


@dataclass
class RegisterProviderCommand:
    actor: Actor
    name: str
    kind: ProviderKind
    specializations: List[str]
    status: ProviderStatus = ProviderStatus.OFFLINE
    service_radius_km: Optional[float] = None
    rating: float = 0.0
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    phone: str = ""
    email: str = ""


class RegisterProviderUseCase:
    def __init__(self, clock: Clock = _utcnow):
        self._clock = clock

    def execute(self, cmd: RegisterProviderCommand, uow: AbstractUnitOfWork) -> ProviderDTO:
        _require_admin(cmd.actor)
        if not cmd.name.strip():
            raise ApplicationError("A provider needs a name.")
        if not (0.0 <= cmd.rating <= 5.0):
            raise ApplicationError("rating must be between 0 and 5.")
        if (cmd.latitude is None) != (cmd.longitude is None):
            raise ApplicationError("latitude and longitude must be given together.")
        now = self._clock()
        with uow:
            try:
                if cmd.latitude is not None:
                    _check_coordinates(cmd.latitude, cmd.longitude)
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc
            provider = Provider(
                company_id=cmd.actor.company_id,
                name=cmd.name.strip(),
                kind=cmd.kind,
                specializations=[s.strip() for s in cmd.specializations if s.strip()],
                status=cmd.status,
                service_radius_km=cmd.service_radius_km,
                rating=cmd.rating,
                current_latitude=cmd.latitude,
                current_longitude=cmd.longitude,
                location_updated_at=now if cmd.latitude is not None else None,
                phone=cmd.phone,
                email=cmd.email,
                created_at=now,
            )
            uow.providers.save(provider)
            uow.commit()
            return _Assembler.provider(provider)


@dataclass
class UpdateProviderLocationCommand:
    provider_id: uuid.UUID
    actor: Actor
    latitude: float
    longitude: float
    status: Optional[ProviderStatus] = None


class UpdateProviderLocationUseCase:
    """Location-tracking feed: a provider (or a manager) reports a new position."""

    def __init__(self, clock: Clock = _utcnow):
        self._clock = clock

    def execute(self, cmd: UpdateProviderLocationCommand, uow: AbstractUnitOfWork) -> ProviderDTO:
        with uow:
            provider = _get_provider_or_raise(uow, cmd.provider_id)
            if provider.company_id != cmd.actor.company_id:
                raise TenantMismatch(f"Provider {provider.id} belongs to another company.")
            if cmd.actor.role not in _ADMIN_ROLES and cmd.actor.id != provider.id:
                raise AuthorizationError("Providers may only report their own location.")
            try:
                _check_coordinates(cmd.latitude, cmd.longitude)
            except ValueError as exc:
                raise ApplicationError(str(exc)) from exc
            provider.current_latitude = cmd.latitude
            provider.current_longitude = cmd.longitude
            provider.location_updated_at = self._clock()
            if cmd.status is not None:
                provider.status = cmd.status
            uow.providers.save(provider)
            uow.commit()
            return _Assembler.provider(provider)


# ===========================================================================
# USE CASES - SLA
# ===========================================================================

class GetSlaStatusUseCase:
    def __init__(self, clock: Clock = _utcnow):
        self._clock = clock

    def execute(
        self, request_id: uuid.UUID, actor: Actor, uow: AbstractUnitOfWork,
        now: Optional[datetime] = None,
    ) -> SlaStatusDTO:
        now = now or self._clock()
        with uow:
            request = _get_request_or_raise(uow, request_id)
            _require_scope(actor, request)
            windows = _windows_svc.status(request, now)
            return SlaStatusDTO(
                request_id=str(request.id),
                stage=request.stage.value,
                accept_due=_fmt(request.sla_accept_due),
                arrive_due=_fmt(request.sla_arrive_due),
                complete_due=_fmt(request.sla_complete_due),
                breached={c.value: w.breached for c, w in windows.items()},
                closed_at={c.value: _fmt(w.closed_at) for c, w in windows.items()},
                policy_missing=request.sla_policy_missing,
                evaluated_at=_fmt(now),
            )


def _reported_clocks(events: List[RequestEvent]) -> set:
    reported = set()
    for e in events:
        if e.event_type == EventType.SLA_VIOLATION:
            reported.add(SlaClock(e.metadata["violation_type"]))
    return reported


class ScanSlaViolationsUseCase:
    """
    On-demand SLA sweep over the actor's open requests.

    Each overdue window is recorded once as an `sla_violation` ledger event
    (from_stage == to_stage) and published; repeated scans do not duplicate it.
    """

    def __init__(self, publisher: Optional[AbstractEventPublisher] = None, clock: Clock = _utcnow):
        self._publisher = publisher
        self._clock = clock

    def execute(
        self, actor: Actor, uow: AbstractUnitOfWork, now: Optional[datetime] = None
    ) -> List[SlaViolationDTO]:
        _require_admin(actor)
        now = now or self._clock()
        found: List[SlaViolation] = []
        notices: List[TransitionNotice] = []
        with uow:
            for request in uow.requests.list_for_company(actor.company_id, actor.branch_id):
                if is_terminal(request.stage):
                    continue
                reported = _reported_clocks(uow.events.list_for_request(request.id))
                for v in _monitor_svc.find_violations(request, now, reported):
                    event = _ledger_svc.record(
                        request_id=request.id,
                        event_type=EventType.SLA_VIOLATION,
                        from_stage=request.stage,
                        to_stage=request.stage,
                        actor=None,
                        occurred_at=now,
                        metadata={
                            "violation_type": v.clock.value,
                            "due_date": _fmt(v.due_at),
                            "minutes_overdue": v.minutes_overdue,
                            "detected_at": _fmt(now),
                        },
                    )
                    uow.events.append(event)
                    found.append(v)
                    notices.append(_notice_for(event, request))
            uow.commit()

        for v in found:
            logger.warning(
                "SLA %s window breached on request %s (%d min overdue, stage %s)",
                v.clock.value, v.request_id, v.minutes_overdue, v.stage.value,
            )
        _publish(self._publisher, notices)
        return [_Assembler.violation(v) for v in found]


class GetSlaDashboardUseCase:
    def __init__(self, at_risk_minutes: Optional[Dict[SlaClock, int]] = None, clock: Clock = _utcnow):
        self._at_risk = at_risk_minutes or {
            SlaClock.ACCEPT: 60,
            SlaClock.ARRIVE: 60,
            SlaClock.COMPLETE: 120,
        }
        self._clock = clock

    def execute(
        self, actor: Actor, uow: AbstractUnitOfWork, now: Optional[datetime] = None
    ) -> SlaDashboardDTO:
        now = now or self._clock()
        counts = {SlaHealth.ON_TIME: 0, SlaHealth.AT_RISK: 0, SlaHealth.OVERDUE: 0}
        violations: List[SlaViolation] = []
        with uow:
            open_requests = [
                r for r in uow.requests.list_for_company(actor.company_id, actor.branch_id)
                if not is_terminal(r.stage)
            ]
            for request in open_requests:
                counts[_monitor_svc.classify(request, now, self._at_risk)] += 1
                violations.extend(_monitor_svc.find_violations(request, now))

        violations.sort(key=lambda v: v.minutes_overdue, reverse=True)
        return SlaDashboardDTO(
            total_open=len(open_requests),
            on_time=counts[SlaHealth.ON_TIME],
            at_risk=counts[SlaHealth.AT_RISK],
            overdue=counts[SlaHealth.OVERDUE],
            violations=[_Assembler.violation(v) for v in violations],
            evaluated_at=_fmt(now),
        )


@dataclass
class UpsertSlaPolicyCommand:
    actor: Actor
    priority: Priority
    category: Optional[str]
    accept_within_min: int
    arrive_within_min: int
    complete_within_min: int


class UpsertSlaPolicyUseCase:
    def execute(self, cmd: UpsertSlaPolicyCommand, uow: AbstractUnitOfWork) -> SlaPolicyDTO:
        _require_admin(cmd.actor)
        durations = (cmd.accept_within_min, cmd.arrive_within_min, cmd.complete_within_min)
        if any(d <= 0 for d in durations):
            raise ApplicationError("SLA durations must be positive minute counts.")
        category = cmd.category.strip() if cmd.category and cmd.category.strip() else None
        with uow:
            policy = uow.sla_policies.get(cmd.priority, category)
            if policy is None:
                policy = SlaPolicy(priority=cmd.priority, category=category)
            policy.accept_within_min = cmd.accept_within_min
            policy.arrive_within_min = cmd.arrive_within_min
            policy.complete_within_min = cmd.complete_within_min
            uow.sla_policies.save(policy)
            uow.commit()
            return _Assembler.policy(policy)


# ===========================================================================
# USE CASES - WORKFLOW
# ===========================================================================

class ListTransitionsUseCase:
    def __init__(self, table: TransitionTable):
        self._table = table

    def execute(self, from_stage: Optional[Stage] = None) -> List[TransitionEdgeDTO]:
        edges = [
            TransitionEdgeDTO(from_stage=e["from"], to_stage=e["to"], roles=e["roles"])
            for e in self._table.to_data()
        ]
        if from_stage is not None:
            edges = [e for e in edges if e.from_stage == from_stage.value]
        return edges


# ===========================================================================
# FACADE
# ===========================================================================

class DispatchEngine:
    """
    Public operation surface of the engine, wired once per process.

    Holds the configured transition table, matcher, publisher and clock,
    and hands them to the use cases.
    """

    def __init__(
        self,
        table: Optional[TransitionTable] = None,
        publisher: Optional[AbstractEventPublisher] = None,
        clock: Clock = _utcnow,
        available_statuses=DEFAULT_AVAILABLE_STATUSES,
        respect_service_radius: bool = True,
        max_attempts: int = 3,
        at_risk_minutes: Optional[Dict[SlaClock, int]] = None,
    ):
        self.table = table or default_transition_table()
        self.publisher = publisher
        self.clock = clock
        self.matcher = ProviderMatcher(available_statuses, respect_service_radius)
        self.state_machine = RequestStateMachine(self.table, _sla_resolver, self.matcher)
        self._transition = TransitionRequestUseCase(self.state_machine, publisher, clock)
        self._retrying = RetryingTransitionUseCase(self._transition, max_attempts)
        self._at_risk = at_risk_minutes

    # --- lifecycle ----------------------------------------------------------

    def create_request(self, cmd: CreateRequestCommand, uow: AbstractUnitOfWork) -> MaintenanceRequestDTO:
        return CreateRequestUseCase(self.state_machine, self.publisher, self.clock).execute(cmd, uow)

    def transition(self, cmd: TransitionCommand, uow: AbstractUnitOfWork) -> TransitionResultDTO:
        """Client-held version given → single CAS attempt; otherwise bounded retries."""
        if cmd.expected_version is not None:
            return self._transition.execute(cmd, uow)
        return self._retrying.execute(cmd, uow)

    def get_request(self, request_id: uuid.UUID, actor: Actor, uow: AbstractUnitOfWork) -> MaintenanceRequestDTO:
        return GetRequestUseCase().execute(request_id, actor, uow)

    def list_requests(
        self, actor: Actor, uow: AbstractUnitOfWork, stage: Optional[Stage] = None
    ) -> List[MaintenanceRequestDTO]:
        return ListRequestsUseCase().execute(actor, uow, stage)

    def get_history(self, request_id: uuid.UUID, actor: Actor, uow: AbstractUnitOfWork) -> List[RequestEventDTO]:
        return GetHistoryUseCase().execute(request_id, actor, uow)

    # --- dispatch -----------------------------------------------------------

    def match_provider(self, cmd: MatchProviderCommand, uow: AbstractUnitOfWork) -> MatchResultDTO:
        return MatchProviderUseCase(self.matcher).execute(cmd, uow)

    def register_provider(self, cmd: RegisterProviderCommand, uow: AbstractUnitOfWork) -> ProviderDTO:
        return RegisterProviderUseCase(self.clock).execute(cmd, uow)

    def update_provider_location(self, cmd: UpdateProviderLocationCommand, uow: AbstractUnitOfWork) -> ProviderDTO:
        return UpdateProviderLocationUseCase(self.clock).execute(cmd, uow)

    # --- SLA ----------------------------------------------------------------

    def get_sla_status(
        self, request_id: uuid.UUID, actor: Actor, uow: AbstractUnitOfWork,
        now: Optional[datetime] = None,
    ) -> SlaStatusDTO:
        return GetSlaStatusUseCase(self.clock).execute(request_id, actor, uow, now)

    def scan_sla_violations(
        self, actor: Actor, uow: AbstractUnitOfWork, now: Optional[datetime] = None
    ) -> List[SlaViolationDTO]:
        return ScanSlaViolationsUseCase(self.publisher, self.clock).execute(actor, uow, now)

    def sla_dashboard(
        self, actor: Actor, uow: AbstractUnitOfWork, now: Optional[datetime] = None
    ) -> SlaDashboardDTO:
        return GetSlaDashboardUseCase(self._at_risk, self.clock).execute(actor, uow, now)

    def upsert_sla_policy(self, cmd: UpsertSlaPolicyCommand, uow: AbstractUnitOfWork) -> SlaPolicyDTO:
        return UpsertSlaPolicyUseCase().execute(cmd, uow)

    # --- workflow -----------------------------------------------------------

    def list_transitions(self, from_stage: Optional[Stage] = None) -> List[TransitionEdgeDTO]:
        return ListTransitionsUseCase(self.table).execute(from_stage)
