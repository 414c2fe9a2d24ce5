"""
service.py

Service layer for the Maintenance Request Lifecycle & Dispatch Engine.

Responsibilities
----------------
Each service class encapsulates the business logic of one concern.
Services receive and return domain model instances (from model.py).
No persistence is handled here - callers are responsible for loading
inputs (policies, providers, events) and storing the mutated objects.

Services
--------
- distance_km             – Haversine great-circle distance
- SlaPolicyResolver       – (priority, category, anchor) → deadlines, breach checks
- SlaWindowService        – Closing SLA windows on stage changes, status reporting
- ProviderMatcher         – Nearest-available-provider ranking
- RequestService          – Request creation and input validation
- RequestStateMachine     – Role-gated, tenant-scoped stage transitions
- EventLedgerService      – Construction and ordering of ledger events
- SlaMonitorService       – Violation detection and at-risk classification

Design notes
------------
- Every function that needs "now" receives it as an argument; nothing in
  this module reads the clock except the _utcnow() default used by callers.
- Malformed input raises ValueError with a descriptive message.
- Transition validation returns a TransitionCheck instead of raising, so
  the application layer decides which typed error to surface.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from model import (
    Actor,
    EventType,
    MaintenanceRequest,
    Priority,
    Provider,
    ProviderMatch,
    ProviderStatus,
    RequestEvent,
    Role,
    SlaClock,
    SlaDeadlines,
    SlaPolicy,
    Stage,
)
from workflow import TransitionTable, is_terminal, project_status

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _check_coordinates(latitude: float, longitude: float) -> None:
    if not (-90.0 <= latitude <= 90.0):
        raise ValueError(f"latitude {latitude} is outside [-90, 90].")
    if not (-180.0 <= longitude <= 180.0):
        raise ValueError(f"longitude {longitude} is outside [-180, 180].")


# ---------------------------------------------------------------------------
# Geo distance
# ---------------------------------------------------------------------------

def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance between two points using the haversine formula
    on a sphere of radius 6371 km.
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # clamp: rounding can push `a` a hair above 1 for antipodal points
    a = min(1.0, max(0.0, a))
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


# ---------------------------------------------------------------------------
# SlaPolicyResolver
# ---------------------------------------------------------------------------

NO_POLICY = "no_policy"


@dataclass(frozen=True)
class SlaResolution:
    """
    Outcome of an SLA lookup.

    A miss is a valid outcome, not an error: `deadlines` is None and
    `reason` is NO_POLICY. Callers proceed without deadlines.
    """
    deadlines: Optional[SlaDeadlines]
    policy: Optional[SlaPolicy] = None
    reason: Optional[str] = None

    @property
    def policy_found(self) -> bool:
        return self.deadlines is not None


class SlaPolicyResolver:
    """
    Resolves SLA deadlines from the policy table.

    Lookup order: exact (priority, category) row, then the priority-only
    row (category None). Pure and deterministic: the only notion of time
    is the supplied anchor.
    """

    def select_policy(
        self,
        priority: Priority,
        category: Optional[str],
        policies: Iterable[SlaPolicy],
    ) -> Optional[SlaPolicy]:
        wanted = (category or "").strip().lower()
        fallback: Optional[SlaPolicy] = None
        for policy in policies:
            if policy.priority != priority:
                continue
            if policy.category is None:
                fallback = fallback or policy
            elif wanted and policy.category.strip().lower() == wanted:
                return policy
        return fallback

    def resolve(
        self,
        priority: Priority,
        category: Optional[str],
        anchor_time: datetime,
        policies: Iterable[SlaPolicy],
    ) -> SlaResolution:
        policy = self.select_policy(priority, category, policies)
        if policy is None:
            return SlaResolution(deadlines=None, policy=None, reason=NO_POLICY)
        anchor = _as_utc(anchor_time)
        return SlaResolution(
            deadlines=SlaDeadlines(
                accept_due=anchor + timedelta(minutes=policy.accept_within_min),
                arrive_due=anchor + timedelta(minutes=policy.arrive_within_min),
                complete_due=anchor + timedelta(minutes=policy.complete_within_min),
            ),
            policy=policy,
        )

    @staticmethod
    def is_breached(due_at: Optional[datetime], now: datetime) -> bool:
        """True iff now is strictly after the due time.  No due time → never breached."""
        if due_at is None:
            return False
        return _as_utc(now) > _as_utc(due_at)


# ---------------------------------------------------------------------------
# SlaWindowService
# ---------------------------------------------------------------------------

_WORK_OR_LATER: FrozenSet[Stage] = frozenset({
    Stage.IN_PROGRESS,
    Stage.PENDING_INSPECTION,
    Stage.ADDITIONAL_MATERIALS_NEEDED,
    Stage.MATERIALS_APPROVED,
    Stage.INSPECTION_PASSED,
})
_DONE_OR_LATER: FrozenSet[Stage] = frozenset({
    Stage.COMPLETED,
    Stage.BILLED,
    Stage.PAID,
    Stage.CLOSED,
    Stage.ARCHIVED,
})
_ABANDONED: FrozenSet[Stage] = frozenset({Stage.CANCELLED, Stage.REJECTED})

# Entering any of these stages closes the window
WINDOW_CLOSING_STAGES: Dict[SlaClock, FrozenSet[Stage]] = {
    SlaClock.ACCEPT: frozenset(Stage) - {Stage.DRAFT, Stage.SUBMITTED},
    SlaClock.ARRIVE: _WORK_OR_LATER | _DONE_OR_LATER | _ABANDONED,
    SlaClock.COMPLETE: _DONE_OR_LATER | _ABANDONED,
}


@dataclass(frozen=True)
class SlaWindowStatus:
    clock: SlaClock
    due_at: Optional[datetime]
    closed_at: Optional[datetime]
    breached: bool

    @property
    def is_open(self) -> bool:
        return self.due_at is not None and self.closed_at is None


class SlaWindowService:
    """Tracks the accept / arrive / complete windows of a request."""

    def __init__(self, resolver: Optional[SlaPolicyResolver] = None):
        self._resolver = resolver or SlaPolicyResolver()

    @staticmethod
    def due_at(request: MaintenanceRequest, clock: SlaClock) -> Optional[datetime]:
        return getattr(request, f"sla_{clock.value}_due")

    @staticmethod
    def closed_at(request: MaintenanceRequest, clock: SlaClock) -> Optional[datetime]:
        return getattr(request, f"sla_{clock.value}_closed_at")

    def start_clocks(
        self,
        request: MaintenanceRequest,
        resolution: SlaResolution,
    ) -> MaintenanceRequest:
        """
        Write the due timestamps once.  A request that already carries
        deadlines (or a recorded policy miss) is left untouched.
        """
        if request.sla_accept_due or request.sla_arrive_due or request.sla_complete_due:
            return request
        if request.sla_policy_missing:
            return request
        if resolution.deadlines is None:
            request.sla_policy_missing = True
            return request
        request.sla_accept_due = resolution.deadlines.accept_due
        request.sla_arrive_due = resolution.deadlines.arrive_due
        request.sla_complete_due = resolution.deadlines.complete_due
        return request

    def close_windows(
        self,
        request: MaintenanceRequest,
        entered: Stage,
        now: datetime,
    ) -> List[SlaWindowStatus]:
        """Close every open window that `entered` ends; return the closed windows."""
        closed: List[SlaWindowStatus] = []
        for clock, closing in WINDOW_CLOSING_STAGES.items():
            if entered not in closing:
                continue
            due = self.due_at(request, clock)
            if due is None or self.closed_at(request, clock) is not None:
                continue
            setattr(request, f"sla_{clock.value}_closed_at", now)
            closed.append(
                SlaWindowStatus(
                    clock=clock,
                    due_at=due,
                    closed_at=now,
                    breached=self._resolver.is_breached(due, now),
                )
            )
        return closed

    def window(self, request: MaintenanceRequest, clock: SlaClock, now: datetime) -> SlaWindowStatus:
        due = self.due_at(request, clock)
        closed = self.closed_at(request, clock)
        # closed windows are judged at the moment they closed
        reference = closed if closed is not None else now
        return SlaWindowStatus(
            clock=clock,
            due_at=due,
            closed_at=closed,
            breached=self._resolver.is_breached(due, reference),
        )

    def status(self, request: MaintenanceRequest, now: datetime) -> Dict[SlaClock, SlaWindowStatus]:
        return {clock: self.window(request, clock, now) for clock in SlaClock}


# ---------------------------------------------------------------------------
# ProviderMatcher
# ---------------------------------------------------------------------------

DEFAULT_AVAILABLE_STATUSES: FrozenSet[ProviderStatus] = frozenset({
    ProviderStatus.ONLINE,
    ProviderStatus.AVAILABLE,
})


class ProviderMatcher:
    """
    Ranks providers by proximity to a request location.

    Candidates must be active, in an available status, offer the requested
    specialization (if one is given) and have a known current location.
    Ordering: distance ascending, then rating descending, then most recent
    location update first.
    """

    def __init__(
        self,
        available_statuses: Iterable[ProviderStatus] = DEFAULT_AVAILABLE_STATUSES,
        respect_service_radius: bool = True,
    ):
        self._available = frozenset(available_statuses)
        self._respect_radius = respect_service_radius

    def is_candidate(self, provider: Provider, specialization: Optional[str]) -> bool:
        if not provider.is_active or provider.status not in self._available:
            return False
        if specialization and not provider.offers(specialization):
            return False
        return provider.has_location

    def find_nearest(
        self,
        request_location: Optional[Tuple[float, float]],
        providers: Iterable[Provider],
        specialization: Optional[str] = None,
        max_distance_km: Optional[float] = None,
    ) -> List[ProviderMatch]:
        """
        Return (provider, distance) pairs, nearest first.

        An empty list is a normal outcome (no location, nobody qualifies);
        callers fall back to manual assignment.
        """
        if request_location is None:
            return []
        if max_distance_km is not None and max_distance_km < 0:
            raise ValueError("max_distance_km must not be negative.")
        lat, lon = request_location

        matches: List[ProviderMatch] = []
        for provider in providers:
            if not self.is_candidate(provider, specialization):
                continue
            d = distance_km(lat, lon, provider.current_latitude, provider.current_longitude)
            if max_distance_km is not None and d > max_distance_km:
                continue
            if (
                self._respect_radius
                and provider.service_radius_km is not None
                and d > provider.service_radius_km
            ):
                continue
            matches.append(ProviderMatch(provider=provider, distance_km=d))

        matches.sort(key=self._rank_key)
        return matches

    @staticmethod
    def _rank_key(match: ProviderMatch) -> Tuple[float, float, float]:
        p = match.provider
        freshness = _as_utc(p.location_updated_at).timestamp() if p.location_updated_at else float("-inf")
        return (match.distance_km, -(p.rating or 0.0), -freshness)


# ---------------------------------------------------------------------------
# RequestService
# ---------------------------------------------------------------------------

INITIAL_STAGES: FrozenSet[Stage] = frozenset({Stage.DRAFT, Stage.SUBMITTED})


class RequestService:
    """Creates maintenance requests (unsaved)."""

    def create_request(
        self,
        company_id: uuid.UUID,
        branch_id: Optional[uuid.UUID],
        title: str,
        category: str,
        priority: Priority,
        initial_stage: Stage,
        created_by_id: Optional[uuid.UUID],
        now: datetime,
        description: str = "",
        subcategory: str = "",
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        location: str = "",
    ) -> MaintenanceRequest:
        if not title.strip():
            raise ValueError("A maintenance request needs a title.")
        if initial_stage not in INITIAL_STAGES:
            raise ValueError(
                f"Requests start in 'draft' or 'submitted', not '{initial_stage.value}'."
            )
        if (latitude is None) != (longitude is None):
            raise ValueError("latitude and longitude must be given together.")
        if latitude is not None:
            _check_coordinates(latitude, longitude)

        return MaintenanceRequest(
            company_id=company_id,
            branch_id=branch_id,
            title=title.strip(),
            description=description,
            category=category.strip(),
            subcategory=subcategory.strip(),
            priority=priority,
            stage=initial_stage,
            status=project_status(initial_stage),
            latitude=latitude,
            longitude=longitude,
            location=location,
            created_by_id=created_by_id,
            created_at=now,
            updated_at=now,
        )


# ---------------------------------------------------------------------------
# EventLedgerService
# ---------------------------------------------------------------------------

class EventLedgerService:
    """
    Builds RequestEvent rows.  Events are immutable once appended; the
    ledger exposes no update or delete path.
    """

    def record(
        self,
        request_id: uuid.UUID,
        event_type: EventType,
        from_stage: Optional[Stage],
        to_stage: Stage,
        actor: Optional[Actor],
        occurred_at: datetime,
        metadata: Optional[Dict[str, Any]] = None,
        note: str = "",
    ) -> RequestEvent:
        return RequestEvent(
            request_id=request_id,
            event_type=event_type,
            from_stage=from_stage,
            to_stage=to_stage,
            actor_id=actor.id if actor else None,
            actor_role=actor.role if actor else None,
            occurred_at=occurred_at,
            metadata=dict(metadata or {}),
            note=note,
        )

    @staticmethod
    def ordered(events: Iterable[RequestEvent]) -> List[RequestEvent]:
        """Oldest first; timestamp ties broken by insertion sequence."""
        return sorted(events, key=lambda e: e.order_key)

    @staticmethod
    def replay_stage(events: Iterable[RequestEvent]) -> Optional[Stage]:
        """Recompute the current stage from the ledger alone."""
        stage: Optional[Stage] = None
        for event in EventLedgerService.ordered(events):
            if event.from_stage != event.to_stage:
                stage = event.to_stage
        return stage


# ---------------------------------------------------------------------------
# RequestStateMachine
# ---------------------------------------------------------------------------

class CheckCode:
    OK = "ok"
    NOOP = "noop"
    INVALID_TRANSITION = "invalid_transition"
    FORBIDDEN = "forbidden"
    TENANT_MISMATCH = "tenant_mismatch"
    ALREADY_TERMINAL = "already_terminal"


@dataclass(frozen=True)
class TransitionCheck:
    """Result of a transition validation attempt."""
    code: str
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.code in (CheckCode.OK, CheckCode.NOOP)


@dataclass
class TransitionOutcome:
    request: MaintenanceRequest
    from_stage: Stage
    event: Optional[RequestEvent] = None          # None for a same-stage no-op
    sla: Optional[SlaResolution] = None           # set when the SLA clocks started
    proposal: Optional[ProviderMatch] = None      # matcher suggestion on entering `assigned`
    closed_windows: List[SlaWindowStatus] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.event is not None


# Roles whose acceptance of an unassigned request makes them its provider
_PROVIDER_ROLES = frozenset({Role.TECHNICIAN, Role.VENDOR})


def _tenant_allows(actor: Actor, request: MaintenanceRequest) -> bool:
    if actor.company_id != request.company_id:
        return False
    if actor.branch_id is not None and request.branch_id is not None:
        return actor.branch_id == request.branch_id
    return True


def _parse_uuid(value: Any, name: str) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise ValueError(f"metadata '{name}' is not a valid UUID: {value!r}") from exc


class RequestStateMachine:
    """
    Owns MaintenanceRequest.stage.

    check() validates in this order: tenant scope, terminal immutability,
    same-stage no-op, edge existence, role permission.  apply() mutates the
    request and produces exactly one ledger event per stage change.
    """

    def __init__(
        self,
        table: TransitionTable,
        sla_resolver: Optional[SlaPolicyResolver] = None,
        matcher: Optional[ProviderMatcher] = None,
    ):
        self.table = table
        self._resolver = sla_resolver or SlaPolicyResolver()
        self._windows = SlaWindowService(self._resolver)
        self._matcher = matcher or ProviderMatcher()
        self._ledger = EventLedgerService()

    def check(self, request: MaintenanceRequest, target: Stage, actor: Actor) -> TransitionCheck:
        current = request.stage
        if not _tenant_allows(actor, request):
            return TransitionCheck(
                CheckCode.TENANT_MISMATCH,
                f"Actor is not scoped to company {request.company_id}"
                + (f" / branch {request.branch_id}" if request.branch_id else "")
                + ".",
            )
        if is_terminal(current) and not self.table.has_edge(current, target):
            return TransitionCheck(
                CheckCode.ALREADY_TERMINAL,
                f"Request {request.id} is '{current.value}' and can no longer move to '{target.value}'.",
            )
        if current == target:
            return TransitionCheck(CheckCode.NOOP)
        if not self.table.has_edge(current, target):
            return TransitionCheck(
                CheckCode.INVALID_TRANSITION,
                f"No transition from '{current.value}' to '{target.value}'.",
            )
        allowed = self.table.roles_for(current, target)
        if actor.role not in allowed:
            return TransitionCheck(
                CheckCode.FORBIDDEN,
                f"Role '{actor.role.value}' may not move a request from "
                f"'{current.value}' to '{target.value}'; allowed: "
                f"{sorted(r.value for r in allowed)}.",
            )
        return TransitionCheck(CheckCode.OK)

    def apply(
        self,
        request: MaintenanceRequest,
        target: Stage,
        actor: Actor,
        now: datetime,
        note: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        policies: Sequence[SlaPolicy] = (),
        providers: Sequence[Provider] = (),
        declined: Iterable[uuid.UUID] = (),
    ) -> TransitionOutcome:
        """
        Apply an already-checked transition.  Same-stage calls return an
        outcome without an event and leave the request untouched.

        `declined` lists providers that already turned this request down;
        they are never proposed again.
        """
        current = request.stage
        if current == target:
            return TransitionOutcome(request=request, from_stage=current)

        metadata = dict(metadata or {})
        event_meta: Dict[str, Any] = {
            k: v for k, v in metadata.items() if k != "provider_id"
        }
        event_type = EventType.STAGE_CHANGED
        outcome = TransitionOutcome(request=request, from_stage=current)
        explicit_provider = _parse_uuid(metadata.get("provider_id"), "provider_id")

        if target == Stage.SUBMITTED:
            outcome.sla = self._start_sla(request, now, policies)
            if outcome.sla is not None:
                event_meta["sla_policy_found"] = outcome.sla.policy_found

        elif target == Stage.ASSIGNED:
            event_type = EventType.REQUEST_ASSIGNED
            if explicit_provider is not None:
                request.assigned_provider_id = explicit_provider
                request.proposed_provider_id = None
                event_meta["assigned_provider_id"] = str(explicit_provider)
                event_meta["assignment"] = "manual"
            elif request.assigned_provider_id is not None:
                event_meta["assigned_provider_id"] = str(request.assigned_provider_id)
                event_meta["assignment"] = "preselected"
            else:
                outcome.proposal = self.propose_provider(request, providers, exclude=declined)
                if outcome.proposal is not None:
                    request.proposed_provider_id = outcome.proposal.provider.id
                    event_meta["proposed_provider_id"] = str(outcome.proposal.provider.id)
                    event_meta["proposed_distance_km"] = round(outcome.proposal.distance_km, 3)
                    event_meta["assignment"] = "proposed"
                else:
                    event_meta["assignment"] = "no_provider_match"

        elif target == Stage.ACCEPTED:
            if request.assigned_provider_id is None:
                request.assigned_provider_id = (
                    explicit_provider
                    or request.proposed_provider_id
                    or (actor.id if actor.role in _PROVIDER_ROLES else None)
                )
                request.proposed_provider_id = None
            if request.assigned_provider_id is not None:
                event_meta["assigned_provider_id"] = str(request.assigned_provider_id)

        elif target == Stage.APPROVED and current == Stage.ASSIGNED:
            declined = request.assigned_provider_id or request.proposed_provider_id
            if declined is not None:
                event_meta["declined_provider_id"] = str(declined)
            request.assigned_provider_id = None
            request.proposed_provider_id = None

        elif target == Stage.COMPLETED:
            event_type = EventType.REQUEST_COMPLETED

        elif target == Stage.ARCHIVED:
            request.archived_at = now

        outcome.closed_windows = self._windows.close_windows(request, target, now)
        if outcome.closed_windows:
            event_meta["sla_windows_closed"] = {
                w.clock.value: {"breached": w.breached} for w in outcome.closed_windows
            }

        request.stage = target
        request.status = project_status(target)
        request.updated_at = now

        outcome.event = self._ledger.record(
            request_id=request.id,
            event_type=event_type,
            from_stage=current,
            to_stage=target,
            actor=actor,
            occurred_at=now,
            metadata=event_meta,
            note=note,
        )
        return outcome

    def start_sla_on_creation(
        self,
        request: MaintenanceRequest,
        now: datetime,
        policies: Sequence[SlaPolicy],
    ) -> Optional[SlaResolution]:
        """Requests created directly in `submitted` start their clocks at creation."""
        if request.stage != Stage.SUBMITTED:
            return None
        return self._start_sla(request, now, policies)

    def propose_provider(
        self,
        request: MaintenanceRequest,
        providers: Sequence[Provider],
        exclude: Iterable[uuid.UUID] = (),
    ) -> Optional[ProviderMatch]:
        if not request.has_location:
            return None
        excluded = set(exclude)
        ranked = self._matcher.find_nearest(
            (request.latitude, request.longitude),
            [p for p in providers if p.id not in excluded],
            specialization=request.category or None,
        )
        return ranked[0] if ranked else None

    def _start_sla(
        self,
        request: MaintenanceRequest,
        now: datetime,
        policies: Sequence[SlaPolicy],
    ) -> Optional[SlaResolution]:
        if request.sla_accept_due is not None or request.sla_policy_missing:
            return None
        resolution = self._resolver.resolve(request.priority, request.category, now, policies)
        self._windows.start_clocks(request, resolution)
        if not resolution.policy_found:
            logger.info(
                "No SLA policy for priority=%s category=%s; request %s proceeds without deadlines",
                request.priority.value, request.category, request.id,
            )
        return resolution


# ---------------------------------------------------------------------------
# SlaMonitorService
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SlaViolation:
    request_id: uuid.UUID
    clock: SlaClock
    stage: Stage
    due_at: datetime
    minutes_overdue: int


class SlaHealth:
    ON_TIME = "on_time"
    AT_RISK = "at_risk"
    OVERDUE = "overdue"


class SlaMonitorService:
    """
    Detects open SLA windows that are past due and grades open requests
    as on time, at risk, or overdue.
    """

    def __init__(self, windows: Optional[SlaWindowService] = None):
        self._windows = windows or SlaWindowService()

    def find_violations(
        self,
        request: MaintenanceRequest,
        now: datetime,
        already_reported: Optional[Set[SlaClock]] = None,
    ) -> List[SlaViolation]:
        reported = already_reported or set()
        if is_terminal(request.stage):
            return []
        violations: List[SlaViolation] = []
        for clock, window in self._windows.status(request, now).items():
            if not window.is_open or not window.breached or clock in reported:
                continue
            overdue = _as_utc(now) - _as_utc(window.due_at)
            violations.append(
                SlaViolation(
                    request_id=request.id,
                    clock=clock,
                    stage=request.stage,
                    due_at=window.due_at,
                    minutes_overdue=int(overdue.total_seconds() // 60),
                )
            )
        return violations

    def classify(
        self,
        request: MaintenanceRequest,
        now: datetime,
        at_risk_minutes: Dict[SlaClock, int],
    ) -> str:
        health = SlaHealth.ON_TIME
        for clock, window in self._windows.status(request, now).items():
            if not window.is_open:
                continue
            if window.breached:
                return SlaHealth.OVERDUE
            remaining = _as_utc(window.due_at) - _as_utc(now)
            if remaining < timedelta(minutes=at_risk_minutes.get(clock, 0)):
                health = SlaHealth.AT_RISK
        return health
