"""
model.py

Domain models for the Maintenance Request Lifecycle & Dispatch Engine.

Entities
--------
- MaintenanceRequest
- Provider
- RequestEvent
- SlaPolicy

Value objects
-------------
- Actor
- SlaDeadlines
- ProviderMatch

All models use Python dataclasses for clean, framework-agnostic definitions.
UUID primary keys are used throughout for portability.
Timestamps are always stored in UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Stage(str, Enum):
    """
    Canonical lifecycle position of a maintenance request.

    This is the single source of truth for where a request is; the coarser
    RequestStatus is always derived from it (see workflow.project_status).
    """
    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    PENDING_INSPECTION = "pending_inspection"
    ADDITIONAL_MATERIALS_NEEDED = "additional_materials_needed"
    MATERIALS_APPROVED = "materials_approved"
    ON_HOLD = "on_hold"
    INSPECTION_PASSED = "inspection_passed"
    COMPLETED = "completed"
    BILLED = "billed"
    PAID = "paid"
    CLOSED = "closed"
    ARCHIVED = "archived"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class RequestStatus(str, Enum):
    """External-facing projection of Stage. Never persisted independently."""
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"
    COMPLETED = "completed"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ProviderStatus(str, Enum):
    """
    Presence status of a provider.

    Technicians report online / busy / offline / on_route; vendors report
    available / busy / offline. Both vocabularies share this enum.
    """
    ONLINE = "online"
    AVAILABLE = "available"
    BUSY = "busy"
    ON_ROUTE = "on_route"
    OFFLINE = "offline"


class ProviderKind(str, Enum):
    TECHNICIAN = "technician"
    VENDOR = "vendor"


class Role(str, Enum):
    """
    Roles an acting principal may hold.  The transition table decides which
    of them may move a request along a given edge.
    """
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"
    TECHNICIAN = "technician"
    VENDOR = "vendor"
    CUSTOMER = "customer"
    WAREHOUSE = "warehouse"
    ACCOUNTING = "accounting"
    ENGINEERING = "engineering"
    SYSTEM = "system"


class EventType(str, Enum):
    """Kind of a RequestEvent / published notice."""
    REQUEST_CREATED = "request_created"
    STAGE_CHANGED = "stage_changed"
    REQUEST_ASSIGNED = "request_assigned"
    REQUEST_COMPLETED = "request_completed"
    SLA_VIOLATION = "sla_violation"


class SlaClock(str, Enum):
    """The three SLA windows tracked per request."""
    ACCEPT = "accept"
    ARRIVE = "arrive"
    COMPLETE = "complete"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Actor:
    """
    The acting principal behind an operation.

    `branch_id` is None for company-wide principals (e.g. a company manager);
    `id` is None for system-generated actions.
    """
    id: Optional[uuid.UUID]
    role: Role
    company_id: uuid.UUID
    branch_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class SlaDeadlines:
    accept_due: datetime
    arrive_due: datetime
    complete_due: datetime


@dataclass(frozen=True)
class ProviderMatch:
    """A ranked matcher candidate."""
    provider: "Provider"
    distance_km: float


# ---------------------------------------------------------------------------
# Core entities
# ---------------------------------------------------------------------------


@dataclass
class MaintenanceRequest:
    """
    A maintenance request moving through the lifecycle.

    `stage` is mutated exclusively through the state machine. `version` is
    incremented on every successful save and is the optimistic-lock token.
    SLA due timestamps are written once, when the request enters `submitted`,
    and are never overwritten afterwards.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    company_id: uuid.UUID = field(default_factory=uuid.uuid4)
    branch_id: Optional[uuid.UUID] = None

    title: str = ""
    description: str = ""
    category: str = ""
    subcategory: str = ""
    priority: Priority = Priority.MEDIUM

    stage: Stage = Stage.DRAFT
    status: RequestStatus = RequestStatus.OPEN      # derived from stage on every change

    # SLA deadlines (None until the accept clock starts, or when no policy exists)
    sla_accept_due: Optional[datetime] = None
    sla_arrive_due: Optional[datetime] = None
    sla_complete_due: Optional[datetime] = None
    sla_policy_missing: bool = False

    # When each SLA window was closed by a stage change (None while still open)
    sla_accept_closed_at: Optional[datetime] = None
    sla_arrive_closed_at: Optional[datetime] = None
    sla_complete_closed_at: Optional[datetime] = None

    # Location (optional; matching degrades gracefully without it)
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location: str = ""

    # Assignment
    assigned_provider_id: Optional[uuid.UUID] = None
    proposed_provider_id: Optional[uuid.UUID] = None   # matcher suggestion awaiting confirmation

    created_by_id: Optional[uuid.UUID] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    archived_at: Optional[datetime] = None
    version: int = 1

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass
class Provider:
    """
    A technician or vendor that can be dispatched to a request.

    A provider with no current location is excluded from distance ranking
    but remains manually assignable.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    company_id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    kind: ProviderKind = ProviderKind.TECHNICIAN
    specializations: List[str] = field(default_factory=list)
    status: ProviderStatus = ProviderStatus.OFFLINE
    is_active: bool = True

    current_latitude: Optional[float] = None
    current_longitude: Optional[float] = None
    location_updated_at: Optional[datetime] = None
    service_radius_km: Optional[float] = None
    rating: float = 0.0                 # 0.0 – 5.0

    phone: str = ""
    email: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def has_location(self) -> bool:
        return self.current_latitude is not None and self.current_longitude is not None

    def offers(self, specialization: str) -> bool:
        wanted = specialization.strip().lower()
        return any(tag.strip().lower() == wanted for tag in self.specializations)


@dataclass
class RequestEvent:
    """
    Append-only ledger row.

    Every stage change produces exactly one event; SLA violations are
    recorded as events whose from_stage equals to_stage. `sequence` is
    assigned by the ledger at append time and breaks timestamp ties.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    request_id: uuid.UUID = field(default_factory=uuid.uuid4)
    event_type: EventType = EventType.STAGE_CHANGED
    from_stage: Optional[Stage] = None      # None for creation
    to_stage: Stage = Stage.DRAFT
    actor_id: Optional[uuid.UUID] = None    # None for system-generated events
    actor_role: Optional[Role] = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)
    note: str = ""
    sequence: int = 0

    @property
    def order_key(self) -> Tuple[datetime, int]:
        return (self.occurred_at, self.sequence)


@dataclass
class SlaPolicy:
    """
    Per (priority, category) SLA durations in minutes.

    `category` None is the priority-only fallback row.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    priority: Priority = Priority.MEDIUM
    category: Optional[str] = None
    accept_within_min: int = 0
    arrive_within_min: int = 0
    complete_within_min: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
