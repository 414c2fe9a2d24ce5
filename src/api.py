"""
api.py

REST API layer for the Maintenance Request Lifecycle & Dispatch Engine.

Framework : FastAPI
Auth      : The acting principal is read from request headers by the
            get_actor dependency (X-Actor-Id, X-Actor-Role, X-Company-Id,
            X-Branch-Id).  Token verification lives upstream (gateway);
            every endpoint receives the resolved Actor and passes it to the
            relevant use case.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /requests                           create, list
  │   └── /{request_id}                   fetch one
  │       ├── /transitions                move to a new stage
  │       ├── /provider-matches           nearest-available-provider ranking
  │       ├── /sla                        due times + breach flags
  │       └── /history                    ledger, oldest first
  ├── /providers                          register
  │   └── /{provider_id}/location         location-tracking feed
  ├── /sla-policies                       upsert policy rows
  ├── /sla/scan                           record overdue windows
  ├── /sla/dashboard                      on time / at risk / overdue counts
  └── /workflow/transitions               effective transition table

Error handling
--------------
  NotFoundError      → 404
  Forbidden          → 403
  TenantMismatch     → 403
  AuthorizationError → 403
  InvalidTransition  → 422
  AlreadyTerminal    → 409
  ConflictError      → 409
  ApplicationError   → 422
  ValueError         → 422

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>", "error": "<ErrorClass>" }

Running
-------
  uvicorn main:app --reload
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Path, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, Field, field_validator

from application import (
    # Exceptions
    AlreadyTerminal,
    ApplicationError,
    AuthorizationError,
    ConflictError,
    Forbidden,
    InvalidTransition,
    NotFoundError,
    TenantMismatch,
    # Commands
    CreateRequestCommand,
    MatchProviderCommand,
    RegisterProviderCommand,
    TransitionCommand,
    UpdateProviderLocationCommand,
    UpsertSlaPolicyCommand,
    # Wiring
    AbstractUnitOfWork,
    DispatchEngine,
)
from config import settings
from infrastructure import InMemoryUnitOfWork, build_event_bus
from model import Actor, Priority, ProviderKind, ProviderStatus, Role, SlaClock, Stage
from workflow import load_transition_table


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    shutdown_engine()


app = FastAPI(
    lifespan=lifespan,
    title=settings.app_name,
    version="1.0.0",
    description=(
        "Drives maintenance requests from creation to closure through a "
        "role-gated workflow, tracks accept / arrive / complete SLA windows, "
        "and ranks available providers by distance and specialization."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

def _error(status_code: int, exc: Exception, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__, **extra},
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return _error(404, exc)


@app.exception_handler(Forbidden)
async def forbidden_handler(request, exc: Forbidden):
    return _error(403, exc)


@app.exception_handler(TenantMismatch)
async def tenant_mismatch_handler(request, exc: TenantMismatch):
    return _error(403, exc)


@app.exception_handler(AuthorizationError)
async def authorization_handler(request, exc: AuthorizationError):
    return _error(403, exc)


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request, exc: InvalidTransition):
    return _error(422, exc)


@app.exception_handler(AlreadyTerminal)
async def already_terminal_handler(request, exc: AlreadyTerminal):
    return _error(409, exc)


@app.exception_handler(ConflictError)
async def conflict_handler(request, exc: ConflictError):
    return _error(
        409, exc,
        expected_version=exc.expected_version,
        actual_version=exc.actual_version,
    )


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return _error(422, exc)


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return _error(422, exc)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def build_engine() -> DispatchEngine:
    """Engine wired from settings: configured table, event bus, matcher options."""
    return DispatchEngine(
        table=load_transition_table(settings.transition_table_path),
        publisher=build_event_bus(workers=settings.notification_workers),
        available_statuses=[ProviderStatus(s) for s in settings.available_provider_statuses],
        respect_service_radius=settings.respect_service_radius,
        max_attempts=settings.transition_max_attempts,
        at_risk_minutes={
            SlaClock.ACCEPT: settings.sla_at_risk_minutes_accept,
            SlaClock.ARRIVE: settings.sla_at_risk_minutes_arrive,
            SlaClock.COMPLETE: settings.sla_at_risk_minutes_complete,
        },
    )


_engine: Optional[DispatchEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> DispatchEngine:
    """Process-wide engine, built once on first use."""
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = build_engine()
    return _engine


def shutdown_engine() -> None:
    """Stop the event bus of the engine, if one was ever built."""
    global _engine
    with _engine_lock:
        engine, _engine = _engine, None
    if engine is not None and hasattr(engine.publisher, "shutdown"):
        engine.publisher.shutdown(wait=True)
        logger.info("Event bus stopped")


def get_uow() -> AbstractUnitOfWork:
    """Returns the in-memory Unit of Work (no database required)."""
    return InMemoryUnitOfWork()


def get_actor(
    x_actor_role: Role = Header(..., description="Role of the acting principal."),
    x_company_id: uuid.UUID = Header(..., description="Company (tenant) of the actor."),
    x_actor_id: Optional[uuid.UUID] = Header(default=None),
    x_branch_id: Optional[uuid.UUID] = Header(default=None),
) -> Actor:
    return Actor(id=x_actor_id, role=x_actor_role, company_id=x_company_id, branch_id=x_branch_id)


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

# ---------------------------------------------------------------------------
# Maintenance request schemas
# ---------------------------------------------------------------------------

class CreateMaintenanceRequestBody(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    category: str = Field(..., min_length=1, max_length=100)
    priority: Priority = Priority.MEDIUM
    initial_stage: Stage = Field(
        default=Stage.SUBMITTED,
        description="Entry channel: 'draft' (saved for later) or 'submitted'.",
    )
    description: str = Field(default="")
    subcategory: str = Field(default="")
    branch_id: Optional[uuid.UUID] = None
    latitude: Optional[float] = Field(default=None, ge=-90.0, le=90.0)
    longitude: Optional[float] = Field(default=None, ge=-180.0, le=180.0)
    location: str = Field(default="")

    @field_validator("initial_stage")
    @classmethod
    def validate_initial_stage(cls, v: Stage) -> Stage:
        if v not in (Stage.DRAFT, Stage.SUBMITTED):
            raise ValueError("initial_stage must be 'draft' or 'submitted'")
        return v


class TransitionBody(BaseModel):
    target_stage: Stage
    note: str = Field(default="", max_length=2000)
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form context; 'provider_id' assigns a provider manually.",
    )
    expected_version: Optional[int] = Field(
        default=None, ge=1,
        description="Version the client last read; a mismatch returns 409.",
    )


# ---------------------------------------------------------------------------
# Provider schemas
# ---------------------------------------------------------------------------

class RegisterProviderBody(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    kind: ProviderKind = ProviderKind.TECHNICIAN
    specializations: List[str] = Field(default_factory=list)
    status: ProviderStatus = ProviderStatus.OFFLINE
    service_radius_km: Optional[float] = Field(default=None, gt=0)
    rating: float = Field(default=0.0, ge=0.0, le=5.0)
    latitude: Optional[float] = Field(default=None, ge=-90.0, le=90.0)
    longitude: Optional[float] = Field(default=None, ge=-180.0, le=180.0)
    phone: str = Field(default="")
    email: str = Field(default="")


class UpdateLocationBody(BaseModel):
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    status: Optional[ProviderStatus] = None


# ---------------------------------------------------------------------------
# SLA policy schemas
# ---------------------------------------------------------------------------

class UpsertSlaPolicyBody(BaseModel):
    priority: Priority
    category: Optional[str] = Field(
        default=None, description="Omit for the priority-wide fallback row."
    )
    accept_within_min: int = Field(..., gt=0)
    arrive_within_min: int = Field(..., gt=0)
    complete_within_min: int = Field(..., gt=0)


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Maintenance requests
# ---------------------------------------------------------------------------

request_router = APIRouter(prefix="/requests", tags=["Maintenance Requests"])


@request_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Create a maintenance request",
)
def create_request(
    body: CreateMaintenanceRequestBody,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Creates the request in `draft` or `submitted`.  A request created in
    `submitted` starts its SLA clocks immediately.
    """
    cmd = CreateRequestCommand(
        actor=actor,
        title=body.title,
        category=body.category,
        priority=body.priority,
        initial_stage=body.initial_stage,
        description=body.description,
        subcategory=body.subcategory,
        branch_id=body.branch_id,
        latitude=body.latitude,
        longitude=body.longitude,
        location=body.location,
    )
    return _ok(engine.create_request(cmd, uow))


@request_router.get("", summary="List requests visible to the actor")
def list_requests(
    stage: Optional[Stage] = Query(default=None),
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(engine.list_requests(actor, uow, stage))


@request_router.get("/{request_id}", summary="Get a maintenance request")
def get_request(
    request_id: uuid.UUID = Path(...),
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(engine.get_request(request_id, actor, uow))


@request_router.post(
    "/{request_id}/transitions",
    summary="Move a request to a new stage",
)
def transition_request(
    body: TransitionBody,
    request_id: uuid.UUID = Path(...),
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Validates the edge against the transition table and the actor's role.
    Moving to the current stage is a successful no-op.  With
    `expected_version` the call is a single compare-and-swap; without it,
    conflicts are retried against fresh state.
    """
    cmd = TransitionCommand(
        request_id=request_id,
        target_stage=body.target_stage,
        actor=actor,
        note=body.note,
        metadata=body.metadata,
        expected_version=body.expected_version,
    )
    return _ok(engine.transition(cmd, uow))


@request_router.get(
    "/{request_id}/provider-matches",
    summary="Rank available providers by distance",
)
def match_providers(
    request_id: uuid.UUID = Path(...),
    specialization: Optional[str] = Query(default=None),
    max_distance_km: Optional[float] = Query(default=None, ge=0),
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    An empty candidate list (`matched: false`) is a normal outcome; the
    caller falls back to manual assignment.
    """
    cmd = MatchProviderCommand(
        request_id=request_id,
        actor=actor,
        specialization=specialization,
        max_distance_km=max_distance_km,
        limit=limit,
    )
    return _ok(engine.match_provider(cmd, uow))


@request_router.get("/{request_id}/sla", summary="SLA due times and breach flags")
def get_sla_status(
    request_id: uuid.UUID = Path(...),
    at: Optional[datetime] = Query(default=None, description="Evaluate as of this instant."),
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(engine.get_sla_status(request_id, actor, uow, at))


@request_router.get("/{request_id}/history", summary="Request ledger, oldest first")
def get_history(
    request_id: uuid.UUID = Path(...),
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(engine.get_history(request_id, actor, uow))


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

provider_router = APIRouter(prefix="/providers", tags=["Providers"])


@provider_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Register a technician or vendor",
)
def register_provider(
    body: RegisterProviderBody,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = RegisterProviderCommand(
        actor=actor,
        name=body.name,
        kind=body.kind,
        specializations=body.specializations,
        status=body.status,
        service_radius_km=body.service_radius_km,
        rating=body.rating,
        latitude=body.latitude,
        longitude=body.longitude,
        phone=body.phone,
        email=body.email,
    )
    return _ok(engine.register_provider(cmd, uow))


@provider_router.put(
    "/{provider_id}/location",
    summary="Report a provider's current location",
)
def update_provider_location(
    body: UpdateLocationBody,
    provider_id: uuid.UUID = Path(...),
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = UpdateProviderLocationCommand(
        provider_id=provider_id,
        actor=actor,
        latitude=body.latitude,
        longitude=body.longitude,
        status=body.status,
    )
    return _ok(engine.update_provider_location(cmd, uow))


# ---------------------------------------------------------------------------
# SLA
# ---------------------------------------------------------------------------

sla_policy_router = APIRouter(prefix="/sla-policies", tags=["SLA Policies"])


@sla_policy_router.put("", summary="Create or replace an SLA policy row")
def upsert_sla_policy(
    body: UpsertSlaPolicyBody,
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = UpsertSlaPolicyCommand(
        actor=actor,
        priority=body.priority,
        category=body.category,
        accept_within_min=body.accept_within_min,
        arrive_within_min=body.arrive_within_min,
        complete_within_min=body.complete_within_min,
    )
    return _ok(engine.upsert_sla_policy(cmd, uow))


sla_router = APIRouter(prefix="/sla", tags=["SLA Monitoring"])


@sla_router.post("/scan", summary="Record newly overdue SLA windows")
def scan_sla_violations(
    at: Optional[datetime] = Query(default=None, description="Evaluate as of this instant."),
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Appends one `sla_violation` event per overdue window that has not been
    reported yet, and returns those violations.
    """
    return _ok(engine.scan_sla_violations(actor, uow, at))


@sla_router.get("/dashboard", summary="SLA health of open requests")
def sla_dashboard(
    at: Optional[datetime] = Query(default=None, description="Evaluate as of this instant."),
    actor: Actor = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(engine.sla_dashboard(actor, uow, at))


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------

workflow_router = APIRouter(prefix="/workflow", tags=["Workflow"])


@workflow_router.get("/transitions", summary="Effective transition table")
def list_transitions(
    from_stage: Optional[Stage] = Query(default=None),
    engine: DispatchEngine = Depends(get_engine),
):
    return _ok(engine.list_transitions(from_stage))


api_v1.include_router(request_router)
api_v1.include_router(provider_router)
api_v1.include_router(sla_policy_router)
api_v1.include_router(sla_router)
api_v1.include_router(workflow_router)

app.include_router(api_v1)


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# MCP Server - exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount()
