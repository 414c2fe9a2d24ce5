import itertools
import uuid
from datetime import timedelta

import pytest

from conftest import KM_PER_DEGREE, T0
from model import (
    Actor,
    EventType,
    MaintenanceRequest,
    Priority,
    Provider,
    ProviderStatus,
    RequestStatus,
    Role,
    SlaPolicy,
    Stage,
)
from service import CheckCode, EventLedgerService, RequestStateMachine
from workflow import default_transition_table, project_status

COMPANY = uuid.uuid4()
BRANCH = uuid.uuid4()


def _actor(role, company=COMPANY, branch=None):
    return Actor(id=uuid.uuid4(), role=role, company_id=company, branch_id=branch)


def _request(stage, **kwargs):
    kwargs.setdefault("category", "plumbing")
    kwargs.setdefault("priority", Priority.HIGH)
    return MaintenanceRequest(
        company_id=COMPANY, branch_id=BRANCH, stage=stage, status=project_status(stage), **kwargs
    )


@pytest.fixture
def sm():
    return RequestStateMachine(default_transition_table())


# ---------------------------------------------------------------------------
# check()
# ---------------------------------------------------------------------------

def test_transition_closure(sm):
    """Nothing outside the table ever passes the check."""
    table = sm.table
    for current, target, role in itertools.product(Stage, Stage, Role):
        if current == target:
            continue
        code = sm.check(_request(current), target, _actor(role)).code
        if role in table.roles_for(current, target):
            assert code == CheckCode.OK
        else:
            assert code in (
                CheckCode.INVALID_TRANSITION,
                CheckCode.FORBIDDEN,
                CheckCode.ALREADY_TERMINAL,
            ), (current, target, role)


def test_same_stage_is_a_noop(sm):
    check = sm.check(_request(Stage.SCHEDULED), Stage.SCHEDULED, _actor(Role.CUSTOMER))
    assert check.allowed
    assert check.code == CheckCode.NOOP


@pytest.mark.parametrize("stage", [Stage.CLOSED, Stage.ARCHIVED])
def test_closed_and_archived_are_immutable(sm, stage):
    for target in Stage:
        if sm.table.has_edge(stage, target):
            continue
        assert sm.check(_request(stage), target, _actor(Role.ADMIN)).code == CheckCode.ALREADY_TERMINAL


def test_closed_requests_can_still_be_archived(sm):
    assert sm.check(_request(Stage.CLOSED), Stage.ARCHIVED, _actor(Role.ADMIN)).code == CheckCode.OK


def test_tenant_is_checked_before_anything_else(sm):
    stranger = _actor(Role.ADMIN, company=uuid.uuid4())
    assert sm.check(_request(Stage.CLOSED), Stage.CLOSED, stranger).code == CheckCode.TENANT_MISMATCH


def test_branch_scope(sm):
    other_branch = _actor(Role.STAFF, branch=uuid.uuid4())
    same_branch = _actor(Role.STAFF, branch=BRANCH)
    company_wide = _actor(Role.STAFF)
    req = _request(Stage.SUBMITTED)
    assert sm.check(req, Stage.UNDER_REVIEW, other_branch).code == CheckCode.TENANT_MISMATCH
    assert sm.check(req, Stage.UNDER_REVIEW, same_branch).code == CheckCode.OK
    assert sm.check(req, Stage.UNDER_REVIEW, company_wide).code == CheckCode.OK


def test_invalid_edge_before_role(sm):
    check = sm.check(_request(Stage.SUBMITTED), Stage.COMPLETED, _actor(Role.CUSTOMER))
    assert check.code == CheckCode.INVALID_TRANSITION


def test_role_not_on_edge_is_forbidden(sm):
    check = sm.check(_request(Stage.UNDER_REVIEW), Stage.APPROVED, _actor(Role.CUSTOMER))
    assert check.code == CheckCode.FORBIDDEN
    assert "customer" in check.reason


# ---------------------------------------------------------------------------
# apply()
# ---------------------------------------------------------------------------

POLICY = SlaPolicy(priority=Priority.HIGH, category=None,
                   accept_within_min=30, arrive_within_min=120, complete_within_min=480)


def test_entering_submitted_starts_the_clocks(sm):
    req = _request(Stage.DRAFT)
    outcome = sm.apply(req, Stage.SUBMITTED, _actor(Role.CUSTOMER), T0, policies=[POLICY])
    assert req.sla_accept_due == T0 + timedelta(minutes=30)
    assert outcome.sla.policy_found
    assert outcome.event.metadata["sla_policy_found"] is True


def test_entering_submitted_without_policy_proceeds(sm):
    req = _request(Stage.DRAFT, priority=Priority.LOW)
    outcome = sm.apply(req, Stage.SUBMITTED, _actor(Role.CUSTOMER), T0, policies=[POLICY])
    assert req.stage == Stage.SUBMITTED
    assert req.sla_accept_due is None
    assert req.sla_policy_missing
    assert outcome.event.metadata["sla_policy_found"] is False


def test_apply_projects_status_and_records_one_event(sm):
    req = _request(Stage.SCHEDULED)
    actor = _actor(Role.TECHNICIAN)
    outcome = sm.apply(req, Stage.IN_PROGRESS, actor, T0, note="on site")
    assert req.stage == Stage.IN_PROGRESS
    assert req.status == RequestStatus.IN_PROGRESS
    assert req.updated_at == T0
    assert outcome.event.from_stage == Stage.SCHEDULED
    assert outcome.event.to_stage == Stage.IN_PROGRESS
    assert outcome.event.actor_id == actor.id
    assert outcome.event.actor_role == Role.TECHNICIAN
    assert outcome.event.note == "on site"


def test_apply_same_stage_writes_nothing(sm):
    req = _request(Stage.SCHEDULED)
    outcome = sm.apply(req, Stage.SCHEDULED, _actor(Role.TECHNICIAN), T0)
    assert not outcome.changed
    assert req.updated_at != T0


def _located_provider(name, km, **kwargs):
    return Provider(
        company_id=COMPANY, name=name, specializations=["plumbing"],
        status=ProviderStatus.AVAILABLE, current_latitude=km / KM_PER_DEGREE,
        current_longitude=0.0, location_updated_at=T0, **kwargs,
    )


def test_entering_assigned_proposes_the_nearest_provider(sm):
    req = _request(Stage.APPROVED, latitude=0.0, longitude=0.0)
    near, far = _located_provider("near", 1), _located_provider("far", 9)
    outcome = sm.apply(req, Stage.ASSIGNED, _actor(Role.MANAGER), T0, providers=[far, near])
    assert outcome.event.event_type == EventType.REQUEST_ASSIGNED
    assert outcome.proposal.provider.id == near.id
    assert req.proposed_provider_id == near.id
    assert req.assigned_provider_id is None
    assert outcome.event.metadata["assignment"] == "proposed"


def test_acceptance_confirms_the_proposal(sm):
    req = _request(Stage.APPROVED, latitude=0.0, longitude=0.0)
    near = _located_provider("near", 1)
    sm.apply(req, Stage.ASSIGNED, _actor(Role.MANAGER), T0, providers=[near])
    sm.apply(req, Stage.ACCEPTED, _actor(Role.TECHNICIAN), T0)
    assert req.assigned_provider_id == near.id
    assert req.proposed_provider_id is None


def test_field_role_accepting_without_a_provider_becomes_the_provider(sm):
    vendor = _actor(Role.VENDOR)
    req = _request(Stage.ASSIGNED)
    sm.apply(req, Stage.ACCEPTED, vendor, T0)
    assert req.assigned_provider_id == vendor.id

    req = _request(Stage.ASSIGNED)
    sm.apply(req, Stage.ACCEPTED, _actor(Role.MANAGER), T0)
    assert req.assigned_provider_id is None


def test_declined_providers_are_skipped_when_proposing(sm):
    req = _request(Stage.APPROVED, latitude=0.0, longitude=0.0)
    near, far = _located_provider("near", 1), _located_provider("far", 9)
    outcome = sm.apply(
        req, Stage.ASSIGNED, _actor(Role.MANAGER), T0, providers=[near, far], declined=[near.id]
    )
    assert outcome.proposal.provider.id == far.id


def test_manual_provider_overrides_matching(sm):
    req = _request(Stage.APPROVED, latitude=0.0, longitude=0.0)
    chosen = uuid.uuid4()
    outcome = sm.apply(
        req, Stage.ASSIGNED, _actor(Role.MANAGER), T0,
        metadata={"provider_id": str(chosen)}, providers=[_located_provider("near", 1)],
    )
    assert req.assigned_provider_id == chosen
    assert outcome.proposal is None
    assert outcome.event.metadata["assignment"] == "manual"
    assert "provider_id" not in outcome.event.metadata


def test_no_match_degrades_to_manual_assignment(sm):
    req = _request(Stage.APPROVED)
    outcome = sm.apply(req, Stage.ASSIGNED, _actor(Role.MANAGER), T0, providers=[])
    assert req.stage == Stage.ASSIGNED
    assert outcome.event.metadata["assignment"] == "no_provider_match"


def test_provider_declining_returns_to_approved(sm):
    provider_id = uuid.uuid4()
    req = _request(Stage.ASSIGNED, assigned_provider_id=provider_id)
    outcome = sm.apply(req, Stage.APPROVED, _actor(Role.TECHNICIAN), T0)
    assert req.assigned_provider_id is None
    assert outcome.event.metadata["declined_provider_id"] == str(provider_id)


def test_completion_and_archival(sm):
    req = _request(Stage.INSPECTION_PASSED)
    outcome = sm.apply(req, Stage.COMPLETED, _actor(Role.TECHNICIAN), T0)
    assert outcome.event.event_type == EventType.REQUEST_COMPLETED

    req = _request(Stage.CLOSED)
    sm.apply(req, Stage.ARCHIVED, _actor(Role.ADMIN), T0)
    assert req.archived_at == T0


def test_stage_changes_close_sla_windows(sm):
    req = _request(Stage.DRAFT)
    sm.apply(req, Stage.SUBMITTED, _actor(Role.CUSTOMER), T0, policies=[POLICY])
    outcome = sm.apply(req, Stage.UNDER_REVIEW, _actor(Role.STAFF), T0 + timedelta(minutes=40))
    assert outcome.event.metadata["sla_windows_closed"] == {"accept": {"breached": True}}
    assert req.sla_accept_closed_at == T0 + timedelta(minutes=40)


def test_ledger_replay_matches_the_stage(sm):
    req = _request(Stage.DRAFT)
    events = []
    for target, role in [
        (Stage.SUBMITTED, Role.CUSTOMER),
        (Stage.UNDER_REVIEW, Role.STAFF),
        (Stage.ON_HOLD, Role.MANAGER),
        (Stage.ON_HOLD, Role.MANAGER),
        (Stage.UNDER_REVIEW, Role.MANAGER),
    ]:
        outcome = sm.apply(req, target, _actor(role), T0)
        if outcome.event:
            outcome.event.sequence = len(events) + 1
            events.append(outcome.event)
    assert len(events) == 4
    assert EventLedgerService.replay_stage(events) == req.stage == Stage.UNDER_REVIEW
