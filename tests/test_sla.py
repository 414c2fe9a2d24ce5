from datetime import timedelta

import pytest

from conftest import T0
from model import MaintenanceRequest, Priority, SlaClock, SlaPolicy, Stage
from service import (
    NO_POLICY,
    SlaHealth,
    SlaMonitorService,
    SlaPolicyResolver,
    SlaWindowService,
)


@pytest.fixture
def policies():
    return [
        SlaPolicy(priority=Priority.HIGH, category="plumbing",
                  accept_within_min=30, arrive_within_min=120, complete_within_min=480),
        SlaPolicy(priority=Priority.HIGH, category=None,
                  accept_within_min=60, arrive_within_min=240, complete_within_min=1440),
        SlaPolicy(priority=Priority.URGENT, category="electrical",
                  accept_within_min=10, arrive_within_min=60, complete_within_min=240),
    ]


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

def test_exact_row_wins(policies):
    res = SlaPolicyResolver().resolve(Priority.HIGH, "plumbing", T0, policies)
    assert res.policy_found
    assert res.deadlines.accept_due == T0 + timedelta(minutes=30)
    assert res.deadlines.arrive_due == T0 + timedelta(minutes=120)
    assert res.deadlines.complete_due == T0 + timedelta(minutes=480)


def test_category_match_ignores_case_and_spaces(policies):
    res = SlaPolicyResolver().resolve(Priority.HIGH, "  Plumbing ", T0, policies)
    assert res.deadlines.accept_due == T0 + timedelta(minutes=30)


def test_priority_only_row_is_the_fallback(policies):
    res = SlaPolicyResolver().resolve(Priority.HIGH, "hvac", T0, policies)
    assert res.deadlines.accept_due == T0 + timedelta(minutes=60)


def test_no_row_is_a_typed_outcome_not_an_error(policies):
    res = SlaPolicyResolver().resolve(Priority.URGENT, "plumbing", T0, policies)
    assert not res.policy_found
    assert res.deadlines is None
    assert res.reason == NO_POLICY


def test_breach_is_strict():
    due = T0 + timedelta(minutes=30)
    assert not SlaPolicyResolver.is_breached(due, due)
    assert SlaPolicyResolver.is_breached(due, due + timedelta(seconds=1))
    assert not SlaPolicyResolver.is_breached(due, due - timedelta(seconds=1))


def test_no_due_time_is_never_breached():
    assert not SlaPolicyResolver.is_breached(None, T0 + timedelta(days=365))


# ---------------------------------------------------------------------------
# Windows
# ---------------------------------------------------------------------------

def _submitted(policies, at=T0):
    req = MaintenanceRequest(priority=Priority.HIGH, category="plumbing", stage=Stage.SUBMITTED)
    resolver = SlaPolicyResolver()
    SlaWindowService(resolver).start_clocks(
        req, resolver.resolve(req.priority, req.category, at, policies)
    )
    return req


def test_due_times_are_written_once(policies):
    req = _submitted(policies)
    first = req.sla_accept_due
    resolver = SlaPolicyResolver()
    later = resolver.resolve(req.priority, req.category, T0 + timedelta(hours=5), policies)
    SlaWindowService(resolver).start_clocks(req, later)
    assert req.sla_accept_due == first


def test_policy_miss_is_recorded_on_the_request():
    req = MaintenanceRequest(priority=Priority.LOW, category="garden")
    resolver = SlaPolicyResolver()
    SlaWindowService(resolver).start_clocks(req, resolver.resolve(req.priority, req.category, T0, []))
    assert req.sla_policy_missing
    assert req.sla_accept_due is None


def test_leaving_submitted_closes_the_accept_window_only(policies):
    req = _submitted(policies)
    closed = SlaWindowService().close_windows(req, Stage.UNDER_REVIEW, T0 + timedelta(minutes=45))
    assert [w.clock for w in closed] == [SlaClock.ACCEPT]
    assert closed[0].breached
    assert req.sla_arrive_closed_at is None


def test_closed_window_is_judged_when_it_closed(policies):
    req = _submitted(policies)
    windows = SlaWindowService()
    windows.close_windows(req, Stage.UNDER_REVIEW, T0 + timedelta(minutes=5))
    status = windows.status(req, T0 + timedelta(days=3))
    assert not status[SlaClock.ACCEPT].breached
    assert status[SlaClock.ARRIVE].breached
    assert status[SlaClock.COMPLETE].breached


def test_cancellation_closes_every_open_window(policies):
    req = _submitted(policies)
    closed = SlaWindowService().close_windows(req, Stage.CANCELLED, T0 + timedelta(minutes=1))
    assert {w.clock for w in closed} == set(SlaClock)


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

def test_violations_only_for_open_overdue_windows(policies):
    req = _submitted(policies)
    monitor = SlaMonitorService()
    assert monitor.find_violations(req, T0 + timedelta(minutes=30)) == []

    found = monitor.find_violations(req, T0 + timedelta(minutes=45))
    assert [(v.clock, v.minutes_overdue) for v in found] == [(SlaClock.ACCEPT, 15)]


def test_already_reported_windows_are_skipped(policies):
    req = _submitted(policies)
    found = SlaMonitorService().find_violations(
        req, T0 + timedelta(minutes=45), already_reported={SlaClock.ACCEPT}
    )
    assert found == []


def test_terminal_requests_have_no_violations(policies):
    req = _submitted(policies)
    req.stage = Stage.CANCELLED
    assert SlaMonitorService().find_violations(req, T0 + timedelta(days=2)) == []


def test_classify(policies):
    thresholds = {SlaClock.ACCEPT: 10, SlaClock.ARRIVE: 60, SlaClock.COMPLETE: 120}
    monitor = SlaMonitorService()
    req = _submitted(policies)
    assert monitor.classify(req, T0, thresholds) == SlaHealth.ON_TIME
    assert monitor.classify(req, T0 + timedelta(minutes=25), thresholds) == SlaHealth.AT_RISK
    assert monitor.classify(req, T0 + timedelta(minutes=31), thresholds) == SlaHealth.OVERDUE
