import json

import pytest
from pydantic import ValidationError

from model import RequestStatus, Role, Stage
from workflow import (
    DEFAULT_TRANSITIONS,
    TERMINAL_STAGES,
    TransitionTable,
    default_transition_table,
    is_terminal,
    load_transition_table,
    project_status,
)


def test_default_table_covers_every_listed_edge():
    table = default_transition_table()
    assert len(table.edges) == len(DEFAULT_TRANSITIONS)
    assert table.has_edge(Stage.SCHEDULED, Stage.IN_PROGRESS)
    assert Role.TECHNICIAN in table.roles_for(Stage.SCHEDULED, Stage.IN_PROGRESS)
    assert Role.CUSTOMER not in table.roles_for(Stage.UNDER_REVIEW, Stage.APPROVED)


def test_every_non_archived_stage_has_a_way_out():
    table = default_transition_table()
    for stage in Stage:
        if stage == Stage.ARCHIVED:
            assert table.targets_from(stage) == []
        else:
            assert table.targets_from(stage), stage


def test_every_stage_projects_to_a_status():
    for stage in Stage:
        assert isinstance(project_status(stage), RequestStatus)
    assert project_status(Stage.ON_HOLD) == RequestStatus.WAITING
    assert project_status(Stage.ARCHIVED) == RequestStatus.CLOSED


def test_terminal_set():
    assert TERMINAL_STAGES == {Stage.CLOSED, Stage.ARCHIVED, Stage.CANCELLED, Stage.REJECTED}
    assert is_terminal(Stage.CLOSED)
    assert not is_terminal(Stage.PAID)


def test_self_edges_are_rejected():
    with pytest.raises(ValueError, match="Self-edge"):
        TransitionTable.from_data([{"from": "draft", "to": "draft", "roles": ["admin"]}])


@pytest.mark.parametrize("edge", [
    {"from": "closed", "to": "in_progress", "roles": ["admin"]},
    {"from": "closed", "to": "billed", "roles": ["accounting"]},
    {"from": "archived", "to": "submitted", "roles": ["admin"]},
    {"from": "archived", "to": "closed", "roles": ["system"]},
])
def test_closed_and_archived_requests_cannot_be_reopened_by_configuration(tmp_path, edge):
    with pytest.raises(ValueError, match="immutable"):
        TransitionTable.from_data(DEFAULT_TRANSITIONS + [edge])

    path = tmp_path / "tenant_workflow.json"
    path.write_text(json.dumps([edge]))
    with pytest.raises(ValueError, match="immutable"):
        load_transition_table(path)


def test_other_terminal_exits_stay_configurable():
    table = TransitionTable.from_data([
        {"from": "closed", "to": "archived", "roles": ["admin"]},
        {"from": "cancelled", "to": "submitted", "roles": ["manager"]},
        {"from": "rejected", "to": "under_review", "roles": ["manager"]},
    ])
    assert table.has_edge(Stage.CLOSED, Stage.ARCHIVED)
    assert table.has_edge(Stage.CANCELLED, Stage.SUBMITTED)


def test_unknown_stage_or_role_is_rejected():
    with pytest.raises(ValidationError):
        TransitionTable.from_data([{"from": "draft", "to": "teleported", "roles": ["admin"]}])
    with pytest.raises(ValidationError):
        TransitionTable.from_data([{"from": "draft", "to": "submitted", "roles": ["janitor"]}])
    with pytest.raises(ValidationError):
        TransitionTable.from_data([{"from": "draft", "to": "submitted", "roles": []}])


def test_duplicate_edges_merge_their_roles():
    table = TransitionTable.from_data([
        {"from": "draft", "to": "submitted", "roles": ["customer"]},
        {"from": "draft", "to": "submitted", "roles": ["staff"]},
    ])
    assert table.roles_for(Stage.DRAFT, Stage.SUBMITTED) == {Role.CUSTOMER, Role.STAFF}


def test_load_from_json_file(tmp_path):
    path = tmp_path / "tenant_workflow.json"
    path.write_text(json.dumps([
        {"from": "draft", "to": "submitted", "roles": ["customer"]},
        {"from": "submitted", "to": "approved", "roles": ["manager"]},
    ]))
    table = load_transition_table(path)
    assert set(table.edges) == {
        (Stage.DRAFT, Stage.SUBMITTED),
        (Stage.SUBMITTED, Stage.APPROVED),
    }


def test_no_path_gives_the_default_table():
    assert load_transition_table(None) == default_transition_table()


def test_round_trip_through_plain_data():
    table = default_transition_table()
    assert TransitionTable.from_data(table.to_data()) == table
