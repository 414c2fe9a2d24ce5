"""
workflow.py

Role-gated transition table for the maintenance request lifecycle.

The table is plain data: a list of edges, each naming the stage it leaves,
the stage it enters, and the roles allowed to take it.  The built-in
DEFAULT_TRANSITIONS cover the standard workflow; tenants with a different
workflow supply their own table as a JSON file (see load_transition_table).

JSON format
-----------
    [
      {"from": "draft", "to": "submitted", "roles": ["customer", "staff"]},
      ...
    ]

Stage / status vocabulary
-------------------------
Stage is the only persisted lifecycle field.  RequestStatus is derived from
it through project_status(); it is recomputed on every stage change and is
never written independently.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from model import RequestStatus, Role, Stage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Stage classification
# ---------------------------------------------------------------------------

# Requests in these stages only accept the outgoing edges the table defines
# for them (archival, re-open); everything else is AlreadyTerminal.
TERMINAL_STAGES: FrozenSet[Stage] = frozenset({
    Stage.CLOSED,
    Stage.ARCHIVED,
    Stage.CANCELLED,
    Stage.REJECTED,
})

# The only exits any table may define out of a closed or archived request.
SEALED_EXITS: Dict[Stage, FrozenSet[Stage]] = {
    Stage.CLOSED: frozenset({Stage.ARCHIVED}),
    Stage.ARCHIVED: frozenset(),
}

_STATUS_PROJECTION: Dict[Stage, RequestStatus] = {
    Stage.DRAFT: RequestStatus.OPEN,
    Stage.SUBMITTED: RequestStatus.OPEN,
    Stage.UNDER_REVIEW: RequestStatus.OPEN,
    Stage.APPROVED: RequestStatus.OPEN,
    Stage.ASSIGNED: RequestStatus.ASSIGNED,
    Stage.ACCEPTED: RequestStatus.ASSIGNED,
    Stage.SCHEDULED: RequestStatus.ASSIGNED,
    Stage.IN_PROGRESS: RequestStatus.IN_PROGRESS,
    Stage.PENDING_INSPECTION: RequestStatus.IN_PROGRESS,
    Stage.INSPECTION_PASSED: RequestStatus.IN_PROGRESS,
    Stage.ADDITIONAL_MATERIALS_NEEDED: RequestStatus.WAITING,
    Stage.MATERIALS_APPROVED: RequestStatus.WAITING,
    Stage.ON_HOLD: RequestStatus.WAITING,
    Stage.COMPLETED: RequestStatus.COMPLETED,
    Stage.BILLED: RequestStatus.COMPLETED,
    Stage.PAID: RequestStatus.COMPLETED,
    Stage.CLOSED: RequestStatus.CLOSED,
    Stage.ARCHIVED: RequestStatus.CLOSED,
    Stage.CANCELLED: RequestStatus.CANCELLED,
    Stage.REJECTED: RequestStatus.REJECTED,
}


def project_status(stage: Stage) -> RequestStatus:
    """Map a canonical stage onto the coarse external status."""
    return _STATUS_PROJECTION[stage]


def is_terminal(stage: Stage) -> bool:
    return stage in TERMINAL_STAGES


# ---------------------------------------------------------------------------
# Default table
# ---------------------------------------------------------------------------

_MGMT = ["manager", "admin", "system"]
_FIELD = ["technician", "vendor"]

DEFAULT_TRANSITIONS: List[Dict[str, Union[str, List[str]]]] = [
    # intake
    {"from": "draft", "to": "submitted", "roles": ["customer", "staff"] + _MGMT},
    {"from": "draft", "to": "cancelled", "roles": ["customer", "staff"] + _MGMT},
    {"from": "submitted", "to": "under_review", "roles": ["staff"] + _MGMT},
    {"from": "submitted", "to": "rejected", "roles": _MGMT},
    {"from": "submitted", "to": "cancelled", "roles": ["customer"] + _MGMT},
    {"from": "under_review", "to": "approved", "roles": _MGMT},
    {"from": "under_review", "to": "rejected", "roles": _MGMT},
    {"from": "under_review", "to": "on_hold", "roles": _MGMT},
    {"from": "under_review", "to": "cancelled", "roles": ["customer"] + _MGMT},
    # dispatch
    {"from": "approved", "to": "assigned", "roles": ["staff"] + _MGMT},
    {"from": "approved", "to": "cancelled", "roles": _MGMT},
    {"from": "assigned", "to": "accepted", "roles": _FIELD + _MGMT},
    {"from": "assigned", "to": "approved", "roles": _FIELD + _MGMT},   # provider declined
    {"from": "assigned", "to": "rejected", "roles": _MGMT},
    {"from": "assigned", "to": "cancelled", "roles": _MGMT},
    {"from": "accepted", "to": "scheduled", "roles": _FIELD + ["staff"] + _MGMT},
    {"from": "accepted", "to": "cancelled", "roles": _MGMT},
    {"from": "scheduled", "to": "in_progress", "roles": _FIELD + _MGMT},
    {"from": "scheduled", "to": "cancelled", "roles": ["customer"] + _MGMT},
    # execution
    {"from": "in_progress", "to": "pending_inspection", "roles": _FIELD + _MGMT},
    {"from": "in_progress", "to": "additional_materials_needed", "roles": _FIELD + _MGMT},
    {"from": "in_progress", "to": "on_hold", "roles": _FIELD + _MGMT},
    {"from": "in_progress", "to": "cancelled", "roles": _MGMT},
    {"from": "additional_materials_needed", "to": "materials_approved",
     "roles": ["customer", "warehouse"] + _MGMT},
    {"from": "additional_materials_needed", "to": "cancelled", "roles": ["customer"] + _MGMT},
    {"from": "materials_approved", "to": "in_progress", "roles": _FIELD + _MGMT},
    {"from": "on_hold", "to": "in_progress", "roles": _FIELD + _MGMT},
    {"from": "on_hold", "to": "under_review", "roles": _MGMT},
    {"from": "on_hold", "to": "cancelled", "roles": ["customer"] + _MGMT},
    {"from": "pending_inspection", "to": "inspection_passed", "roles": ["engineering", "staff"] + _MGMT},
    {"from": "pending_inspection", "to": "in_progress", "roles": ["engineering", "staff"] + _MGMT},
    {"from": "inspection_passed", "to": "completed", "roles": _FIELD + ["staff"] + _MGMT},
    # financial close-out
    {"from": "completed", "to": "billed", "roles": ["accounting"] + _MGMT},
    {"from": "billed", "to": "paid", "roles": ["accounting", "admin", "system"]},
    {"from": "paid", "to": "closed", "roles": ["accounting"] + _MGMT},
    # archival and re-open
    {"from": "closed", "to": "archived", "roles": _MGMT},
    {"from": "cancelled", "to": "archived", "roles": _MGMT},
    {"from": "rejected", "to": "archived", "roles": _MGMT},
    {"from": "rejected", "to": "under_review", "roles": _MGMT},
]


# ---------------------------------------------------------------------------
# Table
# ---------------------------------------------------------------------------

class TransitionSpec(BaseModel):
    """One edge as read from configuration."""
    model_config = ConfigDict(populate_by_name=True)

    from_stage: Stage = Field(..., alias="from")
    to_stage: Stage = Field(..., alias="to")
    roles: List[Role] = Field(..., min_length=1)


_SPEC_LIST = TypeAdapter(List[TransitionSpec])


@dataclass(frozen=True)
class TransitionTable:
    """Immutable edge → allowed-roles lookup consulted by the state machine."""
    edges: Dict[Tuple[Stage, Stage], FrozenSet[Role]]

    @classmethod
    def from_specs(cls, specs: Iterable[TransitionSpec]) -> "TransitionTable":
        edges: Dict[Tuple[Stage, Stage], FrozenSet[Role]] = {}
        for spec in specs:
            if spec.from_stage == spec.to_stage:
                raise ValueError(
                    f"Self-edge '{spec.from_stage.value}' is not allowed; "
                    "same-stage transitions are always no-ops."
                )
            sealed = SEALED_EXITS.get(spec.from_stage)
            if sealed is not None and spec.to_stage not in sealed:
                raise ValueError(
                    f"Edge '{spec.from_stage.value}' -> '{spec.to_stage.value}' is not allowed; "
                    f"'{spec.from_stage.value}' requests are immutable"
                    + (f" except for {sorted(s.value for s in sealed)}." if sealed else ".")
                )
            key = (spec.from_stage, spec.to_stage)
            edges[key] = edges.get(key, frozenset()) | frozenset(spec.roles)
        return cls(edges=edges)

    @classmethod
    def from_data(cls, data: object) -> "TransitionTable":
        return cls.from_specs(_SPEC_LIST.validate_python(data))

    def has_edge(self, from_stage: Stage, to_stage: Stage) -> bool:
        return (from_stage, to_stage) in self.edges

    def roles_for(self, from_stage: Stage, to_stage: Stage) -> FrozenSet[Role]:
        return self.edges.get((from_stage, to_stage), frozenset())

    def targets_from(self, from_stage: Stage) -> List[Stage]:
        return [to for (frm, to) in self.edges if frm == from_stage]

    def to_data(self) -> List[Dict[str, object]]:
        return [
            {
                "from": frm.value,
                "to": to.value,
                "roles": sorted(r.value for r in roles),
            }
            for (frm, to), roles in self.edges.items()
        ]


def default_transition_table() -> TransitionTable:
    return TransitionTable.from_data(DEFAULT_TRANSITIONS)


def load_transition_table(path: Optional[Union[str, Path]] = None) -> TransitionTable:
    """
    Load the transition table from a JSON file, or return the built-in
    default when no path is given.
    """
    if path is None:
        return default_transition_table()
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    table = TransitionTable.from_data(raw)
    logger.info("Loaded %d transition edges from %s", len(table.edges), path)
    return table
