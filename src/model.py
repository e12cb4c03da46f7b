"""
model.py

Domain models for the CFS Receive-Plan Scheduling & Execution Engine.

Entities
--------
- ReceivePlan
- PlanContainer
- ContainerRecord      (read-only projection of the inventory collaborator)

Value objects
-------------
- ReceiveDetails / RejectDetails / DeferDetails
- TimeWindow
- ValidationIssue / ValidationVerdict
- ExecutionSummary

All models use Python dataclasses for clean, framework-agnostic definitions.
UUID primary keys are used throughout for portability.
Timestamps are always stored as tz-aware UTC datetimes.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class PlanStatus(str, Enum):
    """
    Lifecycle status of a receive plan.

    SCHEDULED    – Created, waiting to be started.
    IN_PROGRESS  – Being executed; at most one plan system-wide.
    PENDING      – Execution finished except for rejected/deferred containers
                   awaiting reconciliation.
    DONE         – Closed.
    """
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING = "PENDING"
    DONE = "DONE"


class PlanContainerStatus(str, Enum):
    """Status of one container inside a plan."""
    WAITING = "WAITING"
    RECEIVED = "RECEIVED"
    REJECTED = "REJECTED"
    DEFERRED = "DEFERRED"
    # Reserved for later execution phases; no rule produces them yet.
    IN_PROGRESS = "IN_PROGRESS"
    ON_HOLD = "ON_HOLD"
    DONE = "DONE"


class ContainerAction(str, Enum):
    RECEIVE = "receive"
    REJECT = "reject"
    DEFER = "defer"


class ReceiveType(str, Enum):
    """Sub-type recorded when a container is received."""
    NORMAL = "NORMAL"
    PROBLEM = "PROBLEM"
    ADJUSTED_DOCUMENT = "ADJUSTED_DOCUMENT"


class CargoReleaseStatus(str, Enum):
    NOT_REQUESTED = "NOT_REQUESTED"
    REQUESTED = "REQUESTED"
    APPROVED = "APPROVED"


class CustomsStatus(str, Enum):
    NOT_REGISTERED = "NOT_REGISTERED"
    REGISTERED = "REGISTERED"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    HAS_CCP = "HAS_CCP"
    REJECTED = "REJECTED"


class IssueCategory(str, Enum):
    """
    Classification of a validation finding.

    VALIDATION      – The proposed plan breaks a scheduling rule (blocking).
    DATA_INTEGRITY  – Existing plan data is inconsistent, so the proposal
                      cannot be checked (blocking).
    ADVISORY        – Informational only; never blocks a save.
    """
    VALIDATION = "VALIDATION"
    DATA_INTEGRITY = "DATA_INTEGRITY"
    ADVISORY = "ADVISORY"


class IssueCode(str, Enum):
    END_BEFORE_START = "END_BEFORE_START"
    START_IN_PAST = "START_IN_PAST"
    SCHEDULE_OVERLAP = "SCHEDULE_OVERLAP"
    NO_CONTAINERS = "NO_CONTAINERS"
    MISSING_EXECUTION_START = "MISSING_EXECUTION_START"
    NON_POSITIVE_DURATION = "NON_POSITIVE_DURATION"
    EXTRACTION_DEADLINE_EXCEEDED = "EXTRACTION_DEADLINE_EXCEEDED"
    FREE_STORAGE_DEADLINE_EXCEEDED = "FREE_STORAGE_DEADLINE_EXCEEDED"


class RejectionReason(str, Enum):
    """Why a plan transition or container action was refused."""
    # Plan lifecycle
    INVALID_TRANSITION = "INVALID_TRANSITION"
    MISSING_CONTAINERS = "MISSING_CONTAINERS"
    PREREQUISITES_UNMET = "PREREQUISITES_UNMET"
    ANOTHER_PLAN_ACTIVE = "ANOTHER_PLAN_ACTIVE"
    CONTAINERS_WAITING = "CONTAINERS_WAITING"
    NOTHING_TO_RECONCILE = "NOTHING_TO_RECONCILE"
    UNRECONCILED_CONTAINERS = "UNRECONCILED_CONTAINERS"
    PLAN_NOT_EDITABLE = "PLAN_NOT_EDITABLE"
    CONTAINER_ALREADY_PLANNED = "CONTAINER_ALREADY_PLANNED"
    # Container execution
    PLAN_NOT_IN_PROGRESS = "PLAN_NOT_IN_PROGRESS"
    PLAN_NOT_PENDING = "PLAN_NOT_PENDING"
    CONTAINER_TERMINAL = "CONTAINER_TERMINAL"
    TRUCK_NUMBER_REQUIRED = "TRUCK_NUMBER_REQUIRED"
    NOT_RECONCILABLE = "NOT_RECONCILABLE"


def _utc() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Container action metadata
# ---------------------------------------------------------------------------


@dataclass
class ReceiveDetails:
    """
    Evidence captured when a container is received.

    `documents` and `photos` hold opaque identifiers returned by the
    document-storage collaborator; nothing here knows how they are stored.
    """
    received_at: datetime
    received_type: ReceiveType = ReceiveType.NORMAL
    truck_no: Optional[str] = None
    documents: List[str] = field(default_factory=list)
    photos: List[str] = field(default_factory=list)
    notes: Optional[str] = None


@dataclass
class RejectDetails:
    rejected_at: datetime
    notes: Optional[str] = None


@dataclass
class DeferDetails:
    deferred_at: datetime
    notes: Optional[str] = None


@dataclass
class ActionPayload:
    """
    Operator input for a receive / reject / defer action.

    Receive fields left as None keep their recorded values when an earlier
    receive is amended; a first receive defaults to NORMAL with no evidence.
    """
    timestamp: Optional[datetime] = None        # defaults to "now" when omitted
    notes: Optional[str] = None
    truck_no: Optional[str] = None
    received_type: Optional[ReceiveType] = None
    documents: Optional[List[str]] = None
    photos: Optional[List[str]] = None
    acted_by: Optional[str] = None


# ---------------------------------------------------------------------------
# Core entities
# ---------------------------------------------------------------------------


@dataclass
class ContainerRecord:
    """
    A container as known to the inventory collaborator.

    Only the fields the engine reads are projected here: identifying number,
    the two soft deadlines used for advisory warnings, and the readiness
    signals used to rank unplanned containers.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    container_no: str = ""
    extract_to: Optional[datetime] = None       # extraction deadline
    yard_free_to: Optional[datetime] = None     # free-storage deadline
    is_priority: bool = False
    cargo_release_status: CargoReleaseStatus = CargoReleaseStatus.NOT_REQUESTED
    customs_status: CustomsStatus = CustomsStatus.NOT_REGISTERED
    at_yard: bool = False
    created_at: datetime = field(default_factory=_utc)


@dataclass
class PlanContainer:
    """
    One container's presence inside a receive plan.

    Exactly one of `receive`, `reject`, `defer` is populated and it always
    matches `status`; a WAITING container has none of them.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    plan_id: uuid.UUID = field(default_factory=uuid.uuid4)         # FK → ReceivePlan.id
    container_id: uuid.UUID = field(default_factory=uuid.uuid4)    # FK → ContainerRecord.id
    status: PlanContainerStatus = PlanContainerStatus.WAITING
    completed: bool = False

    receive: Optional[ReceiveDetails] = None
    reject: Optional[RejectDetails] = None
    defer: Optional[DeferDetails] = None

    # Set while the plan is PENDING once a rejected/deferred entry is settled
    reconciled_at: Optional[datetime] = None
    reconcile_notes: Optional[str] = None

    assigned_at: datetime = field(default_factory=_utc)
    last_action_at: Optional[datetime] = None
    last_action_by: Optional[str] = None

    @property
    def action_timestamp(self) -> datetime:
        """Most recent action instant, falling back to the assignment time."""
        if self.last_action_at is not None:
            return self.last_action_at
        for details, attr in (
            (self.receive, "received_at"),
            (self.reject, "rejected_at"),
            (self.defer, "deferred_at"),
        ):
            if details is not None:
                return getattr(details, attr)
        return self.assigned_at


@dataclass
class ReceivePlan:
    """
    A scheduled window during which a set of containers is received.

    `planned_start` / `planned_end` describe the estimate; `execution_start`
    and `execution_end` are stamped by the lifecycle transitions.  The
    planned duration is kept even after execution starts late: an
    IN_PROGRESS plan occupies `[execution_start, execution_start + duration]`.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    code: str = ""
    status: PlanStatus = PlanStatus.SCHEDULED

    planned_start: Optional[datetime] = None
    planned_end: Optional[datetime] = None
    execution_start: Optional[datetime] = None
    execution_end: Optional[datetime] = None
    pending_date: Optional[datetime] = None

    # Readiness flags gating SCHEDULED → IN_PROGRESS
    equipment_booked: bool = False
    port_notified: bool = False

    containers: List[PlanContainer] = field(default_factory=list)

    created_at: datetime = field(default_factory=_utc)
    updated_at: datetime = field(default_factory=_utc)

    def find_container(self, plan_container_id: uuid.UUID) -> Optional[PlanContainer]:
        return next((c for c in self.containers if c.id == plan_container_id), None)


# ---------------------------------------------------------------------------
# Validation value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TimeWindow:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class ValidationIssue:
    code: IssueCode
    category: IssueCategory
    message: str
    plan_code: Optional[str] = None     # conflicting plan, where applicable


@dataclass
class ValidationVerdict:
    """Blocking errors and advisory warnings for a proposed plan; never persisted."""
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def error_messages(self) -> List[str]:
        return [e.message for e in self.errors]

    @property
    def warning_messages(self) -> List[str]:
        return [w.message for w in self.warnings]


@dataclass(frozen=True)
class ExecutionSummary:
    """Completion counters derived from a plan's containers."""
    total: int = 0
    waiting: int = 0
    received: int = 0
    rejected: int = 0
    deferred: int = 0
    problem: int = 0
    adjusted: int = 0
