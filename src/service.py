"""
service.py

Service layer for the CFS Receive-Plan Scheduling & Execution Engine.

Responsibilities
----------------
Each service class encapsulates the business rules for its concern.
Services receive and return domain model instances (from model.py).
No persistence is handled here — callers are responsible for loading and
storing models via a Unit of Work.

Services
--------
- module functions           – interval overlap, plan-time checks, overlap
                               scan, deadline warnings, execution counters
- PlanValidationService      – composes the checks into one verdict
- PlanLifecycleService       – plan creation/editing and the status machine
- ContainerExecutionService  – per-container receive / reject / defer and
                               reconciliation
- ContainerPriorityService   – ranking of containers not yet planned

Design notes
------------
- UTC datetimes are used throughout; naive values are read as UTC.
- Every rule that depends on the current instant takes `now` explicitly so
  one validation call compares against a single clock reading.
- Rule violations raise RuleViolation (a ValueError) carrying a
  RejectionReason; scheduling findings are returned as ValidationIssue
  values instead, so a caller receives all of them at once.
- Mutating methods run every check before touching the entity: a refused
  transition leaves the plan exactly as it was.
"""

from __future__ import annotations

import copy
import uuid
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from model import (
    ActionPayload,
    CargoReleaseStatus,
    ContainerAction,
    ContainerRecord,
    CustomsStatus,
    DeferDetails,
    ExecutionSummary,
    IssueCategory,
    IssueCode,
    PlanContainer,
    PlanContainerStatus,
    PlanStatus,
    ReceiveDetails,
    ReceivePlan,
    ReceiveType,
    RejectDetails,
    RejectionReason,
    TimeWindow,
    ValidationIssue,
    ValidationVerdict,
)

Instant = Union[datetime, str]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_instant(value: Instant) -> datetime:
    """
    Normalise a datetime or ISO-8601 string to an aware UTC datetime.

    Malformed strings raise ValueError; they must never compare as equal.
    """
    if isinstance(value, str):
        value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        raise ValueError(f"Expected a datetime or ISO-8601 string, got {value!r}.")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _truncate_to_minute(dt: datetime) -> datetime:
    return dt.replace(second=0, microsecond=0)


def _fmt_deadline(dt: datetime) -> str:
    return to_instant(dt).strftime("%Y-%m-%d")


class RuleViolation(ValueError):
    """A lifecycle or execution rule refused the requested change."""

    def __init__(self, reason: RejectionReason, message: str):
        super().__init__(message)
        self.reason = reason


# ---------------------------------------------------------------------------
# Time interval overlap
# ---------------------------------------------------------------------------

def times_overlap(start1: Instant, end1: Instant, start2: Instant, end2: Instant) -> bool:
    """
    Closed-interval intersection test.

    A shared boundary (end1 == start2) IS an overlap: back-to-back plans
    would need the same gate at the same instant.
    """
    s1, e1 = to_instant(start1), to_instant(end1)
    s2, e2 = to_instant(start2), to_instant(end2)
    return s1 <= e2 and e1 >= s2


def validate_plan_times(
    planned_start: Instant, planned_end: Instant, now: datetime
) -> Optional[ValidationIssue]:
    """
    Check the proposed window on its own.

    The start is compared to `now` at minute precision: a start inside the
    current minute is accepted.
    """
    start, end = to_instant(planned_start), to_instant(planned_end)
    if end <= start:
        return ValidationIssue(
            code=IssueCode.END_BEFORE_START,
            category=IssueCategory.VALIDATION,
            message="End time must be after start time",
        )
    if _truncate_to_minute(start) < _truncate_to_minute(to_instant(now)):
        return ValidationIssue(
            code=IssueCode.START_IN_PAST,
            category=IssueCategory.VALIDATION,
            message="Planned start time cannot be in the past",
        )
    return None


def _integrity_issue(code: IssueCode, plan: ReceivePlan, detail: str) -> ValidationIssue:
    return ValidationIssue(
        code=code,
        category=IssueCategory.DATA_INTEGRITY,
        message=f"Cannot validate overlap: IN_PROGRESS plan {plan.code} {detail}",
        plan_code=plan.code,
    )


def check_time_overlap(
    window: TimeWindow,
    existing_plans: Iterable[ReceivePlan],
    plan_id_to_exclude: Optional[uuid.UUID] = None,
) -> Optional[ValidationIssue]:
    """
    Scan existing plans for the first one whose occupancy intersects `window`.

    Policy
    ------
    - Only SCHEDULED and IN_PROGRESS plans occupy the gate; PENDING and DONE
      are ignored whatever their windows.
    - SCHEDULED plans are compared on their planned window.
    - IN_PROGRESS plans are compared on their effective window: the planned
      duration re-anchored at `execution_start`.  A missing execution start
      or a non-positive planned duration makes the comparison impossible and
      is reported as a data-integrity issue rather than skipped.
    - The scan stops at the first conflict.
    """
    for plan in existing_plans:
        if plan.status not in (PlanStatus.SCHEDULED, PlanStatus.IN_PROGRESS):
            continue
        if plan_id_to_exclude is not None and plan.id == plan_id_to_exclude:
            continue

        if plan.status == PlanStatus.IN_PROGRESS:
            if plan.execution_start is None:
                return _integrity_issue(
                    IssueCode.MISSING_EXECUTION_START, plan, "is missing executionStart"
                )
            duration = to_instant(plan.planned_end) - to_instant(plan.planned_start)
            if duration.total_seconds() <= 0:
                return _integrity_issue(
                    IssueCode.NON_POSITIVE_DURATION, plan, "has plannedEnd <= plannedStart"
                )
            other_start = to_instant(plan.execution_start)
            other_end = other_start + duration
        else:
            other_start, other_end = plan.planned_start, plan.planned_end

        if times_overlap(window.start, window.end, other_start, other_end):
            return ValidationIssue(
                code=IssueCode.SCHEDULE_OVERLAP,
                category=IssueCategory.VALIDATION,
                message=f"Plan time overlaps with existing plan {plan.code}",
                plan_code=plan.code,
            )
    return None


def expected_end(plan: ReceivePlan) -> datetime:
    """End of the plan's occupancy: re-anchored on execution start once running."""
    end = to_instant(plan.planned_end)
    if plan.execution_start is None:
        return end
    return to_instant(plan.execution_start) + (end - to_instant(plan.planned_start))


# ---------------------------------------------------------------------------
# Deadline warnings
# ---------------------------------------------------------------------------

def deadline_issues(
    plan_end: Instant, containers: Iterable[ContainerRecord]
) -> List[ValidationIssue]:
    """Advisory findings for every soft deadline the plan end runs past."""
    end = to_instant(plan_end)
    issues: List[ValidationIssue] = []
    for container in containers:
        if container.extract_to is not None and end > to_instant(container.extract_to):
            issues.append(
                ValidationIssue(
                    code=IssueCode.EXTRACTION_DEADLINE_EXCEEDED,
                    category=IssueCategory.ADVISORY,
                    message=(
                        f"Container {container.container_no}: Extraction deadline "
                        f"({_fmt_deadline(container.extract_to)}) exceeded by plan end time"
                    ),
                )
            )
        if container.yard_free_to is not None and end > to_instant(container.yard_free_to):
            issues.append(
                ValidationIssue(
                    code=IssueCode.FREE_STORAGE_DEADLINE_EXCEEDED,
                    category=IssueCategory.ADVISORY,
                    message=(
                        f"Container {container.container_no}: Free storage deadline "
                        f"({_fmt_deadline(container.yard_free_to)}) exceeded by plan end time"
                    ),
                )
            )
    return issues


def generate_deadline_warnings(
    plan_end: Instant, containers: Iterable[ContainerRecord]
) -> List[str]:
    return [issue.message for issue in deadline_issues(plan_end, containers)]


# ---------------------------------------------------------------------------
# Execution counters
# ---------------------------------------------------------------------------

def calculate_execution_summary(containers: Sequence[PlanContainer]) -> ExecutionSummary:
    """Recompute completion counters from the container collection alone."""
    counts = {status: 0 for status in PlanContainerStatus}
    problem = adjusted = 0
    for c in containers:
        counts[c.status] += 1
        if c.status == PlanContainerStatus.RECEIVED and c.receive is not None:
            if c.receive.received_type == ReceiveType.PROBLEM:
                problem += 1
            elif c.receive.received_type == ReceiveType.ADJUSTED_DOCUMENT:
                adjusted += 1
    return ExecutionSummary(
        total=len(containers),
        waiting=counts[PlanContainerStatus.WAITING],
        received=counts[PlanContainerStatus.RECEIVED],
        rejected=counts[PlanContainerStatus.REJECTED],
        deferred=counts[PlanContainerStatus.DEFERRED],
        problem=problem,
        adjusted=adjusted,
    )


def should_enable_done(summary: ExecutionSummary) -> bool:
    return summary.waiting == 0 and summary.rejected == 0 and summary.deferred == 0


def should_enable_pending(summary: ExecutionSummary) -> bool:
    return summary.waiting == 0 and (summary.rejected > 0 or summary.deferred > 0)


# ---------------------------------------------------------------------------
# PlanValidationService
# ---------------------------------------------------------------------------

class PlanValidationService:
    """
    Composes the scheduling checks into a single verdict for a create/edit.

    Every blocking finding is collected (the overlap scan itself still stops
    at its first conflict); deadline findings are returned as warnings.
    """

    def validate_plan(
        self,
        window: TimeWindow,
        candidate_container_ids: Sequence[uuid.UUID],
        existing_plans: Sequence[ReceivePlan],
        exclude_plan_id: Optional[uuid.UUID] = None,
        containers: Sequence[ContainerRecord] = (),
        now: Optional[datetime] = None,
    ) -> ValidationVerdict:
        now = now or _utcnow()
        verdict = ValidationVerdict()

        time_issue = validate_plan_times(window.start, window.end, now)
        if time_issue:
            verdict.errors.append(time_issue)

        overlap_issue = check_time_overlap(window, existing_plans, exclude_plan_id)
        if overlap_issue:
            verdict.errors.append(overlap_issue)

        if not candidate_container_ids:
            verdict.errors.append(
                ValidationIssue(
                    code=IssueCode.NO_CONTAINERS,
                    category=IssueCategory.VALIDATION,
                    message="At least one container must be selected",
                )
            )

        if containers:
            verdict.warnings.extend(deadline_issues(window.end, containers))
        return verdict


# ---------------------------------------------------------------------------
# PlanLifecycleService
# ---------------------------------------------------------------------------

class PlanLifecycleService:
    """
    Manages plan creation, editing and the status machine

        SCHEDULED → IN_PROGRESS → PENDING → DONE

    No transition moves backward.  A plan whose containers were all received
    closes straight from IN_PROGRESS; PENDING is only for plans left with
    rejected or deferred containers to reconcile.
    """

    _TRANSITIONS: Dict[Tuple[PlanStatus, PlanStatus], str] = {
        (PlanStatus.SCHEDULED, PlanStatus.IN_PROGRESS): "_start",
        (PlanStatus.IN_PROGRESS, PlanStatus.PENDING): "_mark_pending",
        (PlanStatus.IN_PROGRESS, PlanStatus.DONE): "_finish_directly",
        (PlanStatus.PENDING, PlanStatus.DONE): "_close",
    }

    # --- Creation / editing -------------------------------------------------

    def next_plan_number(
        self, prefix: str, existing_codes: Iterable[str], last_issued: int = 0
    ) -> int:
        """
        Next sequence number for `prefix`, never below one already issued.

        `last_issued` survives deletions, so a removed plan's code is not
        handed out again.  Codes in foreign formats are skipped.
        """
        highest = last_issued
        marker = f"{prefix}-"
        for code in existing_codes:
            if code.startswith(marker) and code[len(marker):].isdigit():
                highest = max(highest, int(code[len(marker):]))
        return highest + 1

    @staticmethod
    def format_plan_code(prefix: str, number: int) -> str:
        return f"{prefix}-{number:03d}"

    def next_plan_code(
        self, prefix: str, existing_codes: Iterable[str], last_issued: int = 0
    ) -> str:
        """Next sequential code such as RP-007."""
        return self.format_plan_code(
            prefix, self.next_plan_number(prefix, existing_codes, last_issued)
        )

    def ensure_containers_unplanned(
        self,
        container_ids: Sequence[uuid.UUID],
        existing_plans: Sequence[ReceivePlan],
        exclude_plan_id: Optional[uuid.UUID] = None,
    ) -> None:
        """A container may sit in at most one plan that is not DONE."""
        wanted: Set[uuid.UUID] = set(container_ids)
        for plan in existing_plans:
            if plan.status == PlanStatus.DONE or plan.id == exclude_plan_id:
                continue
            clash = wanted.intersection(c.container_id for c in plan.containers)
            if clash:
                raise RuleViolation(
                    RejectionReason.CONTAINER_ALREADY_PLANNED,
                    f"Container {sorted(str(c) for c in clash)[0]} is already "
                    f"assigned to plan {plan.code}.",
                )

    def create_plan(
        self,
        code: str,
        window: TimeWindow,
        container_ids: Sequence[uuid.UUID],
        equipment_booked: bool,
        port_notified: bool,
        now: datetime,
    ) -> ReceivePlan:
        """Create and return a new SCHEDULED plan (unsaved)."""
        plan = ReceivePlan(
            code=code,
            status=PlanStatus.SCHEDULED,
            planned_start=to_instant(window.start),
            planned_end=to_instant(window.end),
            equipment_booked=equipment_booked,
            port_notified=port_notified,
            created_at=now,
            updated_at=now,
        )
        plan.containers = [
            PlanContainer(plan_id=plan.id, container_id=cid, assigned_at=now)
            for cid in dict.fromkeys(container_ids)
        ]
        return plan

    def update_plan(
        self,
        plan: ReceivePlan,
        now: datetime,
        window: Optional[TimeWindow] = None,
        container_ids: Optional[Sequence[uuid.UUID]] = None,
        equipment_booked: Optional[bool] = None,
        port_notified: Optional[bool] = None,
    ) -> ReceivePlan:
        """Apply field-level edits; only a SCHEDULED plan may be edited."""
        self.ensure_editable(plan)
        if window is not None:
            plan.planned_start = to_instant(window.start)
            plan.planned_end = to_instant(window.end)
        if container_ids is not None:
            kept = {c.container_id: c for c in plan.containers}
            plan.containers = [
                kept.get(cid) or PlanContainer(plan_id=plan.id, container_id=cid, assigned_at=now)
                for cid in dict.fromkeys(container_ids)
            ]
        if equipment_booked is not None:
            plan.equipment_booked = equipment_booked
        if port_notified is not None:
            plan.port_notified = port_notified
        plan.updated_at = now
        return plan

    def ensure_editable(self, plan: ReceivePlan) -> None:
        if plan.status != PlanStatus.SCHEDULED:
            raise RuleViolation(
                RejectionReason.PLAN_NOT_EDITABLE,
                f"Plan {plan.code} is {plan.status.value}; only SCHEDULED plans "
                "can be edited or deleted.",
            )

    # --- Status machine -----------------------------------------------------

    def transition(
        self,
        plan: ReceivePlan,
        target: PlanStatus,
        other_plans: Sequence[ReceivePlan],
        now: datetime,
    ) -> ReceivePlan:
        """
        Move `plan` to `target` or raise RuleViolation without changing it.

        `other_plans` must be read inside the same transaction as the commit
        so the singleton check cannot be raced.
        """
        handler = self._TRANSITIONS.get((plan.status, target))
        if handler is None:
            raise RuleViolation(
                RejectionReason.INVALID_TRANSITION,
                f"Plan {plan.code} cannot move from {plan.status.value} to {target.value}.",
            )
        getattr(self, handler)(plan, other_plans, now)
        plan.updated_at = now
        return plan

    def can_transition(
        self,
        plan: ReceivePlan,
        target: PlanStatus,
        other_plans: Sequence[ReceivePlan] = (),
    ) -> bool:
        """Dry run of `transition` on a copy; drives the console's enabled buttons."""
        try:
            self.transition(copy.deepcopy(plan), target, other_plans, plan.updated_at)
        except RuleViolation:
            return False
        return True

    def _start(self, plan, other_plans, now) -> None:
        if not plan.containers:
            raise RuleViolation(
                RejectionReason.MISSING_CONTAINERS,
                f"Plan {plan.code} has no containers assigned.",
            )
        missing = [
            name
            for name, ok in (
                ("equipment booking", plan.equipment_booked),
                ("port notification", plan.port_notified),
            )
            if not ok
        ]
        if missing:
            raise RuleViolation(
                RejectionReason.PREREQUISITES_UNMET,
                f"Plan {plan.code} cannot start: missing {' and '.join(missing)}.",
            )
        active = next(
            (
                p for p in other_plans
                if p.status == PlanStatus.IN_PROGRESS and p.id != plan.id
            ),
            None,
        )
        if active is not None:
            raise RuleViolation(
                RejectionReason.ANOTHER_PLAN_ACTIVE,
                f"Plan {active.code} is already in progress.",
            )
        plan.status = PlanStatus.IN_PROGRESS
        plan.execution_start = now

    def _mark_pending(self, plan, other_plans, now) -> None:
        self._require_nothing_waiting(plan)
        if not should_enable_pending(calculate_execution_summary(plan.containers)):
            raise RuleViolation(
                RejectionReason.NOTHING_TO_RECONCILE,
                f"Plan {plan.code} has no rejected or deferred containers; "
                "close it as DONE instead.",
            )
        plan.status = PlanStatus.PENDING
        plan.pending_date = now

    def _finish_directly(self, plan, other_plans, now) -> None:
        self._require_nothing_waiting(plan)
        if not should_enable_done(calculate_execution_summary(plan.containers)):
            raise RuleViolation(
                RejectionReason.UNRECONCILED_CONTAINERS,
                f"Plan {plan.code} has rejected or deferred containers; "
                "move it to PENDING for reconciliation.",
            )
        plan.status = PlanStatus.DONE
        plan.execution_end = now

    def _close(self, plan, other_plans, now) -> None:
        self._require_nothing_waiting(plan)
        open_items = [
            c for c in plan.containers
            if c.status in (PlanContainerStatus.REJECTED, PlanContainerStatus.DEFERRED)
            and c.reconciled_at is None
        ]
        if open_items:
            raise RuleViolation(
                RejectionReason.UNRECONCILED_CONTAINERS,
                f"Plan {plan.code} still has {len(open_items)} unreconciled container(s).",
            )
        plan.status = PlanStatus.DONE
        plan.execution_end = now

    @staticmethod
    def _require_nothing_waiting(plan: ReceivePlan) -> None:
        waiting = sum(1 for c in plan.containers if c.status == PlanContainerStatus.WAITING)
        if waiting:
            raise RuleViolation(
                RejectionReason.CONTAINERS_WAITING,
                f"Plan {plan.code} still has {waiting} waiting container(s).",
            )

    # --- Pending monitoring -------------------------------------------------

    def sort_pending_plans(self, plans: Sequence[ReceivePlan]) -> List[ReceivePlan]:
        """Most recently parked first (pending date, else execution end)."""
        floor = datetime.min.replace(tzinfo=timezone.utc)

        def comparable(p: ReceivePlan) -> datetime:
            stamp = p.pending_date or p.execution_end
            return to_instant(stamp) if stamp else floor

        return sorted(plans, key=comparable, reverse=True)

    def reorder_pending_containers(
        self, containers: Sequence[PlanContainer]
    ) -> List[PlanContainer]:
        """Rejected entries first: they are what reconciliation is about."""
        return sorted(containers, key=lambda c: c.status != PlanContainerStatus.REJECTED)


# ---------------------------------------------------------------------------
# ContainerExecutionService
# ---------------------------------------------------------------------------

class ContainerExecutionService:
    """
    Governs each container of the IN_PROGRESS plan.

    Terminal policy: RECEIVED and REJECTED accept only a repeat of the action
    that put them there, which amends the recorded metadata.  Any other
    action on them is refused with CONTAINER_TERMINAL.
    """

    _TRANSITIONS: Dict[Tuple[PlanContainerStatus, ContainerAction], PlanContainerStatus] = {
        (PlanContainerStatus.WAITING, ContainerAction.RECEIVE): PlanContainerStatus.RECEIVED,
        (PlanContainerStatus.WAITING, ContainerAction.REJECT): PlanContainerStatus.REJECTED,
        (PlanContainerStatus.WAITING, ContainerAction.DEFER): PlanContainerStatus.DEFERRED,
        (PlanContainerStatus.DEFERRED, ContainerAction.RECEIVE): PlanContainerStatus.RECEIVED,
        (PlanContainerStatus.DEFERRED, ContainerAction.REJECT): PlanContainerStatus.REJECTED,
        (PlanContainerStatus.DEFERRED, ContainerAction.DEFER): PlanContainerStatus.DEFERRED,
        (PlanContainerStatus.RECEIVED, ContainerAction.RECEIVE): PlanContainerStatus.RECEIVED,
        (PlanContainerStatus.REJECTED, ContainerAction.REJECT): PlanContainerStatus.REJECTED,
    }

    _STATUS_DISPLAY_ORDER: Dict[PlanContainerStatus, int] = {
        PlanContainerStatus.RECEIVED: 0,
        PlanContainerStatus.REJECTED: 1,
        PlanContainerStatus.DEFERRED: 2,
        PlanContainerStatus.WAITING: 3,
    }

    def next_status(
        self, current: PlanContainerStatus, action: ContainerAction
    ) -> PlanContainerStatus:
        try:
            return self._TRANSITIONS[(current, action)]
        except KeyError:
            raise RuleViolation(
                RejectionReason.CONTAINER_TERMINAL,
                f"Cannot {action.value} a container that is {current.value}.",
            ) from None

    def apply_action(
        self,
        plan: ReceivePlan,
        container: PlanContainer,
        action: ContainerAction,
        payload: ActionPayload,
        now: datetime,
    ) -> PlanContainer:
        """
        Validate and apply one action.  Only the metadata block matching the
        resulting status is kept; the others are cleared.
        """
        if plan.status != PlanStatus.IN_PROGRESS:
            raise RuleViolation(
                RejectionReason.PLAN_NOT_IN_PROGRESS,
                f"Plan {plan.code} is {plan.status.value}; container actions need "
                "an IN_PROGRESS plan.",
            )
        new_status = self.next_status(container.status, action)
        stamp = to_instant(payload.timestamp) if payload.timestamp else now

        if action == ContainerAction.RECEIVE:
            # an amend keeps what the new payload leaves out
            previous = container.receive
            truck_no = (payload.truck_no or "").strip() or None
            received_type = payload.received_type
            documents, photos, notes = payload.documents, payload.photos, payload.notes
            if previous is not None:
                truck_no = truck_no or previous.truck_no
                received_type = received_type or previous.received_type
                documents = previous.documents if documents is None else documents
                photos = previous.photos if photos is None else photos
                notes = previous.notes if notes is None else notes
            received_type = received_type or ReceiveType.NORMAL
            if received_type == ReceiveType.NORMAL and not truck_no:
                raise RuleViolation(
                    RejectionReason.TRUCK_NUMBER_REQUIRED,
                    "A truck number is required for a NORMAL receive.",
                )
            container.receive = ReceiveDetails(
                received_at=stamp,
                received_type=received_type,
                truck_no=truck_no,
                documents=list(documents or []),
                photos=list(photos or []),
                notes=notes,
            )
            container.reject = None
            container.defer = None
            container.completed = True
        elif action == ContainerAction.REJECT:
            container.reject = RejectDetails(rejected_at=stamp, notes=payload.notes)
            container.receive = None
            container.defer = None
            container.completed = True
        else:
            container.defer = DeferDetails(deferred_at=stamp, notes=payload.notes)
            container.receive = None
            container.reject = None
            container.completed = False

        container.status = new_status
        container.reconciled_at = None
        container.reconcile_notes = None
        container.last_action_at = stamp
        container.last_action_by = payload.acted_by
        return container

    def reconcile(
        self,
        plan: ReceivePlan,
        container: PlanContainer,
        notes: Optional[str],
        now: datetime,
        acted_by: Optional[str] = None,
    ) -> PlanContainer:
        """Settle a rejected or deferred container while the plan is PENDING."""
        if plan.status != PlanStatus.PENDING:
            raise RuleViolation(
                RejectionReason.PLAN_NOT_PENDING,
                f"Plan {plan.code} is {plan.status.value}; reconciliation needs a "
                "PENDING plan.",
            )
        if container.status not in (PlanContainerStatus.REJECTED, PlanContainerStatus.DEFERRED):
            raise RuleViolation(
                RejectionReason.NOT_RECONCILABLE,
                f"Only rejected or deferred containers can be reconciled, "
                f"not {container.status.value}.",
            )
        container.reconciled_at = now
        if notes:
            container.reconcile_notes = (
                f"{container.reconcile_notes}\n{notes}" if container.reconcile_notes else notes
            )
        container.last_action_at = now
        container.last_action_by = acted_by
        return container

    def order_for_display(self, containers: Sequence[PlanContainer]) -> List[PlanContainer]:
        """RECEIVED, REJECTED, DEFERRED, WAITING; newest action first in each group."""
        waiting_rank = self._STATUS_DISPLAY_ORDER[PlanContainerStatus.WAITING]
        by_recency = sorted(
            containers, key=lambda c: to_instant(c.action_timestamp), reverse=True
        )
        return sorted(
            by_recency,
            key=lambda c: self._STATUS_DISPLAY_ORDER.get(c.status, waiting_rank),
        )


# ---------------------------------------------------------------------------
# ContainerPriorityService
# ---------------------------------------------------------------------------

class ContainerPriorityService:
    """
    Ranks containers that are not yet planned, most urgent first.

    Score components, highest weight first: cargo release status, customs
    status, extraction-deadline urgency (0-100), free-storage urgency (0-50),
    manual priority flag, and presence at the yard.
    """

    _RELEASE_POINTS = {
        CargoReleaseStatus.APPROVED: 1000,
        CargoReleaseStatus.REQUESTED: 500,
    }
    _CUSTOMS_POINTS = {
        CustomsStatus.HAS_CCP: 800,
        CustomsStatus.PENDING_APPROVAL: 400,
        CustomsStatus.REGISTERED: 200,
    }

    @staticmethod
    def days_until(deadline: Optional[datetime], today: date) -> Optional[int]:
        if deadline is None:
            return None
        return (to_instant(deadline).date() - today).days

    def calculate_priority(self, container: ContainerRecord, today: date) -> int:
        score = self._RELEASE_POINTS.get(container.cargo_release_status, 0)
        score += self._CUSTOMS_POINTS.get(container.customs_status, 0)

        days = self.days_until(container.extract_to, today)
        if days is not None:
            score += max(100 - min(days, 100), 0)
        days = self.days_until(container.yard_free_to, today)
        if days is not None:
            score += max(50 - min(days, 50), 0)

        if container.is_priority:
            score += 300
        if container.at_yard:
            score += 100
        return score

    def sort_unplanned(
        self, containers: Sequence[ContainerRecord], now: datetime
    ) -> List[ContainerRecord]:
        today = to_instant(now).date()
        return sorted(
            containers, key=lambda c: self.calculate_priority(c, today), reverse=True
        )
