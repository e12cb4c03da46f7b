"""
application.py

Application layer for the CFS Receive-Plan Scheduling & Execution Engine.

Overview
--------
The application layer sits between the presentation layer (API) and the
domain / service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry only the data the
     presentation layer needs — no raw domain objects are leaked upward.
  2. Declaring abstract Repository interfaces so that the application layer
     remains persistence-agnostic (implementations live in infrastructure.py).
  3. Declaring the UnitOfWork abstraction so that every check-then-commit
     sequence of a use case runs as one atomic transaction.
  4. Implementing Use Case handlers — one class per operation — that fetch
     the clock once, call the services, and persist the outcome.

Structure
---------
DTOs
    ValidationIssueDTO, ValidationVerdictDTO
    ContainerRecordDTO, PlanContainerDTO, ExecutionSummaryDTO
    PlanDTO, PlanSavedDTO

Repository interfaces
    AbstractPlanRepository
    AbstractContainerRecordRepository

Unit of Work
    AbstractUnitOfWork

Use Cases
    --- Container records ---
    RegisterContainerUseCase
    ListUnplannedContainersUseCase

    --- Plan scheduling ---
    ValidatePlanUseCase
    CreatePlanUseCase
    UpdatePlanUseCase
    DeletePlanUseCase
    GetPlanUseCase
    ListPlansUseCase
    ListPendingPlansUseCase

    --- Execution ---
    TransitionPlanStatusUseCase
    ApplyContainerActionUseCase
    ReconcileContainerUseCase

Design notes
------------
- Use cases receive commands and return DTOs; no domain objects cross the
  application boundary.
- Each use case takes the clock once per call and hands the same `now` to
  every rule it evaluates.
- Scheduling findings come back as a full verdict (PlanValidationError
  carries it); lifecycle refusals surface as RuleRejectedError subclasses
  with a machine-readable reason.
- All timestamps flowing out are ISO-8601 strings (UTC).
"""

from __future__ import annotations

import abc
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from model import (
    ActionPayload,
    CargoReleaseStatus,
    ContainerAction,
    ContainerRecord,
    CustomsStatus,
    ExecutionSummary,
    IssueCategory,
    PlanContainer,
    PlanStatus,
    ReceivePlan,
    ReceiveType,
    RejectionReason,
    TimeWindow,
    ValidationIssue,
    ValidationVerdict,
)
from service import (
    ContainerExecutionService,
    ContainerPriorityService,
    PlanLifecycleService,
    PlanValidationService,
    RuleViolation,
    calculate_execution_summary,
    expected_end,
)
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""


class ConcurrencyConflictError(ApplicationError):
    """Raised when a commit would break a system-wide invariant."""


class PlanValidationError(ApplicationError):
    """The proposed plan has blocking findings; the full verdict is attached."""

    def __init__(self, verdict: ValidationVerdict):
        super().__init__("; ".join(verdict.error_messages))
        self.verdict = verdict


class RuleRejectedError(ApplicationError):
    """A lifecycle rule refused the request; `reason` tells callers which one."""

    def __init__(self, reason: RejectionReason, message: str):
        super().__init__(message)
        self.reason = reason


class PlanTransitionError(RuleRejectedError):
    """Plan status change refused."""


class ContainerActionError(RuleRejectedError):
    """Receive / reject / defer / reconcile refused."""


class PlanConflictError(RuleRejectedError):
    """Plan edit, deletion or container assignment refused."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

# ---------------------------------------------------------------------------
# Validation DTOs
# ---------------------------------------------------------------------------

@dataclass
class ValidationIssueDTO:
    code: str
    category: str
    message: str
    plan_code: Optional[str]


@dataclass
class ValidationVerdictDTO:
    is_valid: bool
    errors: List[ValidationIssueDTO]
    warnings: List[ValidationIssueDTO]


# ---------------------------------------------------------------------------
# Container DTOs
# ---------------------------------------------------------------------------

@dataclass
class ContainerRecordDTO:
    id: str
    container_no: str
    extract_to: Optional[str]
    yard_free_to: Optional[str]
    is_priority: bool
    cargo_release_status: str
    customs_status: str
    at_yard: bool
    priority_score: Optional[int] = None


@dataclass
class PlanContainerDTO:
    id: str
    plan_id: str
    container_id: str
    container_no: Optional[str]
    status: str
    completed: bool
    truck_no: Optional[str]
    received_type: Optional[str]
    received_at: Optional[str]
    documents: List[str]
    photos: List[str]
    receive_notes: Optional[str]
    rejected_at: Optional[str]
    reject_notes: Optional[str]
    deferred_at: Optional[str]
    defer_notes: Optional[str]
    reconciled_at: Optional[str]
    reconcile_notes: Optional[str]
    assigned_at: str
    last_action_at: Optional[str]
    last_action_by: Optional[str]


@dataclass
class ExecutionSummaryDTO:
    total: int
    waiting: int
    received: int
    rejected: int
    deferred: int
    problem: int
    adjusted: int


# ---------------------------------------------------------------------------
# Plan DTOs
# ---------------------------------------------------------------------------

@dataclass
class PlanDTO:
    id: str
    code: str
    status: str
    planned_start: str
    planned_end: str
    execution_start: Optional[str]
    execution_end: Optional[str]
    expected_end: str
    pending_date: Optional[str]
    equipment_booked: bool
    port_notified: bool
    containers: List[PlanContainerDTO]
    summary: ExecutionSummaryDTO
    can_mark_pending: bool
    can_mark_done: bool
    created_at: str
    updated_at: str


@dataclass
class PlanSavedDTO:
    """A created/updated plan plus the advisory warnings to surface after saving."""
    plan: PlanDTO
    warnings: List[ValidationIssueDTO] = field(default_factory=list)


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def issue(i: ValidationIssue) -> ValidationIssueDTO:
        return ValidationIssueDTO(
            code=i.code.value,
            category=i.category.value,
            message=i.message,
            plan_code=i.plan_code,
        )

    @staticmethod
    def verdict(v: ValidationVerdict) -> ValidationVerdictDTO:
        return ValidationVerdictDTO(
            is_valid=v.is_valid,
            errors=[_Assembler.issue(e) for e in v.errors],
            warnings=[_Assembler.issue(w) for w in v.warnings],
        )

    @staticmethod
    def container_record(c: ContainerRecord, score: Optional[int] = None) -> ContainerRecordDTO:
        return ContainerRecordDTO(
            id=str(c.id),
            container_no=c.container_no,
            extract_to=_fmt(c.extract_to),
            yard_free_to=_fmt(c.yard_free_to),
            is_priority=c.is_priority,
            cargo_release_status=c.cargo_release_status.value,
            customs_status=c.customs_status.value,
            at_yard=c.at_yard,
            priority_score=score,
        )

    @staticmethod
    def plan_container(pc: PlanContainer, container_no: Optional[str]) -> PlanContainerDTO:
        receive, reject, defer = pc.receive, pc.reject, pc.defer
        return PlanContainerDTO(
            id=str(pc.id),
            plan_id=str(pc.plan_id),
            container_id=str(pc.container_id),
            container_no=container_no,
            status=pc.status.value,
            completed=pc.completed,
            truck_no=receive.truck_no if receive else None,
            received_type=receive.received_type.value if receive else None,
            received_at=_fmt(receive.received_at) if receive else None,
            documents=list(receive.documents) if receive else [],
            photos=list(receive.photos) if receive else [],
            receive_notes=receive.notes if receive else None,
            rejected_at=_fmt(reject.rejected_at) if reject else None,
            reject_notes=reject.notes if reject else None,
            deferred_at=_fmt(defer.deferred_at) if defer else None,
            defer_notes=defer.notes if defer else None,
            reconciled_at=_fmt(pc.reconciled_at),
            reconcile_notes=pc.reconcile_notes,
            assigned_at=_fmt(pc.assigned_at),
            last_action_at=_fmt(pc.last_action_at),
            last_action_by=pc.last_action_by,
        )

    @staticmethod
    def summary(s: ExecutionSummary) -> ExecutionSummaryDTO:
        return ExecutionSummaryDTO(
            total=s.total,
            waiting=s.waiting,
            received=s.received,
            rejected=s.rejected,
            deferred=s.deferred,
            problem=s.problem,
            adjusted=s.adjusted,
        )

    @staticmethod
    def plan(
        p: ReceivePlan,
        container_numbers: Dict[uuid.UUID, str],
        ordered_containers: Optional[List[PlanContainer]] = None,
    ) -> PlanDTO:
        containers = ordered_containers if ordered_containers is not None else p.containers
        summary = calculate_execution_summary(p.containers)
        return PlanDTO(
            id=str(p.id),
            code=p.code,
            status=p.status.value,
            planned_start=_fmt(p.planned_start),
            planned_end=_fmt(p.planned_end),
            execution_start=_fmt(p.execution_start),
            execution_end=_fmt(p.execution_end),
            expected_end=_fmt(expected_end(p)),
            pending_date=_fmt(p.pending_date),
            equipment_booked=p.equipment_booked,
            port_notified=p.port_notified,
            containers=[
                _Assembler.plan_container(c, container_numbers.get(c.container_id))
                for c in containers
            ],
            summary=_Assembler.summary(summary),
            can_mark_pending=_lifecycle_svc.can_transition(p, PlanStatus.PENDING),
            can_mark_done=_lifecycle_svc.can_transition(p, PlanStatus.DONE),
            created_at=_fmt(p.created_at),
            updated_at=_fmt(p.updated_at),
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractPlanRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, plan_id: uuid.UUID) -> Optional[ReceivePlan]: ...
    @abc.abstractmethod
    def list_all(self) -> List[ReceivePlan]: ...
    @abc.abstractmethod
    def list_by_status(self, *statuses: PlanStatus) -> List[ReceivePlan]: ...
    @abc.abstractmethod
    def save(self, plan: ReceivePlan) -> None: ...
    @abc.abstractmethod
    def delete(self, plan_id: uuid.UUID) -> None: ...
    @abc.abstractmethod
    def last_issued_number(self, prefix: str) -> int: ...
    @abc.abstractmethod
    def record_issued_number(self, prefix: str, number: int) -> None: ...


class AbstractContainerRecordRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, container_id: uuid.UUID) -> Optional[ContainerRecord]: ...
    @abc.abstractmethod
    def get_by_number(self, container_no: str) -> Optional[ContainerRecord]: ...
    @abc.abstractmethod
    def list_all(self) -> List[ContainerRecord]: ...
    @abc.abstractmethod
    def save(self, container: ContainerRecord) -> None: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.plans.save(plan)
            uow.commit()

    Implementations must serialise transactions that read the IN_PROGRESS
    set and then write a plan, so two concurrent starts cannot both succeed.
    """
    plans: AbstractPlanRepository
    containers: AbstractContainerRecordRepository

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
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_validation_svc = PlanValidationService()
_lifecycle_svc = PlanLifecycleService()
_execution_svc = ContainerExecutionService()
_priority_svc = ContainerPriorityService()


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

class _UseCase:
    """Holds the clock and settings shared by every use case."""

    def __init__(self, clock: Clock = _utcnow, settings: Optional[Settings] = None):
        self._clock = clock
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()


def _get_plan_or_raise(uow: AbstractUnitOfWork, plan_id: uuid.UUID) -> ReceivePlan:
    plan = uow.plans.get(plan_id)
    if plan is None:
        raise NotFoundError(f"Receive plan {plan_id} not found.")
    return plan


def _get_records_or_raise(
    uow: AbstractUnitOfWork, container_ids: Iterable[uuid.UUID]
) -> List[ContainerRecord]:
    records = []
    for cid in dict.fromkeys(container_ids):
        record = uow.containers.get(cid)
        if record is None:
            raise NotFoundError(f"Container {cid} not found.")
        records.append(record)
    return records


def _find_plan_container(plan: ReceivePlan, container_id: uuid.UUID) -> PlanContainer:
    """Resolve by plan-container id, falling back to the container record id."""
    pc = plan.find_container(container_id)
    if pc is None:
        pc = next((c for c in plan.containers if c.container_id == container_id), None)
    if pc is None:
        raise NotFoundError(f"Container {container_id} is not part of plan {plan.code}.")
    return pc


def _container_numbers(uow: AbstractUnitOfWork, plans: Iterable[ReceivePlan]) -> Dict[uuid.UUID, str]:
    numbers: Dict[uuid.UUID, str] = {}
    for plan in plans:
        for pc in plan.containers:
            if pc.container_id not in numbers:
                record = uow.containers.get(pc.container_id)
                if record is not None:
                    numbers[pc.container_id] = record.container_no
    return numbers


def _log_verdict(plan_code: str, verdict: ValidationVerdict) -> None:
    for issue in verdict.errors:
        if issue.category == IssueCategory.DATA_INTEGRITY:
            logger.warning("Existing plan data blocks validation of %s: %s", plan_code, issue.message)
    if verdict.errors:
        logger.info("Plan %s rejected: %s", plan_code, "; ".join(verdict.error_messages))


# ===========================================================================
# USE CASES — CONTAINER RECORDS
# ===========================================================================

@dataclass
class RegisterContainerCommand:
    container_no: str
    extract_to: Optional[datetime] = None
    yard_free_to: Optional[datetime] = None
    is_priority: bool = False
    cargo_release_status: CargoReleaseStatus = CargoReleaseStatus.NOT_REQUESTED
    customs_status: CustomsStatus = CustomsStatus.NOT_REGISTERED
    at_yard: bool = False


class RegisterContainerUseCase(_UseCase):
    """
    Record a container as the inventory collaborator would expose it.
    Stands in for the external inventory feed when running standalone.
    """

    def execute(self, cmd: RegisterContainerCommand, uow: AbstractUnitOfWork) -> ContainerRecordDTO:
        with uow:
            if uow.containers.get_by_number(cmd.container_no) is not None:
                raise ApplicationError(f"Container '{cmd.container_no}' is already registered.")
            record = ContainerRecord(
                container_no=cmd.container_no,
                extract_to=cmd.extract_to,
                yard_free_to=cmd.yard_free_to,
                is_priority=cmd.is_priority,
                cargo_release_status=cmd.cargo_release_status,
                customs_status=cmd.customs_status,
                at_yard=cmd.at_yard,
                created_at=self._clock(),
            )
            uow.containers.save(record)
            uow.commit()
            return _Assembler.container_record(record)


class ListUnplannedContainersUseCase(_UseCase):
    """Containers not held by any open plan, most urgent first."""

    def execute(self, uow: AbstractUnitOfWork) -> List[ContainerRecordDTO]:
        with uow:
            now = self._clock()
            planned = {
                pc.container_id
                for plan in uow.plans.list_all()
                if plan.status != PlanStatus.DONE
                for pc in plan.containers
            }
            free = [c for c in uow.containers.list_all() if c.id not in planned]
            today = now.date()
            return [
                _Assembler.container_record(c, _priority_svc.calculate_priority(c, today))
                for c in _priority_svc.sort_unplanned(free, now)
            ]


# ===========================================================================
# USE CASES — PLAN SCHEDULING
# ===========================================================================

@dataclass
class ValidatePlanCommand:
    planned_start: datetime
    planned_end: datetime
    container_ids: List[uuid.UUID]
    exclude_plan_id: Optional[uuid.UUID] = None


class ValidatePlanUseCase(_UseCase):
    """Dry-run of the create/edit checks; nothing is written."""

    def execute(self, cmd: ValidatePlanCommand, uow: AbstractUnitOfWork) -> ValidationVerdictDTO:
        with uow:
            now = self._clock()
            records = _get_records_or_raise(uow, cmd.container_ids)
            verdict = _validation_svc.validate_plan(
                window=TimeWindow(cmd.planned_start, cmd.planned_end),
                candidate_container_ids=cmd.container_ids,
                existing_plans=uow.plans.list_all(),
                exclude_plan_id=cmd.exclude_plan_id,
                containers=records,
                now=now,
            )
            return _Assembler.verdict(verdict)


@dataclass
class CreatePlanCommand:
    planned_start: datetime
    planned_end: datetime
    container_ids: List[uuid.UUID]
    equipment_booked: bool = False
    port_notified: bool = False


class CreatePlanUseCase(_UseCase):
    """
    Validate and persist a new SCHEDULED plan.  Blocking findings abort the
    save with the full verdict; advisory warnings are returned with the plan.
    """

    def execute(self, cmd: CreatePlanCommand, uow: AbstractUnitOfWork) -> PlanSavedDTO:
        with uow:
            now = self._clock()
            records = _get_records_or_raise(uow, cmd.container_ids)
            existing = uow.plans.list_all()
            window = TimeWindow(cmd.planned_start, cmd.planned_end)
            prefix = self.settings.plan_code_prefix
            number = _lifecycle_svc.next_plan_number(
                prefix, (p.code for p in existing), uow.plans.last_issued_number(prefix)
            )
            code = _lifecycle_svc.format_plan_code(prefix, number)

            verdict = _validation_svc.validate_plan(
                window=window,
                candidate_container_ids=cmd.container_ids,
                existing_plans=existing,
                containers=records,
                now=now,
            )
            if not verdict.is_valid:
                _log_verdict(code, verdict)
                raise PlanValidationError(verdict)

            try:
                _lifecycle_svc.ensure_containers_unplanned(cmd.container_ids, existing)
            except RuleViolation as exc:
                raise PlanConflictError(exc.reason, str(exc)) from exc

            plan = _lifecycle_svc.create_plan(
                code=code,
                window=window,
                container_ids=cmd.container_ids,
                equipment_booked=cmd.equipment_booked,
                port_notified=cmd.port_notified,
                now=now,
            )
            uow.plans.save(plan)
            uow.plans.record_issued_number(prefix, number)
            uow.commit()
            logger.info(
                "Created receive plan %s [%s, %s] with %d container(s)",
                plan.code, _fmt(plan.planned_start), _fmt(plan.planned_end), len(plan.containers),
            )
            numbers = {r.id: r.container_no for r in records}
            return PlanSavedDTO(
                plan=_Assembler.plan(plan, numbers),
                warnings=[_Assembler.issue(w) for w in verdict.warnings],
            )


@dataclass
class UpdatePlanCommand:
    plan_id: uuid.UUID
    planned_start: Optional[datetime] = None
    planned_end: Optional[datetime] = None
    container_ids: Optional[List[uuid.UUID]] = None
    equipment_booked: Optional[bool] = None
    port_notified: Optional[bool] = None


class UpdatePlanUseCase(_UseCase):
    """Edit a SCHEDULED plan; the merged window is re-validated against the others."""

    def execute(self, cmd: UpdatePlanCommand, uow: AbstractUnitOfWork) -> PlanSavedDTO:
        with uow:
            now = self._clock()
            plan = _get_plan_or_raise(uow, cmd.plan_id)
            try:
                _lifecycle_svc.ensure_editable(plan)
            except RuleViolation as exc:
                raise PlanConflictError(exc.reason, str(exc)) from exc

            window = TimeWindow(
                cmd.planned_start or plan.planned_start,
                cmd.planned_end or plan.planned_end,
            )
            container_ids = (
                cmd.container_ids
                if cmd.container_ids is not None
                else [c.container_id for c in plan.containers]
            )
            records = _get_records_or_raise(uow, container_ids)
            existing = uow.plans.list_all()

            verdict = _validation_svc.validate_plan(
                window=window,
                candidate_container_ids=container_ids,
                existing_plans=existing,
                exclude_plan_id=plan.id,
                containers=records,
                now=now,
            )
            if not verdict.is_valid:
                _log_verdict(plan.code, verdict)
                raise PlanValidationError(verdict)

            try:
                _lifecycle_svc.ensure_containers_unplanned(container_ids, existing, plan.id)
            except RuleViolation as exc:
                raise PlanConflictError(exc.reason, str(exc)) from exc

            plan = _lifecycle_svc.update_plan(
                plan,
                now=now,
                window=window,
                container_ids=cmd.container_ids,
                equipment_booked=cmd.equipment_booked,
                port_notified=cmd.port_notified,
            )
            uow.plans.save(plan)
            uow.commit()
            logger.info("Updated receive plan %s", plan.code)
            numbers = {r.id: r.container_no for r in records}
            return PlanSavedDTO(
                plan=_Assembler.plan(plan, numbers),
                warnings=[_Assembler.issue(w) for w in verdict.warnings],
            )


class DeletePlanUseCase(_UseCase):
    def execute(self, plan_id: uuid.UUID, uow: AbstractUnitOfWork) -> None:
        with uow:
            plan = _get_plan_or_raise(uow, plan_id)
            try:
                _lifecycle_svc.ensure_editable(plan)
            except RuleViolation as exc:
                raise PlanConflictError(exc.reason, str(exc)) from exc
            uow.plans.delete(plan_id)
            uow.commit()
            logger.info("Deleted receive plan %s", plan.code)


class GetPlanUseCase(_UseCase):
    """A plan with its containers in display order and derived counters."""

    def execute(self, plan_id: uuid.UUID, uow: AbstractUnitOfWork) -> PlanDTO:
        with uow:
            plan = _get_plan_or_raise(uow, plan_id)
            ordered = _execution_svc.order_for_display(plan.containers)
            return _Assembler.plan(plan, _container_numbers(uow, [plan]), ordered)


class ListPlansUseCase(_UseCase):
    def execute(
        self, uow: AbstractUnitOfWork, status: Optional[PlanStatus] = None
    ) -> List[PlanDTO]:
        with uow:
            plans = uow.plans.list_by_status(status) if status else uow.plans.list_all()
            plans = sorted(plans, key=lambda p: p.planned_start)
            numbers = _container_numbers(uow, plans)
            return [_Assembler.plan(p, numbers) for p in plans]


class ListPendingPlansUseCase(_UseCase):
    """Plans awaiting reconciliation, newest first, rejected containers on top."""

    def execute(self, uow: AbstractUnitOfWork) -> List[PlanDTO]:
        with uow:
            plans = _lifecycle_svc.sort_pending_plans(uow.plans.list_by_status(PlanStatus.PENDING))
            numbers = _container_numbers(uow, plans)
            return [
                _Assembler.plan(p, numbers, _lifecycle_svc.reorder_pending_containers(p.containers))
                for p in plans
            ]


# ===========================================================================
# USE CASES — EXECUTION
# ===========================================================================

@dataclass
class TransitionPlanStatusCommand:
    plan_id: uuid.UUID
    target_status: PlanStatus


class TransitionPlanStatusUseCase(_UseCase):
    """
    Apply one lifecycle transition.  The IN_PROGRESS set is re-read inside
    the transaction, so the singleton check and the write are atomic.
    """

    def execute(self, cmd: TransitionPlanStatusCommand, uow: AbstractUnitOfWork) -> PlanDTO:
        with uow:
            now = self._clock()
            plan = _get_plan_or_raise(uow, cmd.plan_id)
            previous = plan.status
            others = uow.plans.list_by_status(PlanStatus.IN_PROGRESS)
            try:
                plan = _lifecycle_svc.transition(
                    plan,
                    cmd.target_status,
                    other_plans=others,
                    now=now,
                )
            except RuleViolation as exc:
                logger.warning(
                    "Refused %s -> %s for plan %s: %s (%s)",
                    previous.value, cmd.target_status.value, plan.code, exc, exc.reason.value,
                )
                raise PlanTransitionError(exc.reason, str(exc)) from exc
            uow.plans.save(plan)
            uow.commit()
            logger.info("Plan %s moved %s -> %s", plan.code, previous.value, plan.status.value)
            ordered = _execution_svc.order_for_display(plan.containers)
            return _Assembler.plan(plan, _container_numbers(uow, [plan]), ordered)


@dataclass
class ApplyContainerActionCommand:
    plan_id: uuid.UUID
    container_id: uuid.UUID
    action: ContainerAction
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None
    truck_no: Optional[str] = None
    received_type: Optional[ReceiveType] = None
    documents: Optional[List[str]] = None
    photos: Optional[List[str]] = None
    acted_by: Optional[str] = None


class ApplyContainerActionUseCase(_UseCase):
    def execute(self, cmd: ApplyContainerActionCommand, uow: AbstractUnitOfWork) -> PlanContainerDTO:
        with uow:
            now = self._clock()
            plan = _get_plan_or_raise(uow, cmd.plan_id)
            pc = _find_plan_container(plan, cmd.container_id)
            payload = ActionPayload(
                timestamp=cmd.timestamp,
                notes=cmd.notes,
                truck_no=cmd.truck_no,
                received_type=cmd.received_type,
                documents=cmd.documents,
                photos=cmd.photos,
                acted_by=cmd.acted_by,
            )
            previous = pc.status
            try:
                _execution_svc.apply_action(plan, pc, cmd.action, payload, now)
            except RuleViolation as exc:
                logger.warning(
                    "Refused %s on container %s of plan %s: %s",
                    cmd.action.value, pc.id, plan.code, exc,
                )
                raise ContainerActionError(exc.reason, str(exc)) from exc
            plan.updated_at = now
            uow.plans.save(plan)
            uow.commit()
            logger.info(
                "Container %s of plan %s: %s -> %s",
                pc.id, plan.code, previous.value, pc.status.value,
            )
            record = uow.containers.get(pc.container_id)
            return _Assembler.plan_container(pc, record.container_no if record else None)


@dataclass
class ReconcileContainerCommand:
    plan_id: uuid.UUID
    container_id: uuid.UUID
    notes: Optional[str] = None
    acted_by: Optional[str] = None


class ReconcileContainerUseCase(_UseCase):
    def execute(self, cmd: ReconcileContainerCommand, uow: AbstractUnitOfWork) -> PlanContainerDTO:
        with uow:
            now = self._clock()
            plan = _get_plan_or_raise(uow, cmd.plan_id)
            pc = _find_plan_container(plan, cmd.container_id)
            try:
                _execution_svc.reconcile(plan, pc, cmd.notes, now, cmd.acted_by)
            except RuleViolation as exc:
                raise ContainerActionError(exc.reason, str(exc)) from exc
            plan.updated_at = now
            uow.plans.save(plan)
            uow.commit()
            logger.info("Reconciled %s container %s of plan %s", pc.status.value, pc.id, plan.code)
            record = uow.containers.get(pc.container_id)
            return _Assembler.plan_container(pc, record.container_no if record else None)
