import threading
import uuid
from datetime import timedelta

import pytest

from application import (
    ConcurrencyConflictError,
    CreatePlanCommand,
    CreatePlanUseCase,
    PlanTransitionError,
    TransitionPlanStatusCommand,
    TransitionPlanStatusUseCase,
)
from infrastructure import InMemoryUnitOfWork
from model import PlanStatus, ReceivePlan, RejectionReason

from conftest import NOW


def test_uncommitted_writes_are_not_visible(db):
    uow = InMemoryUnitOfWork(db)
    with pytest.raises(RuntimeError):
        with uow:
            uow.plans.save(ReceivePlan(code="RP-001"))
            raise RuntimeError("boom")
    assert db.plans == {}


def test_reads_return_copies(db):
    plan = ReceivePlan(code="RP-001")
    with InMemoryUnitOfWork(db) as uow:
        uow.plans.save(plan)
        uow.commit()

    with InMemoryUnitOfWork(db) as uow:
        loaded = uow.plans.get(plan.id)
        loaded.status = PlanStatus.DONE
        uow.rollback()
    assert db.plans[plan.id].status == PlanStatus.SCHEDULED


def test_commit_refuses_two_in_progress_plans(db):
    with InMemoryUnitOfWork(db) as uow:
        uow.plans.save(ReceivePlan(code="RP-001", status=PlanStatus.IN_PROGRESS, execution_start=NOW))
        uow.commit()

    uow = InMemoryUnitOfWork(db)
    with pytest.raises(ConcurrencyConflictError):
        with uow:
            uow.plans.save(ReceivePlan(code="RP-002", status=PlanStatus.IN_PROGRESS, execution_start=NOW))
            uow.commit()
    assert [p.code for p in db.plans.values()] == ["RP-001"]


def test_racing_starts_leave_exactly_one_plan_in_progress(uow_factory, clock, seed_containers):
    records = seed_containers(*[f"MSCU{i:07d}" for i in range(8)])
    plan_ids = []
    for i, record in enumerate(records):
        cmd = CreatePlanCommand(
            planned_start=NOW + timedelta(hours=2 * i + 1),
            planned_end=NOW + timedelta(hours=2 * i + 2),
            container_ids=[record.id],
            equipment_booked=True,
            port_notified=True,
        )
        plan_ids.append(CreatePlanUseCase(clock=clock).execute(cmd, uow_factory()).plan.id)

    barrier = threading.Barrier(len(plan_ids))
    outcomes = []
    lock = threading.Lock()

    def start(plan_id):
        barrier.wait()
        cmd = TransitionPlanStatusCommand(plan_id=plan_id, target_status=PlanStatus.IN_PROGRESS)
        try:
            TransitionPlanStatusUseCase(clock=clock).execute(cmd, uow_factory())
            result = "started"
        except PlanTransitionError as exc:
            result = exc.reason
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=start, args=(uuid.UUID(pid),)) for pid in plan_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("started") == 1
    assert outcomes.count(RejectionReason.ANOTHER_PLAN_ACTIVE) == len(plan_ids) - 1
    with uow_factory() as uow:
        assert len(uow.plans.list_by_status(PlanStatus.IN_PROGRESS)) == 1
