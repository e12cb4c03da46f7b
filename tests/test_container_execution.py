from datetime import date, datetime, timedelta, timezone

import pytest

from model import (
    ActionPayload,
    CargoReleaseStatus,
    ContainerAction,
    ContainerRecord,
    CustomsStatus,
    PlanContainer,
    PlanContainerStatus,
    PlanStatus,
    ReceivePlan,
    ReceiveType,
    RejectionReason,
)
from service import (
    ContainerExecutionService,
    ContainerPriorityService,
    RuleViolation,
    calculate_execution_summary,
    should_enable_done,
    should_enable_pending,
)

NOW = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)
TRUCK = ActionPayload(truck_no="51C-12345")


def _running_plan(*statuses) -> ReceivePlan:
    plan = ReceivePlan(code="RP-001", status=PlanStatus.IN_PROGRESS, execution_start=NOW)
    plan.containers = [
        PlanContainer(plan_id=plan.id, status=s, assigned_at=NOW) for s in statuses
    ] or [PlanContainer(plan_id=plan.id, assigned_at=NOW)]
    return plan


def test_receive_records_metadata_and_completes():
    plan = _running_plan()
    pc = plan.containers[0]
    payload = ActionPayload(truck_no="51C-12345", documents=["doc-1"], photos=["img-1"], acted_by="gate-2")
    ContainerExecutionService().apply_action(plan, pc, ContainerAction.RECEIVE, payload, NOW)

    assert pc.status == PlanContainerStatus.RECEIVED
    assert pc.completed is True
    assert pc.receive.received_at == NOW
    assert pc.receive.documents == ["doc-1"]
    assert pc.last_action_by == "gate-2"
    assert pc.reject is None and pc.defer is None


def test_normal_receive_needs_truck_number():
    plan = _running_plan()
    with pytest.raises(RuleViolation) as exc:
        ContainerExecutionService().apply_action(
            plan, plan.containers[0], ContainerAction.RECEIVE, ActionPayload(truck_no="  "), NOW
        )
    assert exc.value.reason == RejectionReason.TRUCK_NUMBER_REQUIRED
    assert plan.containers[0].status == PlanContainerStatus.WAITING


def test_problem_receive_without_truck_is_allowed():
    plan = _running_plan()
    pc = plan.containers[0]
    ContainerExecutionService().apply_action(
        plan, pc, ContainerAction.RECEIVE, ActionPayload(received_type=ReceiveType.PROBLEM), NOW
    )
    assert pc.receive.received_type == ReceiveType.PROBLEM


def test_deferred_container_can_still_be_received_or_rejected():
    svc = ContainerExecutionService()
    for action, expected in (
        (ContainerAction.RECEIVE, PlanContainerStatus.RECEIVED),
        (ContainerAction.REJECT, PlanContainerStatus.REJECTED),
    ):
        plan = _running_plan()
        pc = plan.containers[0]
        svc.apply_action(plan, pc, ContainerAction.DEFER, ActionPayload(notes="no truck"), NOW)
        assert pc.status == PlanContainerStatus.DEFERRED
        assert pc.completed is False

        svc.apply_action(plan, pc, action, TRUCK, NOW + timedelta(minutes=5))
        assert pc.status == expected
        assert pc.defer is None


@pytest.mark.parametrize(
    "first,second",
    [
        (ContainerAction.RECEIVE, ContainerAction.REJECT),
        (ContainerAction.RECEIVE, ContainerAction.DEFER),
        (ContainerAction.REJECT, ContainerAction.RECEIVE),
        (ContainerAction.REJECT, ContainerAction.DEFER),
    ],
)
def test_terminal_containers_refuse_a_different_action(first, second):
    svc = ContainerExecutionService()
    plan = _running_plan()
    pc = plan.containers[0]
    svc.apply_action(plan, pc, first, TRUCK, NOW)
    before = pc.status

    with pytest.raises(RuleViolation) as exc:
        svc.apply_action(plan, pc, second, TRUCK, NOW)
    assert exc.value.reason == RejectionReason.CONTAINER_TERMINAL
    assert pc.status == before


def test_repeating_the_terminal_action_amends_metadata():
    svc = ContainerExecutionService()
    plan = _running_plan()
    pc = plan.containers[0]
    svc.apply_action(plan, pc, ContainerAction.RECEIVE, TRUCK, NOW)
    later = NOW + timedelta(minutes=10)

    svc.apply_action(plan, pc, ContainerAction.RECEIVE, ActionPayload(notes="photo added", photos=["img-2"]), later)
    assert pc.status == PlanContainerStatus.RECEIVED
    assert pc.receive.truck_no == "51C-12345"
    assert pc.receive.photos == ["img-2"]
    assert pc.last_action_at == later



@pytest.mark.parametrize("received_type", [ReceiveType.PROBLEM, ReceiveType.ADJUSTED_DOCUMENT])
def test_amending_a_receive_keeps_its_type_and_evidence(received_type):
    svc = ContainerExecutionService()
    plan = _running_plan()
    pc = plan.containers[0]
    first = ActionPayload(received_type=received_type, documents=["doc-1"], photos=["img-1"])
    svc.apply_action(plan, pc, ContainerAction.RECEIVE, first, NOW)

    svc.apply_action(plan, pc, ContainerAction.RECEIVE, ActionPayload(notes="seal number noted"),
                     NOW + timedelta(minutes=10))
    assert pc.receive.received_type == received_type
    assert pc.receive.documents == ["doc-1"]
    assert pc.receive.photos == ["img-1"]
    assert pc.receive.notes == "seal number noted"

    summary = calculate_execution_summary(plan.containers)
    assert summary.problem + summary.adjusted == 1


def test_amend_can_change_the_receive_type():
    svc = ContainerExecutionService()
    plan = _running_plan()
    pc = plan.containers[0]
    svc.apply_action(plan, pc, ContainerAction.RECEIVE, ActionPayload(received_type=ReceiveType.PROBLEM), NOW)
    with pytest.raises(RuleViolation) as exc:
        svc.apply_action(plan, pc, ContainerAction.RECEIVE,
                         ActionPayload(received_type=ReceiveType.NORMAL, truck_no=" "), NOW)
    assert exc.value.reason == RejectionReason.TRUCK_NUMBER_REQUIRED
    assert pc.receive.received_type == ReceiveType.PROBLEM

    svc.apply_action(plan, pc, ContainerAction.RECEIVE, TRUCK, NOW)
    assert pc.receive.received_type == ReceiveType.PROBLEM

    svc.apply_action(plan, pc, ContainerAction.RECEIVE, ActionPayload(received_type=ReceiveType.NORMAL), NOW)
    assert pc.receive.received_type == ReceiveType.NORMAL
    assert pc.receive.truck_no == "51C-12345"


def test_actions_need_an_in_progress_plan():
    plan = _running_plan()
    plan.status = PlanStatus.SCHEDULED
    with pytest.raises(RuleViolation) as exc:
        ContainerExecutionService().apply_action(plan, plan.containers[0], ContainerAction.RECEIVE, TRUCK, NOW)
    assert exc.value.reason == RejectionReason.PLAN_NOT_IN_PROGRESS


def test_reconcile_only_in_pending_and_only_for_open_items():
    svc = ContainerExecutionService()
    plan = _running_plan(PlanContainerStatus.REJECTED, PlanContainerStatus.RECEIVED)
    rejected, received = plan.containers

    with pytest.raises(RuleViolation) as exc:
        svc.reconcile(plan, rejected, None, NOW)
    assert exc.value.reason == RejectionReason.PLAN_NOT_PENDING

    plan.status = PlanStatus.PENDING
    with pytest.raises(RuleViolation) as exc:
        svc.reconcile(plan, received, None, NOW)
    assert exc.value.reason == RejectionReason.NOT_RECONCILABLE

    svc.reconcile(plan, rejected, "returned", NOW)
    assert rejected.reconciled_at == NOW
    assert rejected.reconcile_notes == "returned"

    later = NOW + timedelta(hours=1)
    svc.reconcile(plan, rejected, "credit note issued", later)
    assert rejected.reconciled_at == later
    assert rejected.reconcile_notes == "returned\ncredit note issued"


def test_display_order_groups_by_status_then_latest_action():
    plan = _running_plan(
        PlanContainerStatus.WAITING,
        PlanContainerStatus.DEFERRED,
        PlanContainerStatus.RECEIVED,
        PlanContainerStatus.RECEIVED,
        PlanContainerStatus.REJECTED,
    )
    waiting, deferred, old_received, new_received, rejected = plan.containers
    old_received.last_action_at = NOW + timedelta(minutes=1)
    new_received.last_action_at = NOW + timedelta(minutes=9)

    ordered = ContainerExecutionService().order_for_display(plan.containers)
    assert ordered == [new_received, old_received, rejected, deferred, waiting]


def test_execution_summary_and_completion_hints():
    plan = _running_plan(
        PlanContainerStatus.RECEIVED,
        PlanContainerStatus.RECEIVED,
        PlanContainerStatus.DEFERRED,
    )
    svc = ContainerExecutionService()
    svc.apply_action(plan, plan.containers[0], ContainerAction.RECEIVE,
                     ActionPayload(received_type=ReceiveType.PROBLEM), NOW)
    svc.apply_action(plan, plan.containers[1], ContainerAction.RECEIVE,
                     ActionPayload(received_type=ReceiveType.ADJUSTED_DOCUMENT), NOW)

    summary = calculate_execution_summary(plan.containers)
    assert (summary.total, summary.received, summary.deferred, summary.waiting) == (3, 2, 1, 0)
    assert (summary.problem, summary.adjusted) == (1, 1)
    assert should_enable_pending(summary) is True
    assert should_enable_done(summary) is False


def test_priority_ranking_weights():
    today = date(2025, 3, 10)
    svc = ContainerPriorityService()
    ready = ContainerRecord(
        container_no="A",
        cargo_release_status=CargoReleaseStatus.APPROVED,
        customs_status=CustomsStatus.HAS_CCP,
        extract_to=datetime(2025, 3, 12, tzinfo=timezone.utc),
        at_yard=True,
    )
    # 1000 + 800 + (100 - 2) + 100
    assert svc.calculate_priority(ready, today) == 1998

    flagged = ContainerRecord(container_no="B", is_priority=True,
                              yard_free_to=datetime(2025, 3, 30, tzinfo=timezone.utc))
    # 300 + (50 - 20)
    assert svc.calculate_priority(flagged, today) == 330

    plain = ContainerRecord(container_no="C")
    ordered = svc.sort_unplanned([plain, flagged, ready], NOW)
    assert [c.container_no for c in ordered] == ["A", "B", "C"]
