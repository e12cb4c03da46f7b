from datetime import datetime, timezone

from model import (
    ContainerRecord,
    IssueCategory,
    IssueCode,
    PlanStatus,
    ReceivePlan,
    TimeWindow,
)
from service import (
    PlanValidationService,
    generate_deadline_warnings,
    validate_plan_times,
)


def _at(hour, minute=0, second=0, day=11):
    return datetime(2025, 3, day, hour, minute, second, tzinfo=timezone.utc)


NOW = _at(7, day=10)


def test_end_must_be_after_start():
    issue = validate_plan_times(_at(12), _at(12), NOW)
    assert issue.code == IssueCode.END_BEFORE_START
    assert issue.message == "End time must be after start time"


def test_start_is_compared_at_minute_precision():
    now = _at(10, 0, 30)
    assert validate_plan_times(_at(10, 0, 0), _at(11), now) is None

    issue = validate_plan_times(_at(9, 59, 0), _at(11), now)
    assert issue.code == IssueCode.START_IN_PAST
    assert issue.message == "Planned start time cannot be in the past"


def test_deadline_warnings_name_container_and_date():
    containers = [
        ContainerRecord(container_no="MSCU1234567", extract_to=_at(0, day=11)),
        ContainerRecord(container_no="TGHU7654321", yard_free_to=_at(9, day=11)),
        ContainerRecord(container_no="CAIU0000001", extract_to=_at(0, day=20)),
    ]
    warnings = generate_deadline_warnings(_at(10), containers)
    assert warnings == [
        "Container MSCU1234567: Extraction deadline (2025-03-11) exceeded by plan end time",
        "Container TGHU7654321: Free storage deadline (2025-03-11) exceeded by plan end time",
    ]


def test_plan_ending_exactly_at_deadline_is_not_warned():
    containers = [ContainerRecord(container_no="MSCU1234567", extract_to=_at(10))]
    assert generate_deadline_warnings(_at(10), containers) == []


def test_validate_plan_collects_every_blocking_error():
    existing = [ReceivePlan(code="RP-001", status=PlanStatus.SCHEDULED,
                            planned_start=_at(8, day=10), planned_end=_at(12, day=10))]
    verdict = PlanValidationService().validate_plan(
        window=TimeWindow(_at(6, day=10), _at(9, day=10)),
        candidate_container_ids=[],
        existing_plans=existing,
        now=NOW,
    )
    assert not verdict.is_valid
    assert [e.code for e in verdict.errors] == [
        IssueCode.START_IN_PAST,
        IssueCode.SCHEDULE_OVERLAP,
        IssueCode.NO_CONTAINERS,
    ]
    assert "At least one container must be selected" in verdict.error_messages


def test_deadline_findings_are_advisory_only():
    record = ContainerRecord(container_no="MSCU1234567", extract_to=_at(0))
    verdict = PlanValidationService().validate_plan(
        window=TimeWindow(_at(8), _at(12)),
        candidate_container_ids=[record.id],
        existing_plans=[],
        containers=[record],
        now=NOW,
    )
    assert verdict.is_valid
    assert [w.category for w in verdict.warnings] == [IssueCategory.ADVISORY]
    assert verdict.warnings[0].code == IssueCode.EXTRACTION_DEADLINE_EXCEEDED


def test_end_to_end_boundary_scenario():
    plan_a = ReceivePlan(code="A", status=PlanStatus.SCHEDULED,
                         planned_start=_at(8), planned_end=_at(12))
    service = PlanValidationService()
    container_ids = [ContainerRecord(container_no="X").id]

    def check(start, end):
        return service.validate_plan(
            window=TimeWindow(start, end),
            candidate_container_ids=container_ids,
            existing_plans=[plan_a],
            now=NOW,
        )

    blocked = check(_at(11, 59), _at(13))
    assert not blocked.is_valid
    assert "Plan time overlaps with existing plan A" in blocked.error_messages

    touching = check(_at(12), _at(13))
    assert not touching.is_valid

    assert check(_at(12, 0, 1), _at(13)).is_valid
