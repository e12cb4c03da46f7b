from datetime import datetime, timezone

import pytest

from model import IssueCategory, IssueCode, PlanStatus, ReceivePlan, TimeWindow
from service import check_time_overlap, expected_end, times_overlap, to_instant


def _at(hour: int, minute: int = 0, second: int = 0) -> datetime:
    return datetime(2025, 3, 11, hour, minute, second, tzinfo=timezone.utc)


def _plan(code, status, start, end, execution_start=None) -> ReceivePlan:
    return ReceivePlan(
        code=code,
        status=status,
        planned_start=start,
        planned_end=end,
        execution_start=execution_start,
    )


def test_boundary_touch_counts_as_overlap():
    assert times_overlap(_at(8), _at(12), _at(12), _at(13)) is True
    assert times_overlap(_at(12), _at(13), _at(8), _at(12)) is True


def test_disjoint_intervals_with_gap_do_not_overlap():
    assert times_overlap(_at(8), _at(12), _at(12, 0, 1), _at(13)) is False
    assert times_overlap(_at(14), _at(15), _at(8), _at(12)) is False


def test_containment_overlaps():
    assert times_overlap(_at(8), _at(18), _at(10), _at(11)) is True


def test_iso_strings_are_accepted_and_normalised():
    assert times_overlap("2025-03-11T08:00:00Z", "2025-03-11T12:00:00Z", _at(12), _at(13))
    # 14:00+02:00 is 12:00 UTC
    assert times_overlap(_at(8), _at(12), "2025-03-11T14:00:00+02:00", _at(13))


def test_naive_datetime_is_treated_as_utc():
    assert to_instant(datetime(2025, 3, 11, 8, 0)) == _at(8)


def test_malformed_timestamp_raises():
    with pytest.raises(ValueError):
        times_overlap("not-a-date", _at(12), _at(8), _at(9))


def test_pending_and_done_plans_are_ignored():
    plans = [
        _plan("RP-001", PlanStatus.PENDING, _at(8), _at(12), execution_start=_at(8)),
        _plan("RP-002", PlanStatus.DONE, _at(8), _at(12), execution_start=_at(8)),
    ]
    assert check_time_overlap(TimeWindow(_at(9), _at(10)), plans) is None


def test_scheduled_plan_is_compared_on_planned_window():
    plans = [_plan("RP-001", PlanStatus.SCHEDULED, _at(8), _at(12))]
    issue = check_time_overlap(TimeWindow(_at(11, 59), _at(13)), plans)
    assert issue.code == IssueCode.SCHEDULE_OVERLAP
    assert issue.category == IssueCategory.VALIDATION
    assert issue.message == "Plan time overlaps with existing plan RP-001"
    assert issue.plan_code == "RP-001"


def test_in_progress_plan_uses_effective_window():
    running = _plan("RP-001", PlanStatus.IN_PROGRESS, _at(8), _at(12), execution_start=_at(10))
    assert expected_end(running) == _at(14)

    issue = check_time_overlap(TimeWindow(_at(12, 30), _at(13, 30)), [running])
    assert issue is not None
    assert issue.plan_code == "RP-001"

    # the original planned window is free again once the plan started late
    assert check_time_overlap(TimeWindow(_at(8), _at(9, 59)), [running]) is None


def test_in_progress_plan_without_execution_start_blocks_any_window():
    broken = _plan("RP-007", PlanStatus.IN_PROGRESS, _at(8), _at(12))
    far_away = TimeWindow(datetime(2030, 1, 1, tzinfo=timezone.utc), datetime(2030, 1, 2, tzinfo=timezone.utc))

    issue = check_time_overlap(far_away, [broken])
    assert issue.code == IssueCode.MISSING_EXECUTION_START
    assert issue.category == IssueCategory.DATA_INTEGRITY
    assert "missing executionStart" in issue.message


def test_in_progress_plan_with_non_positive_duration_is_integrity_issue():
    broken = _plan("RP-008", PlanStatus.IN_PROGRESS, _at(12), _at(12), execution_start=_at(12))
    issue = check_time_overlap(TimeWindow(_at(20), _at(21)), [broken])
    assert issue.code == IssueCode.NON_POSITIVE_DURATION
    assert issue.category == IssueCategory.DATA_INTEGRITY


def test_excluded_plan_never_reports_self_overlap():
    own = _plan("RP-001", PlanStatus.SCHEDULED, _at(8), _at(12))
    assert check_time_overlap(TimeWindow(_at(9), _at(11)), [own], plan_id_to_exclude=own.id) is None


def test_scan_stops_at_first_conflict():
    plans = [
        _plan("RP-001", PlanStatus.SCHEDULED, _at(8), _at(10)),
        _plan("RP-002", PlanStatus.SCHEDULED, _at(10, 30), _at(12)),
    ]
    issue = check_time_overlap(TimeWindow(_at(9), _at(11)), plans)
    assert issue.plan_code == "RP-001"
