# tests/unit/test_grouping.py
import pytest

from stockrecon.services.grouping import (
    GroupingCoordinator,
    GroupState,
    GroupTransitionError,
    OperationStatus,
)
from stockrecon.services.line_registry import LineRegistry
from stockrecon.services.line_types import CommittedLine
from tests.helpers.fakes import identity, planned_line


def _setup():
    reg = LineRegistry()
    coord = GroupingCoordinator(reg)
    coord.add_group("G1", "便1")
    coord.add_group("G2", "便2")
    reg.upsert_planned([planned_line(1, 5, group_id="G1"), planned_line(2, 3, group_id="G1")])
    reg.upsert_planned([planned_line(3, 4, group_id="G2")])
    return reg, coord


def test_planned_fetch_does_not_start_group_but_edit_does():
    reg, coord = _setup()
    assert coord.get("G1").state is GroupState.PENDING
    assert coord.status is OperationStatus.PENDING

    reg.set_qty(planned_line(1, 5, group_id="G1").line_id, 2)
    assert coord.get("G1").state is GroupState.IN_PROGRESS
    assert coord.get("G2").state is GroupState.PENDING
    assert coord.status is OperationStatus.IN_PROGRESS


def test_unplanned_scan_starts_group():
    reg, coord = _setup()
    reg.add_unplanned(identity(9), 1, group_id="G2")
    assert coord.get("G2").state is GroupState.IN_PROGRESS


def test_complete_requires_full_coverage():
    reg, coord = _setup()
    l1 = planned_line(1, 5, group_id="G1").line_id
    l2 = planned_line(2, 3, group_id="G1").line_id

    assert coord.complete("G1", covered_line_ids=[l1]) is False
    assert coord.get("G1").state is GroupState.IN_PROGRESS

    assert coord.complete("G1", covered_line_ids=[l1, l2], deltas={l1: 5}) is True
    grp = coord.get("G1")
    assert grp.is_completed
    assert {c.line_id: c.delta for c in grp.committed_lines}[l1] == 5
    assert reg.is_group_read_only("G1")

    with pytest.raises(GroupTransitionError):
        coord.complete("G1", covered_line_ids=[l1, l2])


def test_operation_completed_only_when_all_groups_done():
    reg, coord = _setup()
    coord.complete("G1", covered_line_ids=[ln.line_id for ln in reg.lines_for_group("G1")])
    assert coord.status is OperationStatus.IN_PROGRESS
    coord.complete("G2", covered_line_ids=[ln.line_id for ln in reg.lines_for_group("G2")])
    assert coord.status is OperationStatus.COMPLETED


def test_commit_candidates_reports_empty_groups():
    reg = LineRegistry()
    coord = GroupingCoordinator(reg)
    coord.add_group("G1")
    coord.add_group("EMPTY")
    reg.upsert_planned([planned_line(1, 2, group_id="G1")])

    ready, empty = coord.commit_candidates()
    assert ready == ["G1"]
    assert empty == ["EMPTY"]
    assert coord.complete("EMPTY", covered_line_ids=[]) is False


def test_restored_committed_lines_freeze_group():
    reg = LineRegistry()
    coord = GroupingCoordinator(reg)
    frozen = CommittedLine.freeze(planned_line(1, 5, group_id="G1", actual=5), 5)
    coord.add_group("G1", committed_lines=[frozen])
    reg.upsert_planned([planned_line(1, 5, group_id="G1")])

    assert coord.get("G1").is_completed
    assert reg.get(frozen.line_id).read_only
    ready, empty = coord.commit_candidates()
    assert ready == [] and empty == []


def test_enter_moves_pending_to_in_progress():
    _, coord = _setup()
    assert coord.enter("G2").state is GroupState.IN_PROGRESS
    with pytest.raises(KeyError):
        coord.enter("nope")
