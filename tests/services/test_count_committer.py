# tests/services/test_count_committer.py
import pytest

from stockrecon.core.errors import CommitAborted, RemoteError, RemoteErrorKind
from stockrecon.services.change_log import Activity, MemoryChangeLogSink
from stockrecon.services.commit_count import CountCommitter
from stockrecon.services.committer_types import CommitRequest, Workflow
from stockrecon.services.inventory_committer import InventoryCommitter
from stockrecon.services.line_types import ReconciliationLine
from tests.helpers.fakes import identity

pytestmark = pytest.mark.grp_commit

LOC = "gid://shopify/Location/1"
COUNT = "count-2026-001"


def _line(n: int, planned: int, actual: int, group_id: str = "G1", unplanned: bool = False) -> ReconciliationLine:
    ident = identity(n)
    return ReconciliationLine(
        line_id=f"extra:{group_id}:{ident.item_id}" if unplanned else ident.item_id,
        item_id=ident.item_id,
        sku=ident.sku,
        title=ident.title,
        planned_qty=planned,
        actual_qty=actual,
        group_id=group_id,
        is_unplanned=unplanned,
    )


def _req(lines, group_ids=("G1",)) -> CommitRequest:
    return CommitRequest(
        workflow=Workflow.COUNT,
        operation_ref=COUNT,
        location_id=LOC,
        location_name="店铺A",
        lines=lines,
        group_ids=list(group_ids),
    )


@pytest.mark.asyncio
async def test_count_delta_against_current_and_idempotent(remote):
    """delta = 实盘 - 当前；重复提交 delta 为 0，不再调整。"""
    a = _line(1, 10, 8)
    b = _line(2, 0, 3, unplanned=True)
    remote.stock(a.item_id, LOC, 10)
    sink = MemoryChangeLogSink()
    committer = CountCommitter(remote, change_log=sink, chunk_size=50)

    res = await committer.commit(_req([a, b]))

    assert res.deltas == {a.line_id: -2, b.line_id: 3}
    assert remote.qty(a.item_id, LOC) == 8
    assert remote.qty(b.item_id, LOC) == 3
    assert set(res.covered["G1"]) == {a.line_id, b.line_id}
    assert res.group_ids == ["G1"]
    assert remote.notes == {}

    by_item = {e.item_id: e for e in sink.entries}
    assert all(e.activity is Activity.INVENTORY_COUNT for e in sink.entries)
    assert by_item[a.item_id].quantity_after == 8
    assert by_item[b.item_id].delta == 3

    res2 = await committer.commit(_req([a, b]))
    assert res2.deltas == {a.line_id: 0, b.line_id: 0}
    assert len(remote.adjust_calls) == 1


@pytest.mark.asyncio
async def test_count_groups_are_committed_in_order(remote):
    a = _line(1, 1, 1, group_id="G1")
    b = _line(2, 1, 2, group_id="G2")
    res = await CountCommitter(remote, chunk_size=50).commit(_req([a, b], group_ids=("G2", "G1")))
    assert res.group_ids == ["G2", "G1"]


@pytest.mark.asyncio
async def test_count_activation_failure_keeps_line_uncovered(remote):
    a = _line(1, 0, 4)
    remote.activation_failures = {a.item_id}

    res = await CountCommitter(remote, chunk_size=50).commit(_req([a]))

    assert a.line_id not in res.covered.get("G1", [])
    assert res.warnings


@pytest.mark.asyncio
async def test_count_adjust_failure_aborts(remote):
    a = _line(1, 0, 4)
    remote.adjust_error = RemoteError("boom", RemoteErrorKind.OTHER, operation="inventoryAdjustQuantities")

    with pytest.raises(CommitAborted) as ei:
        await CountCommitter(remote, chunk_size=50).commit(_req([a]))
    assert ei.value.partial.group_ids == []


def test_committer_without_commit_cannot_be_built(remote):
    class _NoCommit(InventoryCommitter):
        workflow = Workflow.COUNT

    with pytest.raises(TypeError):
        _NoCommit(remote)
    assert isinstance(CountCommitter(remote), InventoryCommitter)
