# tests/services/test_reconcile_session.py
"""
对账会话端到端（内存替身）：
- 单组收货：扫码 → 警告确认 → 最终确认 → 只读 + 草稿删除 + 审计
- 两组收货：只提交一组 → 重新进入时该组只读、另一组恢复草稿
- 盘点：空组排除在外
- 提交中再次提交 / 离开画面不取消提交 / 调整失败保留草稿
"""
import asyncio

import pytest

from stockrecon.core.errors import CommitAborted, CommitInProgress, ConfirmGateClosed, RemoteError, RemoteErrorKind
from stockrecon.gateway.scan_item_resolver import CodeResolver
from stockrecon.services.audit_logger import AuditLogger
from stockrecon.services.change_log import MemoryChangeLogSink
from stockrecon.services.commit_count import CountCommitter
from stockrecon.services.commit_receive import ReceiveCommitter
from stockrecon.services.committer_types import Workflow
from stockrecon.services.draft_store import DraftStore
from stockrecon.services.group_records import GroupRecordStore
from stockrecon.services.grouping import GroupState, OperationStatus
from stockrecon.services.line_types import ReconciliationLine
from stockrecon.services.reconcile_session import OperationContext, ReconciliationSession
from tests.helpers.fakes import FakePlannedSource, FakeRemoteInventory, identity, planned_line

pytestmark = pytest.mark.grp_commit

TRANSFER = "gid://shopify/InventoryTransfer/100"
DEST = "gid://shopify/Location/1"
ORIGIN = "gid://shopify/Location/2"


def _session(kv, remote, lookup, groups, *, workflow=Workflow.RECEIVE, operation_ref=TRANSFER):
    ctx = OperationContext(
        workflow=workflow,
        operation_ref=operation_ref,
        location_id=DEST,
        location_name="店铺A",
        origin_location_id=ORIGIN,
        origin_location_name="仓库B",
    )
    committer_cls = ReceiveCommitter if workflow is Workflow.RECEIVE else CountCommitter
    s = ReconciliationSession(
        ctx,
        planned_source=FakePlannedSource(groups),
        committer=committer_cls(remote, change_log=MemoryChangeLogSink(), chunk_size=50),
        resolver=CodeResolver(lookup),
        drafts=DraftStore(kv, debounce_ms=5),
        group_records=GroupRecordStore(kv),
        audit=AuditLogger(kv, max_entries=50),
    )
    # 测试里连续扫同一个码
    s.queue.duplicate_window = 0.0
    return s


async def _scan_all(s, codes):
    for c in codes:
        s.scan(c)
    await s.queue.join()


@pytest.mark.asyncio
async def test_single_group_receive_end_to_end(kv, remote, lookup):
    s = _session(kv, remote, lookup, {"S1": [planned_line(1, 5), planned_line(2, 3)]})
    await s.load()
    assert s.status is OperationStatus.PENDING
    assert s.target_group == "S1"

    await _scan_all(s, [identity(1).barcode] * 5 + [identity(2).barcode] * 2 + [identity(7).barcode])

    d = s.diff()
    assert d.short_qty_total == 1 and d.unplanned_qty_total == 1 and d.over_qty_total == 0
    assert s.can_confirm and not s.warning_ready

    with pytest.raises(ConfirmGateClosed):
        await s.commit()

    s.acknowledge_warnings()
    result = await s.commit(finalize=True)

    line1 = planned_line(1, 5).line_id
    line2 = planned_line(2, 3).line_id
    assert result.committed[line1] == 5 and result.committed[line2] == 2
    assert s.status is OperationStatus.COMPLETED
    assert s.read_only
    assert s.registry.get(line1).floor == 5

    # 拒收退回出库元；予定外入库 +1 / 出库元 -1
    assert remote.qty(identity(2).item_id, ORIGIN) == 1
    assert remote.qty(identity(7).item_id, DEST) == 1
    assert remote.qty(identity(7).item_id, ORIGIN) == -1

    # 全部完成：草稿删除、组记录落地、审计一条
    assert await kv.get(s.draft_key) is None
    record = await kv.get(s.groups_key)
    assert record["status"] == "completed"
    assert len(record["groupItems"]["S1"]) == 3
    (entry,) = await s.audit.read()
    assert entry.operation_ref == "S1"
    assert [x["inventoryItemId"] for x in entry.extras] == [identity(7).item_id]

    # 只读后扫码被拒绝
    await _scan_all(s, [identity(1).barcode])
    assert s.registry.get(line1).actual_qty == 5
    await s.close()


@pytest.mark.asyncio
async def test_two_groups_partial_then_reload(kv, remote, lookup):
    groups = {
        "S1": [planned_line(1, 2, group_id="S1")],
        "S2": [planned_line(2, 3, group_id="S2")],
    }
    s = _session(kv, remote, lookup, groups)
    await s.load()
    assert s.target_group is None

    s1_line = planned_line(1, 2, group_id="S1").line_id
    s2_line = planned_line(2, 3, group_id="S2").line_id
    s.registry.set_qty(s1_line, 2)
    s.registry.set_qty(s2_line, 2)
    s.acknowledge_warnings()

    await s.commit(finalize=True, group_ids=["S1"])

    assert s.coordinator.get("S1").state is GroupState.COMPLETED
    assert s.coordinator.get("S2").state is GroupState.IN_PROGRESS
    assert s.status is OperationStatus.IN_PROGRESS
    assert s.target_group == "S2"
    assert await kv.get(s.draft_key) is not None
    await s.close()

    # 重新进入：S1 只读回显，S2 从草稿恢复
    again = _session(kv, remote, lookup, groups)
    await again.load()
    assert again.coordinator.get("S1").is_completed
    assert again.registry.get(s1_line).read_only
    assert again.registry.get(s2_line).actual_qty == 2
    assert not again.registry.get(s2_line).read_only
    assert again.target_group == "S2"
    await again.close()


@pytest.mark.asyncio
async def test_unassigned_unplanned_lines_block_multi_group_commit(kv, remote, lookup):
    groups = {
        "S1": [planned_line(1, 1, group_id="S1")],
        "S2": [planned_line(2, 1, group_id="S2")],
    }
    s = _session(kv, remote, lookup, groups)
    await s.load()
    await _scan_all(s, [identity(8).barcode])
    s.acknowledge_warnings()

    with pytest.raises(ConfirmGateClosed) as ei:
        await s.commit()
    assert "assigned" in ei.value.message
    assert not s.submitting
    await s.close()


@pytest.mark.asyncio
async def test_count_excludes_empty_group(kv, remote, lookup):
    count_line = ReconciliationLine(
        line_id=identity(1).item_id,
        item_id=identity(1).item_id,
        sku=identity(1).sku,
        title=identity(1).title,
        planned_qty=10,
        group_id="G1",
    )
    remote.stock(identity(1).item_id, DEST, 10)
    s = _session(kv, remote, lookup, {"G1": [count_line], "EMPTY": []}, workflow=Workflow.COUNT, operation_ref="count-1")
    await s.load()

    s.registry.set_qty(count_line.line_id, 8)
    s.acknowledge_warnings()
    result = await s.commit()

    assert result.deltas == {count_line.line_id: -2}
    assert remote.qty(identity(1).item_id, DEST) == 8
    assert s.empty_groups == ["EMPTY"]
    assert s.coordinator.get("G1").is_completed
    assert s.coordinator.get("EMPTY").state is GroupState.PENDING
    assert s.status is OperationStatus.IN_PROGRESS
    await s.close()


class _SlowRemote(FakeRemoteInventory):
    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def receive_items(self, shipment_id, items):
        await self.release.wait()
        return await super().receive_items(shipment_id, items)


@pytest.mark.asyncio
async def test_commit_lock_and_shield(kv, lookup):
    remote = _SlowRemote()
    # 计划量已满足：没有挂起的自动保存
    s = _session(kv, remote, lookup, {"S1": [planned_line(1, 1, actual=1)]})
    await s.load()

    first = asyncio.create_task(s.commit())
    for _ in range(20):
        await asyncio.sleep(0)
        if s.submitting:
            break
    assert s.submitting
    assert not s.can_confirm
    with pytest.raises(CommitInProgress):
        await s.commit()

    # 调用方离开（取消等待）不影响提交本身
    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first
    await s.close()

    remote.release.set()
    for _ in range(100):
        await asyncio.sleep(0.01)
        if not s.submitting:
            break
    assert not s.submitting
    assert len(remote.receive_calls) == 1
    assert s.status is OperationStatus.COMPLETED


@pytest.mark.asyncio
async def test_adjustment_failure_keeps_draft_and_floors(kv, remote, lookup):
    s = _session(kv, remote, lookup, {"S1": [planned_line(1, 2)]})
    await s.load()
    await _scan_all(s, [identity(1).barcode] * 2 + [identity(9).barcode])
    s.acknowledge_warnings()
    remote.adjust_error = RemoteError("internal error", RemoteErrorKind.TRANSPORT, operation="inventoryAdjustQuantities")

    with pytest.raises(CommitAborted):
        await s.commit()

    assert not s.submitting
    assert s.registry.get(planned_line(1, 2).line_id).floor == 2
    assert s.status is OperationStatus.IN_PROGRESS
    draft = await kv.get(s.draft_key)
    assert draft is not None
    assert any(ln["isUnplanned"] for ln in draft["lines"])
    await s.close()


@pytest.mark.asyncio
async def test_close_flushes_or_drops_pending_autosave(kv, remote, lookup):
    s = _session(kv, remote, lookup, {"S1": [planned_line(1, 5)]})
    await s.load()
    s.set_note("外箱破损", reason_code="damaged")
    await s.close()
    saved = await kv.get(s.draft_key)
    assert saved["note"] == "外箱破损" and saved["reasonCode"] == "damaged"

    t = _session(kv, remote, lookup, {"S1": [planned_line(1, 5)]})
    await t.load()
    assert t.note == "外箱破损"
    t.set_note("改过")
    await t.close(save_pending=False)
    assert (await kv.get(t.draft_key))["note"] == "外箱破损"


@pytest.mark.asyncio
async def test_scan_during_final_commit_keeps_group_open(kv, lookup):
    """提交期间又扫了一次：远端只收到提交时的数量，该组不能完成，多出来的数量留在草稿里。"""
    remote = _SlowRemote()
    s = _session(kv, remote, lookup, {"S1": [planned_line(1, 5)]})
    await s.load()
    line_id = planned_line(1, 5).line_id
    await _scan_all(s, [identity(1).barcode] * 3)
    s.acknowledge_warnings()

    task = asyncio.create_task(s.commit(finalize=True))
    for _ in range(20):
        await asyncio.sleep(0)
        if s.submitting:
            break
    assert s.submitting

    await _scan_all(s, [identity(1).barcode])
    remote.release.set()
    await task

    (_, items) = remote.receive_calls[0]
    assert sum(it.quantity for it in items if it.remote_line_id == line_id and it.reason.value == "ACCEPTED") == 3

    line = s.registry.get(line_id)
    assert line.floor == 3 and line.actual_qty == 4
    assert not line.read_only
    assert s.coordinator.get("S1").state is GroupState.IN_PROGRESS
    assert s.status is OperationStatus.IN_PROGRESS

    draft = await kv.get(s.draft_key)
    assert draft is not None
    assert [ln["actualQty"] for ln in draft["lines"] if ln["lineId"] == line_id] == [4]
    await s.close()
