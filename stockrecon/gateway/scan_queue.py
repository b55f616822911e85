# stockrecon/gateway/scan_queue.py
from __future__ import annotations

"""
扫码入队与串行处理：

    submit(code) ──► 去重（同码 350ms 内视为同一次读取）──► FIFO
                                                     │
            worker（同一时刻只处理一个）◄──────────────┘
              1) resolver.resolve(code)      解析失败 → 阻塞提示（暂停）→ 继续下一个
              2) registry.add_unplanned(+1)  计划行 → 予定外行 → 新建

暂停标志在阻塞提示期间置位；提示结束后自动恢复处理。
"""

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

from stockrecon.core.config import get_settings
from stockrecon.core.errors import ResolutionError
from stockrecon.gateway.scan_item_resolver import CodeResolver
from stockrecon.metrics import SCANS
from stockrecon.services.line_registry import LineRegistry
from stockrecon.services.line_types import MutationResult
from stockrecon.utils.codes import normalize_scan_code

logger = logging.getLogger("stockrecon.scan")

BlockingNotice = Callable[[ResolutionError], Awaitable[Any]]


class ScanOutcome(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNRESOLVED = "unresolved"
    REJECTED = "rejected"


@dataclass
class ScanRecord:
    code: str
    source: str
    outcome: ScanOutcome
    line_id: Optional[str] = None
    message: str = ""


class ScanQueue:
    def __init__(
        self,
        resolver: CodeResolver,
        registry: LineRegistry,
        *,
        group_id: Optional[str] = None,
        on_blocking_error: Optional[BlockingNotice] = None,
        on_applied: Optional[Callable[[MutationResult], None]] = None,
        duplicate_window_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        s = get_settings()
        self.resolver = resolver
        self.registry = registry
        self.group_id = group_id
        self.on_blocking_error = on_blocking_error
        self.on_applied = on_applied
        self.duplicate_window = (duplicate_window_ms if duplicate_window_ms is not None else s.SCAN_DUPLICATE_WINDOW_MS) / 1000.0
        self._clock = clock

        self._queue: "asyncio.Queue[tuple[str, str]]" = asyncio.Queue()
        self._resume = asyncio.Event()
        self._resume.set()
        self._worker: Optional[asyncio.Task] = None
        self._last_code = ""
        self._last_at = float("-inf")
        self.history: List[ScanRecord] = []

    # ------------------------------------------------------------------

    @property
    def paused(self) -> bool:
        return not self._resume.is_set()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def pause(self) -> None:
        self._resume.clear()

    def resume(self) -> None:
        self._resume.set()

    def submit(self, code: str, *, source: str = "keystroke") -> bool:
        """入队；空码或重复读取返回 False。需要在事件循环内调用。"""
        norm = normalize_scan_code(code)
        if not norm:
            return False
        now = self._clock()
        if norm == self._last_code and (now - self._last_at) < self.duplicate_window:
            SCANS.labels(outcome=ScanOutcome.DUPLICATE.value).inc()
            self.history.append(ScanRecord(code=norm, source=source, outcome=ScanOutcome.DUPLICATE))
            logger.debug("duplicate scan dropped: %s", norm)
            return False
        # 窗口从上一次被接受的读取算起
        self._last_code = norm
        self._last_at = now
        self._queue.put_nowait((norm, source))
        self._ensure_worker()
        return True

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run(), name="scan-queue")

    async def join(self) -> None:
        """等待当前队列全部处理完（包括暂停期间的等待）。"""
        await self._queue.join()

    async def close(self) -> None:
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            code, source = await self._queue.get()
            try:
                await self._resume.wait()
                await self._process(code, source)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("scan processing failed: %s", code)
            finally:
                self._queue.task_done()

    async def _process(self, code: str, source: str) -> None:
        try:
            identity = await self.resolver.resolve(code)
        except ResolutionError as exc:
            SCANS.labels(outcome=ScanOutcome.UNRESOLVED.value).inc()
            self.history.append(ScanRecord(code=code, source=source, outcome=ScanOutcome.UNRESOLVED, message=exc.message))
            logger.info("scan unresolved: code=%s (%s)", code, exc.message)
            await self._block(exc)
            return

        res = self.registry.add_unplanned(identity, 1, group_id=self.group_id)
        if not res.ok:
            # 拒绝提示由 registry 负责（只读会话内最多一次）
            SCANS.labels(outcome=ScanOutcome.REJECTED.value).inc()
            reason = res.reason.value if res.reason else ""
            self.history.append(ScanRecord(code=code, source=source, outcome=ScanOutcome.REJECTED, message=reason))
            return

        SCANS.labels(outcome=ScanOutcome.APPLIED.value).inc()
        self.history.append(
            ScanRecord(code=code, source=source, outcome=ScanOutcome.APPLIED, line_id=res.line.line_id if res.line else None)
        )
        if self.on_applied is not None:
            self.on_applied(res)

    async def _block(self, exc: ResolutionError) -> None:
        if self.on_blocking_error is None:
            return
        self.pause()
        try:
            await self.on_blocking_error(exc)
        finally:
            self.resume()
