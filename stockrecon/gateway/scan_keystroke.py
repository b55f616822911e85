# stockrecon/gateway/scan_keystroke.py
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from stockrecon.core.config import get_settings

logger = logging.getLogger("stockrecon.scan")


class KeystrokeBuffer:
    """
    扫码枪键盘输入的定稿器：每次输入变化重置计时，
    静默 finalize_ms 后若长度 >= min_length 则把整串交给 on_code 并清空。
    disabled 为真时（阻塞提示中）定稿被跳过，输入保留。
    """

    def __init__(
        self,
        on_code: Callable[[str], object],
        *,
        finalize_ms: Optional[int] = None,
        min_length: Optional[int] = None,
        disabled: Callable[[], bool] = lambda: False,
    ) -> None:
        s = get_settings()
        self.on_code = on_code
        self.finalize_ms = finalize_ms if finalize_ms is not None else s.SCAN_FINALIZE_MS
        self.min_length = min_length if min_length is not None else s.SCAN_MIN_LENGTH
        self.disabled = disabled
        self.value = ""
        self._timer: Optional[asyncio.TimerHandle] = None

    def feed(self, text: str) -> None:
        """追加输入。"""
        self.set_value(self.value + str(text or ""))

    def set_value(self, value: str) -> None:
        """输入框整体替换（扫码枪通常整串写入）。"""
        self.value = str(value or "").strip()
        self.cancel()
        self._timer = asyncio.get_running_loop().call_later(self.finalize_ms / 1000.0, self._finalize)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _finalize(self) -> None:
        self._timer = None
        if self.disabled():
            return
        code = self.value
        if not code or len(code) < self.min_length:
            return
        self.value = ""
        logger.debug("keystroke scan finalized: %s", code)
        self.on_code(code)
