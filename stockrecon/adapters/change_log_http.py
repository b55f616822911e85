# stockrecon/adapters/change_log_http.py
from __future__ import annotations

import logging
from typing import Optional, Sequence

import httpx

from stockrecon.adapters.base import ChangeLogSink
from stockrecon.core.config import get_settings
from stockrecon.core.errors import RemoteError, RemoteErrorKind
from stockrecon.services.change_log import ChangeLogEntry, MemoryChangeLogSink

logger = logging.getLogger("stockrecon.change_log")


class HttpChangeLogSink:
    """
    POST /api/log-inventory-change：
    - 单条直接发对象；多条发 {"entries": [...]}
    - 非 2xx / 网络错误 → RemoteError(TRANSPORT)，由提交方转成警告
    """

    def __init__(
        self,
        *,
        url: Optional[str] = None,
        token: Optional[str] = None,
        shop: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ) -> None:
        s = get_settings()
        self.url = url or s.CHANGE_LOG_URL
        self._token = token if token is not None else s.CHANGE_LOG_TOKEN
        self._shop = shop or s.SHOP_DOMAIN
        self._client = client or httpx.AsyncClient(timeout=timeout or s.ADMIN_API_TIMEOUT)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def record(self, entries: Sequence[ChangeLogEntry]) -> int:
        if not entries:
            return 0
        payloads = [e.to_payload() for e in entries]
        body = payloads[0] if len(payloads) == 1 else {"entries": payloads}
        headers = {"Content-Type": "application/json"}
        if self._shop:
            headers["X-Shop-Domain"] = self._shop
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        try:
            resp = await self._client.post(self.url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise RemoteError(f"change log post failed: {exc}", RemoteErrorKind.TRANSPORT, operation="change_log") from exc
        if resp.status_code >= 400:
            raise RemoteError(
                f"change log HTTP {resp.status_code}: {resp.text[:500]}",
                RemoteErrorKind.TRANSPORT,
                operation="change_log",
            )
        logger.debug("change log posted: n=%d activity=%s", len(payloads), payloads[0].get("activity"))
        return len(payloads)


def make_change_log_sink(url: Optional[str] = None, **kwargs) -> ChangeLogSink:
    """配置了 CHANGE_LOG_URL → HTTP 上报；否则进程内记录。"""
    target = url if url is not None else get_settings().CHANGE_LOG_URL
    if not target:
        return MemoryChangeLogSink()
    return HttpChangeLogSink(url=target, **kwargs)
