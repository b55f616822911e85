# stockrecon/core/errors.py
from __future__ import annotations

import enum
from typing import Any, Optional


class ReconError(Exception):
    code = "RECON_ERROR"
    status = 400

    def __init__(self, message: str, code: str | None = None, status: int | None = None):
        super().__init__(message)
        if code:
            self.code = code
        if status:
            self.status = status
        self.message = message


class ResolutionError(ReconError):
    """扫码 / 搜索解析失败或找不到商品"""

    def __init__(self, message: str, *, raw_code: str = ""):
        super().__init__(message, code="RESOLUTION_FAILED", status=404)
        self.raw_code = raw_code


class RejectReason(str, enum.Enum):
    NOT_FOUND = "NOT_FOUND"
    READ_ONLY = "READ_ONLY"
    BELOW_FLOOR = "BELOW_FLOOR"
    HAS_COMMITTED = "HAS_COMMITTED"
    INVALID_QTY = "INVALID_QTY"


class ValidationRejected(ReconError):
    def __init__(self, reason: RejectReason, message: str = ""):
        super().__init__(message or reason.value, code=reason.value, status=409)
        self.reason = reason


class RemoteErrorKind(str, enum.Enum):
    CAPABILITY_UNSUPPORTED = "CAPABILITY_UNSUPPORTED"
    QUANTITY_BOUNDS = "QUANTITY_BOUNDS"
    COMPARE_MISMATCH = "COMPARE_MISMATCH"
    USER_ERROR = "USER_ERROR"
    TRANSPORT = "TRANSPORT"
    OTHER = "OTHER"


class RemoteError(ReconError):
    """远端平台调用失败；kind 由传输层唯一一处负责归类。"""

    def __init__(self, message: str, kind: RemoteErrorKind = RemoteErrorKind.OTHER, *, operation: str = ""):
        super().__init__(message, code=f"REMOTE_{kind.value}", status=502)
        self.kind = kind
        self.operation = operation


class CommitAborted(ReconError):
    """数值调整本身失败（主/备路径都失败）：中止提交，保留草稿。"""

    def __init__(self, message: str, *, partial: Optional[Any] = None, cause: Optional[BaseException] = None):
        super().__init__(message, code="COMMIT_ABORTED", status=502)
        self.partial = partial
        self.cause = cause


class CommitInProgress(ReconError):
    def __init__(self) -> None:
        super().__init__("commit already in progress", code="COMMIT_IN_PROGRESS", status=409)


class ConfirmGateClosed(ReconError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="CONFIRM_GATE_CLOSED", status=409)
