"""
错误分类 - Todo Server 的结构化错误

六种错误类型（与传输层无关，由分发器统一映射为结果）：
- not_found: 资源不存在
- validation: 参数或内容不合法
- operation: 操作执行失败（读写文件、索引等）
- permission: 权限不足
- conflict: 资源冲突（重复的 section key、存在未完成子任务等）
- internal: 未预期的内部错误

核心组件原样抛出；分发器调用 client_message() 转成客户端可见文本。
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """错误类型"""
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    OPERATION = "operation"
    PERMISSION = "permission"
    CONFLICT = "conflict"
    INTERNAL = "internal"


class TodoError(Exception):
    """所有 Todo Server 错误的基类"""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        operation: Optional[str] = None,
        resource: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.operation = operation
        self.resource = resource

    def client_message(self) -> str:
        """返回客户端可见的错误文本"""
        return "Internal error"


class NotFoundError(TodoError):
    """资源不存在（todo / template / section / checklist item）"""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} '{resource_id}' not found", resource=resource)
        self.resource_id = resource_id

    def client_message(self) -> str:
        label = (self.resource or "resource").capitalize()
        return f"{label} not found: {self.resource_id}"


class ValidationError(TodoError):
    """参数或内容校验失败"""

    kind = ErrorKind.VALIDATION

    def __init__(self, field: str, reason: str):
        super().__init__(f"validation error for field '{field}': {reason}", field=field)
        self.reason = reason

    def client_message(self) -> str:
        return f"Invalid parameter: {self.field} ({self.reason})"


class OperationError(TodoError):
    """操作失败"""

    kind = ErrorKind.OPERATION

    def __init__(self, operation: str, reason: str, resource: Optional[str] = None):
        super().__init__(f"operation '{operation}' failed: {reason}", operation=operation, resource=resource)
        self.reason = reason

    def client_message(self) -> str:
        return f"{self.operation} failed: {self.reason}"


class PermissionDeniedError(TodoError):
    """权限不足"""

    kind = ErrorKind.PERMISSION

    def __init__(self, detail: str = ""):
        super().__init__(detail or "permission denied")
        self.detail = detail

    def client_message(self) -> str:
        if self.detail:
            return f"Permission denied: {self.detail}"
        return "Permission denied"


class ConflictError(TodoError):
    """资源冲突"""

    kind = ErrorKind.CONFLICT

    def __init__(self, resource: str, reason: str):
        super().__init__(f"conflict for {resource}: {reason}", resource=resource)
        self.reason = reason

    def client_message(self) -> str:
        return f"Resource conflict: {self.reason}"


class InternalError(TodoError):
    """内部错误"""

    kind = ErrorKind.INTERNAL


def error_kind(exc: BaseException) -> ErrorKind:
    """对任意异常分类"""
    if isinstance(exc, TodoError):
        return exc.kind
    if isinstance(exc, PermissionError):
        return ErrorKind.PERMISSION
    if isinstance(exc, FileNotFoundError):
        return ErrorKind.NOT_FOUND
    return ErrorKind.INTERNAL


def client_message(exc: BaseException) -> str:
    """把任意异常转成客户端可见文本（非 TodoError 不泄露细节）"""
    if isinstance(exc, TodoError):
        return exc.client_message()
    if isinstance(exc, PermissionError):
        return PermissionDeniedError(str(exc.filename or "")).client_message()
    return "Internal error"


__all__ = [
    "ErrorKind",
    "TodoError",
    "NotFoundError",
    "ValidationError",
    "OperationError",
    "PermissionDeniedError",
    "ConflictError",
    "InternalError",
    "error_kind",
    "client_message",
]
