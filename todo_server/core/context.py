"""
请求上下文 - 工作目录提示 + 截止时间 + 取消标记

每次工具调用都会创建一个 RequestContext，传递给 manager 工厂与各个服务。
长循环（列表、搜索、统计）在处理每个 todo 之间调用 check()。
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from todo_server.core.errors import OperationError

DEFAULT_REQUEST_TIMEOUT = 30.0


@dataclass
class RequestContext:
    """单次请求的上下文"""

    working_directory: str = ""
    deadline: Optional[float] = None  # time.monotonic() 时间点；None 表示不限时
    operation: str = "request"
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False)

    @classmethod
    def with_timeout(
        cls,
        working_directory: str = "",
        timeout: Optional[float] = DEFAULT_REQUEST_TIMEOUT,
        operation: str = "request",
    ) -> "RequestContext":
        deadline = time.monotonic() + timeout if timeout else None
        return cls(working_directory=working_directory or "", deadline=deadline, operation=operation)

    def remaining(self) -> Optional[float]:
        """距离截止时间的秒数（不小于 0）；不限时返回 None"""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self) -> None:
        """
        已取消或超时则抛出 OperationError("cancelled")

        Raises:
            OperationError: 请求已取消
        """
        if self.cancelled:
            raise OperationError(self.operation, "cancelled")


def check_context(context: Optional[RequestContext]) -> None:
    """context 为 None 时不做任何事"""
    if context is not None:
        context.check()


__all__ = ["DEFAULT_REQUEST_TIMEOUT", "RequestContext", "check_context"]
