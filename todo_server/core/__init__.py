"""
Todo Server Core - 与传输层无关的基础组件

- errors: 结构化错误分类
- paths: 工作目录路径解析
- section_schema: section 内容校验与清单解析
- hierarchy: 父子层级构建
- patterns: 标题模式识别
- context: 请求上下文（截止时间 / 取消）
"""

from todo_server.core.context import RequestContext
from todo_server.core.errors import (
    ConflictError,
    ErrorKind,
    InternalError,
    NotFoundError,
    OperationError,
    PermissionDeniedError,
    TodoError,
    ValidationError,
)
from todo_server.core.paths import TodoPaths, resolve_paths

__all__ = [
    "ConflictError",
    "ErrorKind",
    "InternalError",
    "NotFoundError",
    "OperationError",
    "PermissionDeniedError",
    "RequestContext",
    "TodoError",
    "TodoPaths",
    "ValidationError",
    "resolve_paths",
]
