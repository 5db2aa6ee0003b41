"""
路径解析 - 工作目录到 todo / template / index / archive 目录的映射

布局（每个工作目录）：
    <W>/.claude/todos/<id>.md                 活跃 todo
    <W>/.claude/archive/YYYY/MM/DD/<id>.md    已归档 todo
    <W>/.claude/templates/<name>.md           模板
    <W>/.claude/index/                        索引状态

只做语法校验，不要求目录存在（由 manager 工厂按需创建）。
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from todo_server.core.errors import ValidationError

CLAUDE_DIR = ".claude"


@dataclass(frozen=True)
class TodoPaths:
    """一个工作目录对应的全部路径"""

    root: Path
    todos: Path
    templates: Path
    index: Path
    archive: Path

    def ensure(self) -> None:
        """创建 todos / templates / index 目录"""
        for directory in (self.todos, self.templates, self.index):
            directory.mkdir(parents=True, exist_ok=True)


def resolve_paths(
    working_directory: Union[str, Path, None],
    default: Union[str, Path, None] = None,
    template_override: Optional[Path] = None,
) -> TodoPaths:
    """
    解析工作目录。

    Args:
        working_directory: 请求携带的工作目录（可为空）
        default: 为空时使用的默认工作目录
        template_override: 模板目录覆盖（仅基础 manager set 使用）

    Raises:
        ValidationError: 工作目录为空或语法不合法
    """
    raw = str(working_directory).strip() if working_directory else ""
    if not raw:
        raw = str(default).strip() if default else ""
    if not raw:
        raise ValidationError("working_directory", "working directory is empty")
    if "\x00" in raw:
        raise ValidationError("working_directory", "working directory contains a NUL byte")

    root = Path(raw).expanduser()
    if not root.is_absolute():
        root = Path.cwd() / root
    if root.exists() and not root.is_dir():
        raise ValidationError("working_directory", f"not a directory: {root}")

    base = root / CLAUDE_DIR
    return TodoPaths(
        root=root,
        todos=base / "todos",
        templates=template_override or base / "templates",
        index=base / "index",
        archive=base / "archive",
    )


__all__ = ["CLAUDE_DIR", "TodoPaths", "resolve_paths"]
