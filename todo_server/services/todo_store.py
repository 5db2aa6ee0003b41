"""
Todo Store - 单个工作目录的 todo 文件存储

职责：
1. 创建 / 读取 / 列出 todo（<W>/.claude/todos/<id>.md）
2. 元数据与 section 更新（append / prepend / replace / toggle）
3. 归档到 <W>/.claude/archive/YYYY/MM/DD/<id>.md（软删除）
4. 清理：归档过期已完成 todo、查找重复标题

所有写入均为原子替换（临时文件 + os.replace），不会留下半截文件。
同一个 store 内的写操作由一把可重入锁串行化。
"""

import contextlib
import logging
import os
import tempfile
import threading
from datetime import timedelta
from pathlib import Path, PurePosixPath
from typing import Any, Iterable, Mapping, Optional

from todo_server.core.context import RequestContext, check_context
from todo_server.core.errors import (
    ConflictError,
    NotFoundError,
    OperationError,
    PermissionDeniedError,
    TodoError,
    ValidationError,
)
from todo_server.core.paths import TodoPaths
from todo_server.core.section_schema import default_sections, toggle_checklist_item
from todo_server.core.timeutil import daily_path, format_timestamp, now, parse_timestamp
from todo_server.models.todo import SectionSchema, Todo, TodoStatus
from todo_server.services.todo_file import (
    TodoBody,
    TodoFormatError,
    body_from_template,
    generate_base_id,
    parse_todo,
    render_todo,
    section_contents,
)

logger = logging.getLogger(__name__)

# update 接受的元数据键
METADATA_KEYS = ("status", "priority", "type", "parent_id", "started", "completed", "current_test")

SECTION_OPERATIONS = ("append", "prepend", "replace", "toggle")


def _atomic_write(path: Path, text: str) -> None:
    """写临时文件后 rename 到目标路径"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, path)
    except Exception:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise


def _check_id(todo_id: str) -> str:
    todo_id = (todo_id or "").strip()
    if not todo_id:
        raise ValidationError("id", "todo id is required")
    if "/" in todo_id or "\\" in todo_id or "\x00" in todo_id or todo_id.startswith("."):
        raise ValidationError("id", f"invalid todo id: {todo_id}")
    return todo_id


def _bucket_path(bucket: str) -> Path:
    """归档桶（如 2025-Q1）转为 archive 下的相对路径"""
    parts = PurePosixPath(bucket.strip().replace("\\", "/")).parts
    if not parts or parts[0] == "/" or any(part in ("..", ".") for part in parts):
        raise ValidationError("quarter", f"invalid archive bucket: {bucket}")
    return Path(*parts)


class TodoStore:
    """
    Todo 文件存储

    一个工作目录一个实例，由 manager 工厂创建并缓存。
    """

    def __init__(self, paths: TodoPaths):
        self.paths = paths
        self._lock = threading.RLock()

    # === 路径 ===

    def get_base_path(self) -> Path:
        """活跃 todo 目录"""
        return self.paths.todos

    def todo_path(self, todo_id: str) -> Path:
        return self.paths.todos / f"{_check_id(todo_id)}.md"

    def relative_path(self, path: Path) -> str:
        """相对工作目录的路径（用于回执）"""
        try:
            return path.relative_to(self.paths.root).as_posix()
        except ValueError:
            return str(path)

    def exists(self, todo_id: str) -> bool:
        return self.todo_path(todo_id).exists()

    # === 读写原语 ===

    def _load(self, path: Path, todo_id: str) -> tuple[Todo, str]:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFoundError("todo", todo_id) from None
        except PermissionError as e:
            raise PermissionDeniedError(str(path)) from e
        except OSError as e:
            raise OperationError("read", str(e), resource="todo") from e

        try:
            return parse_todo(text, fallback_id=todo_id)
        except TodoFormatError as e:
            raise OperationError("read", f"invalid todo file '{todo_id}': {e}", resource="todo") from e

    def _write(self, path: Path, text: str, operation: str) -> None:
        try:
            _atomic_write(path, text)
        except PermissionError as e:
            raise PermissionDeniedError(str(path)) from e
        except OSError as e:
            raise OperationError(operation, str(e), resource="todo") from e

    def _allocate_id(self, task: str) -> str:
        """生成唯一 id；冲突时追加 -2、-3 ..."""
        base = generate_base_id(task)
        candidate = base
        counter = 1
        while (self.paths.todos / f"{candidate}.md").exists():
            counter += 1
            candidate = f"{base}-{counter}"
        return candidate

    # === 创建 ===

    def create(
        self,
        task: str,
        priority: str = "high",
        todo_type: str = "feature",
        parent_id: str = "",
        template_body: Optional[str] = None,
    ) -> Todo:
        """
        创建 todo 并写入文件

        Args:
            task: 标题
            priority: 优先级
            todo_type: 类型
            parent_id: 父任务 id（由调用方保证存在）
            template_body: 模板渲染结果；为空时使用默认 section

        Returns:
            新建的 todo
        """
        task = task.strip()
        with self._lock:
            todo_id = self._allocate_id(task)
            if template_body:
                body, sections = body_from_template(task, template_body)
            else:
                sections = default_sections()
                body = TodoBody.new(task, sections).render()

            todo = Todo(
                id=todo_id,
                task=task,
                started=now(),
                status=TodoStatus.IN_PROGRESS.value,
                priority=priority,
                type=todo_type,
                parent_id=parent_id,
                sections=sections,
            )
            self._write(self.todo_path(todo_id), render_todo(todo, body), "create")

        logger.info(f"Created todo {todo_id} in {self.paths.todos}")
        return todo

    # === 读取 ===

    def read(self, todo_id: str) -> Todo:
        todo, _ = self._load(self.todo_path(todo_id), todo_id)
        return todo

    def read_with_content(self, todo_id: str) -> tuple[Todo, str]:
        return self._load(self.todo_path(todo_id), todo_id)

    def read_content(self, todo_id: str) -> str:
        _, body = self._load(self.todo_path(todo_id), todo_id)
        return body

    def read_sections(self, todo_id: str) -> tuple[Todo, dict[str, str]]:
        """todo + 每个 section 的内容"""
        todo, body = self.read_with_content(todo_id)
        return todo, section_contents(todo, body)

    def _iter_files(self, include_archived: bool) -> list[Path]:
        files = sorted(self.paths.todos.glob("*.md")) if self.paths.todos.is_dir() else []
        if include_archived and self.paths.archive.is_dir():
            files.extend(sorted(self.paths.archive.rglob("*.md")))
        return files

    def list_todos(
        self,
        status: str = "",
        priority: str = "",
        days: int = 0,
        include_archived: bool = False,
        context: Optional[RequestContext] = None,
    ) -> list[Todo]:
        """
        列出 todo

        Args:
            status: 状态过滤（空字符串表示不过滤）
            priority: 优先级过滤
            days: 只保留最近 N 天内开始的 todo（0 表示不过滤）
            include_archived: 同时扫描 archive 目录
            context: 请求上下文（每个文件之间检查取消）

        Returns:
            按 (started, id) 排序的 todo 列表；无法解析的文件跳过并记录警告
        """
        cutoff = now() - timedelta(days=days) if days > 0 else None
        todos = []
        for path in self._iter_files(include_archived):
            check_context(context)
            try:
                todo, _ = self._load(path, path.stem)
            except NotFoundError:
                continue  # 扫描期间被归档
            except TodoError as e:
                logger.warning(f"Skipping unreadable todo {path}: {e}")
                continue

            if status and todo.status != status:
                continue
            if priority and todo.priority != priority:
                continue
            if cutoff is not None and todo.started < cutoff:
                continue
            todos.append(todo)

        todos.sort(key=lambda todo: (todo.started, todo.id))
        return todos

    def list_children(self, parent_id: str, context: Optional[RequestContext] = None) -> list[Todo]:
        return [todo for todo in self.list_todos(context=context) if todo.parent_id == parent_id]

    # === 更新 ===

    def update(
        self,
        todo_id: str,
        section: str = "",
        operation: str = "append",
        content: str = "",
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Todo:
        """
        更新元数据和/或 section 内容

        Raises:
            NotFoundError: todo 或清单项不存在
            ValidationError: 未知 section / 操作 / 元数据键，或 toggle 用在非清单 section
        """
        with self._lock:
            path = self.todo_path(todo_id)
            todo, body = self._load(path, todo_id)
            if not metadata and not section:
                return todo

            if metadata:
                self._apply_metadata(todo, metadata)
            if section:
                body = self._apply_section(todo, body, section, operation, content)

            self._write(path, render_todo(todo, body), "update")
        return todo

    @staticmethod
    def _apply_metadata(todo: Todo, metadata: Mapping[str, Any]) -> None:
        unknown = [key for key in metadata if key not in METADATA_KEYS]
        if unknown:
            raise ValidationError(f"metadata.{unknown[0]}", "unsupported metadata key")

        if "status" in metadata:
            todo.status = str(metadata["status"])
            # 显式的 completed 在下面覆盖
            if todo.status == TodoStatus.COMPLETED.value:
                todo.completed = now()
            else:
                todo.completed = None

        for key in ("priority", "type", "parent_id", "current_test"):
            if key in metadata:
                setattr(todo, key, str(metadata[key] or ""))
        if todo.parent_id == todo.id:
            raise ValidationError("metadata.parent_id", "cannot link a todo to itself")

        for key in ("started", "completed"):
            if key not in metadata:
                continue
            try:
                value = parse_timestamp(metadata[key])
            except ValueError:
                raise ValidationError(f"metadata.{key}", f"invalid timestamp: {metadata[key]}") from None
            if key == "started":
                if value is None:
                    raise ValidationError("metadata.started", "started cannot be empty")
                todo.started = value
            elif value is not None:
                todo.completed = value
            elif not todo.is_completed:
                todo.completed = None

        # completed 状态必须带完成时间
        if todo.is_completed and todo.completed is None:
            todo.completed = now()

    @staticmethod
    def _apply_section(todo: Todo, body: str, section: str, operation: str, content: str) -> str:
        definition = todo.sections.get(section)
        if definition is None:
            raise ValidationError("section", f"section '{section}' does not exist in this todo")
        if operation not in SECTION_OPERATIONS:
            raise ValidationError("operation", f"unknown operation: {operation}")

        parsed = TodoBody.parse(body)
        block = parsed.ensure_block(definition.title, todo.sections)

        if operation == "toggle":
            if definition.schema_ != SectionSchema.CHECKLIST:
                raise ValidationError("operation", "toggle operation only supported for checklist sections")
            toggled = toggle_checklist_item("\n".join(block.lines), content)
            if toggled is None:
                raise NotFoundError("checklist item", content.strip())
            block.lines = toggled.split("\n")
        elif operation == "replace":
            block.set_content(content)
        else:
            if definition.schema_ == SectionSchema.RESULTS:
                content = f"[{format_timestamp(now())}] {content}"
            if operation == "append":
                block.append(content)
            else:
                block.prepend(content)

        return parsed.render()

    def save(self, todo: Todo) -> None:
        """
        重写 front-matter 并按 section order 重排正文块（内容保留）

        用于结构性修改：新增 / 重排 section、设置 parent_id 等。
        """
        with self._lock:
            path = self.todo_path(todo.id)
            _, body = self._load(path, todo.id)
            parsed = TodoBody.parse(body)
            parsed.set_task(todo.task)
            parsed.arrange(todo.sections)
            self._write(path, render_todo(todo, parsed.render()), "save")

    # === 归档 ===

    def archive(self, todo_id: str, bucket: str = "", cascade: bool = False) -> Path:
        """
        归档 todo

        Args:
            todo_id: todo id
            bucket: 归档桶覆盖（如 "2025-Q1"）；为空时使用 started 的 YYYY/MM/DD
            cascade: 先归档全部子任务

        Returns:
            归档文件路径

        Raises:
            NotFoundError: todo 不存在（包括已归档）
            ConflictError: 存在未完成的子任务且未指定 cascade
        """
        target_bucket = _bucket_path(bucket) if bucket else None
        with self._lock:
            return self._archive_one(todo_id, target_bucket, cascade, set())

    def _archive_one(self, todo_id: str, target_bucket: Optional[Path], cascade: bool, visited: set[str]) -> Path:
        visited.add(todo_id)
        path = self.todo_path(todo_id)
        if not path.exists():
            raise NotFoundError("todo", todo_id)

        children = self.list_children(todo_id)
        if cascade:
            # parent_id 形成环时每个 todo 只处理一次
            for child in children:
                if child.id not in visited:
                    self._archive_one(child.id, target_bucket, True, visited)
        else:
            active = [child for child in children if not child.is_completed]
            if active:
                raise ConflictError("todo", f"todo '{todo_id}' has {len(active)} active children")

        todo, body = self._load(path, todo_id)
        if not todo.is_completed:
            todo.status = TodoStatus.COMPLETED.value
        if todo.completed is None:
            todo.completed = now()

        archive_dir = self.paths.archive / (target_bucket or daily_path(todo.started))
        target = archive_dir / f"{todo_id}.md"
        self._write(target, render_todo(todo, body), "archive")

        try:
            path.unlink()
        except OSError as e:
            # 回滚，保证只剩一份
            with contextlib.suppress(OSError):
                target.unlink()
            raise OperationError("archive", f"failed to remove active file: {e}", resource="todo") from e

        logger.info(f"Archived todo {todo_id} to {target}")
        return target

    def archive_bulk(self, todo_ids: Iterable[str], cascade: bool = False) -> list[dict[str, Any]]:
        """逐个归档，每个 id 一条结果"""
        results = []
        for todo_id in todo_ids:
            try:
                target = self.archive(todo_id, cascade=cascade)
            except TodoError as e:
                results.append({"id": todo_id, "success": False, "error": e.client_message()})
            else:
                results.append({"id": todo_id, "success": True, "archive_path": self.relative_path(target)})
        return results

    def archive_old(self, days: int, context: Optional[RequestContext] = None) -> int:
        """归档 completed 时间早于 now - days 的已完成 todo，返回归档数量"""
        cutoff = now() - timedelta(days=days)
        count = 0
        for todo in self.list_todos(status=TodoStatus.COMPLETED.value, context=context):
            if todo.completed is None or todo.completed >= cutoff:
                continue
            try:
                self.archive(todo.id)
            except TodoError as e:
                logger.warning(f"Failed to archive old todo {todo.id}: {e}")
                continue
            count += 1
        return count

    def find_duplicates(self, context: Optional[RequestContext] = None) -> list[list[str]]:
        """按规范化标题（去空白、小写）分组，返回包含多个 id 的组"""
        groups: dict[str, list[str]] = {}
        for todo in self.list_todos(context=context):
            groups.setdefault(todo.task.strip().lower(), []).append(todo.id)
        duplicates = [ids for ids in groups.values() if len(ids) > 1]
        duplicates.sort(key=lambda ids: ids[0])
        return duplicates


__all__ = ["METADATA_KEYS", "SECTION_OPERATIONS", "TodoStore"]
