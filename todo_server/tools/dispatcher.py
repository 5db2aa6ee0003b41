"""
Todo Dispatcher - 工具调用的统一入口

每个工具的处理流程相同：
1. 提取类型化参数（失败即返回，不产生任何副作用）
2. 从 manager 工厂取得工作目录对应的 manager set
3. 执行操作
4. 格式化结果；错误统一转换为 client_message()

索引和链接属于尽力而为的旁路：失败只记录日志，不影响操作结果。
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from todo_server.config import TodoServerConfig, get_config
from todo_server.core.context import RequestContext
from todo_server.core.errors import (
    ConflictError,
    OperationError,
    TodoError,
    ValidationError,
    client_message,
)
from todo_server.core.patterns import detect_pattern, find_similar_todos
from todo_server.core.section_schema import schema_metrics, validate_content, validate_required_sections
from todo_server.models.todo import (
    TYPES_REQUIRING_PARENT,
    SectionDefinition,
    SectionSchema,
    Todo,
    TodoStatus,
    TodoType,
)
from todo_server.services.linker import LINK_PARENT_CHILD
from todo_server.services.manager_factory import ManagerFactory, ManagerSet, get_manager_factory
from todo_server.tools import formatters
from todo_server.tools.params import (
    extract_add_section,
    extract_archive,
    extract_clean,
    extract_create,
    extract_create_multi,
    extract_link,
    extract_read,
    extract_reorder_sections,
    extract_search,
    extract_sections,
    extract_stats,
    extract_template,
    extract_update,
)

logger = logging.getLogger(__name__)

WORKING_DIRECTORY_ARG = "working_directory"
PRD_TEMPLATE_NAME = "prd"


@dataclass
class ToolResult:
    """工具调用结果：文本 + isError"""

    text: str
    is_error: bool = False


Handler = Callable[[ManagerSet, Mapping[str, Any], RequestContext], str]


class TodoDispatcher:
    """把工具名映射到处理函数"""

    def __init__(
        self,
        factory: Optional[ManagerFactory] = None,
        config: Optional[TodoServerConfig] = None,
    ):
        self.config = config or get_config()
        self._factory = factory
        self._handlers: dict[str, Handler] = {
            "todo_create": self._create,
            "todo_create_multi": self._create_multi,
            "todo_read": self._read,
            "todo_update": self._update,
            "todo_search": self._search,
            "todo_archive": self._archive,
            "todo_link": self._link,
            "todo_stats": self._stats,
            "todo_clean": self._clean,
            "todo_template": self._template,
            "todo_sections": self._sections,
            "todo_add_section": self._add_section,
            "todo_reorder_sections": self._reorder_sections,
        }

    @property
    def factory(self) -> ManagerFactory:
        if self._factory is None:
            self._factory = get_manager_factory()
        return self._factory

    @property
    def tool_names(self) -> list[str]:
        return list(self._handlers)

    def handle(
        self,
        name: str,
        arguments: Optional[Mapping[str, Any]] = None,
        working_directory: str = "",
        context: Optional[RequestContext] = None,
    ) -> ToolResult:
        """
        执行一次工具调用

        Args:
            name: 工具名
            arguments: 工具参数
            working_directory: 请求头携带的工作目录（优先于参数中的 working_directory）
            context: 请求上下文（默认按配置的请求时限创建）

        Returns:
            ToolResult；任何错误都转换为 is_error=True 的结果
        """
        handler = self._handlers.get(name)
        if handler is None:
            return ToolResult(f"Unknown tool: {name}", is_error=True)

        args = dict(arguments or {})
        arg_directory = args.pop(WORKING_DIRECTORY_ARG, "")
        if not working_directory and isinstance(arg_directory, str):
            working_directory = arg_directory.strip()

        if context is None:
            context = RequestContext.with_timeout(working_directory, self.config.request_timeout, operation=name)

        try:
            context.check()
            managers = self.factory.get_managers(working_directory, context)
            text = handler(managers, args, context)
        except TodoError as e:
            logger.info(f"{name} failed ({e.kind.value}): {e.message}")
            return ToolResult(e.client_message(), is_error=True)
        except Exception as e:
            logger.exception(f"Unexpected error in {name}")
            return ToolResult(client_message(e), is_error=True)
        return ToolResult(text)

    # === 尽力而为的旁路 ===

    @staticmethod
    def _index(managers: ManagerSet, todo_id: str) -> None:
        if managers.index is None:
            return
        try:
            todo, body = managers.store.read_with_content(todo_id)
            managers.index.index_todo(todo, body)
        except TodoError as e:
            logger.warning(f"Failed to index todo {todo_id}: {e}")

    @staticmethod
    def _unindex(managers: ManagerSet, todo_id: str) -> None:
        if managers.index is None:
            return
        try:
            managers.index.delete_todo(todo_id)
        except TodoError as e:
            logger.warning(f"Failed to remove todo {todo_id} from index: {e}")

    @staticmethod
    def _link_child(managers: ManagerSet, parent_id: str, child: Todo) -> Todo:
        """
        链接父子；只有 OperationError 向上抛出，其他失败记录日志

        Returns:
            链接后的子 todo（链接失败时原样返回）
        """
        try:
            return managers.linker.link_todos(parent_id, child.id, LINK_PARENT_CHILD)
        except OperationError:
            raise
        except TodoError as e:
            logger.warning(f"Failed to link {child.id} to parent {parent_id}: {e}")
            return child

    def _descendant_ids(self, managers: ManagerSet, todo_id: str, context: RequestContext) -> list[str]:
        todos = managers.store.list_todos(context=context)
        by_parent: dict[str, list[str]] = {}
        for todo in todos:
            if todo.parent_id:
                by_parent.setdefault(todo.parent_id, []).append(todo.id)
        found: list[str] = []
        pending = list(by_parent.get(todo_id, []))
        while pending:
            current = pending.pop()
            if current in found:
                continue
            found.append(current)
            pending.extend(by_parent.get(current, []))
        return found

    # === 创建 ===

    def _create(self, managers: ManagerSet, args: Mapping[str, Any], context: RequestContext) -> str:
        params = extract_create(args)
        if params.type in TYPES_REQUIRING_PARENT and not params.parent_id:
            raise ValidationError("parent_id", f"type '{params.type}' requires parent_id to be specified")

        store = managers.store
        if params.parent_id:
            store.read(params.parent_id)

        warning = ""
        if params.template:
            todo = managers.templates.create_from_template(
                params.template, params.task, params.priority, params.type
            )
        elif params.type == TodoType.PRD.value:
            try:
                todo = managers.templates.create_from_template(
                    PRD_TEMPLATE_NAME, params.task, params.priority, params.type
                )
            except TodoError as e:
                logger.warning(f"PRD template unavailable, using default sections: {e}")
                warning = f"prd template could not be applied ({e.client_message()}); default sections were used"
                todo = store.create(params.task, params.priority, params.type)
        else:
            todo = store.create(params.task, params.priority, params.type)

        if params.parent_id:
            todo = self._link_child(managers, params.parent_id, todo)
        self._index(managers, todo.id)

        similar = find_similar_todos(store.list_todos(context=context), params.task, exclude_id=todo.id)
        return formatters.format_create(
            todo,
            store.relative_path(store.todo_path(todo.id)),
            hint=detect_pattern(params.task),
            similar=similar,
            warning=warning,
            from_template=params.template,
        )

    def _create_multi(self, managers: ManagerSet, args: Mapping[str, Any], context: RequestContext) -> str:
        params = extract_create_multi(args)
        store = managers.store

        parent = store.create(params.parent.task, params.parent.priority, params.parent.type)
        self._index(managers, parent.id)

        children: list[Todo] = []
        failures: list[str] = []
        for spec in params.children:
            context.check()
            try:
                child = store.create(spec.task, spec.priority, spec.type)
            except TodoError as e:
                logger.warning(f"Failed to create child '{spec.task}' of {parent.id}: {e}")
                failures.append(f"{spec.task}: {e.client_message()}")
                continue
            try:
                child = managers.linker.link_todos(parent.id, child.id, LINK_PARENT_CHILD)
            except TodoError as e:
                logger.warning(f"Failed to link {child.id} to parent {parent.id}: {e}")
            self._index(managers, child.id)
            children.append(child)

        logger.info(f"Created multi-phase project {parent.id} with {len(children)} children")
        return formatters.format_create_multi(parent, children, failures)

    # === 读取 ===

    def _read(self, managers: ManagerSet, args: Mapping[str, Any], context: RequestContext) -> str:
        params = extract_read(args)
        store = managers.store

        if params.id:
            if params.format == "full":
                todo, contents = store.read_sections(params.id)
                return formatters.format_full(todo, contents)
            todo = store.read(params.id)
            if params.format == "list":
                return formatters.format_list([todo])
            return formatters.format_single_summary(todo)

        todos = store.list_todos(
            status=params.filter.status,
            priority=params.filter.priority,
            days=params.filter.days,
            include_archived=params.include_archived,
            context=context,
        )
        if params.format == "list":
            return formatters.format_list(todos)
        if params.format == "full":
            entries = []
            for todo in todos:
                context.check()
                if store.exists(todo.id):
                    _, contents = store.read_sections(todo.id)
                else:
                    contents = {}
                entries.append((todo, contents))
            return formatters.format_full_many(entries)
        return formatters.format_summary(todos)

    # === 更新 ===

    def _update(self, managers: ManagerSet, args: Mapping[str, Any], context: RequestContext) -> str:
        params = extract_update(args)
        store = managers.store

        todo, _ = store.read_with_content(params.id)
        definition: Optional[SectionDefinition] = None
        if params.section:
            definition = todo.sections.get(params.section)
            if definition is None:
                raise ValidationError("section", f"section '{params.section}' does not exist in this todo")
            if params.operation == "toggle":
                if definition.schema_ != SectionSchema.CHECKLIST:
                    raise ValidationError("operation", "toggle operation only supported for checklist sections")
            else:
                validate_content(definition.schema_, params.content)
        parent_id = params.metadata.get("parent_id")
        if parent_id:
            managers.linker.check_link(parent_id, params.id, field_name="metadata.parent_id")

        context.check()
        store.update(params.id, params.section, params.operation, params.content, params.metadata)

        receipts = []
        if definition is not None:
            _, contents = store.read_sections(params.id)
            metrics = schema_metrics(definition.schema_, contents.get(params.section, ""))
            receipts.append(formatters.format_section_update(params.id, params.section, params.operation, metrics))

        if params.metadata.get("status") == TodoStatus.COMPLETED.value and self.config.auto_archive:
            try:
                archive_path = store.archive(params.id)
            except ConflictError as e:
                self._index(managers, params.id)
                note = (
                    f"Todo remains active: {e.reason}. "
                    "Complete or archive the children first, or use todo_archive with cascade."
                )
                receipts.append(formatters.format_metadata_update(params.id, params.metadata, note))
                return "\n\n".join(receipts)
            self._unindex(managers, params.id)
            receipts.append(formatters.format_auto_archive(params.id, store.relative_path(archive_path)))
            return "\n\n".join(receipts)

        self._index(managers, params.id)
        if params.metadata:
            receipts.append(formatters.format_metadata_update(params.id, params.metadata))
        return "\n\n".join(receipts)

    # === 搜索 / 归档 / 链接 ===

    def _search(self, managers: ManagerSet, args: Mapping[str, Any], context: RequestContext) -> str:
        params = extract_search(args, self.config.search_limit, self.config.search_limit_max)
        if managers.index is None:
            raise OperationError("search", "search not available")
        results = managers.index.search_todos(params.query, params.filters, params.limit, context=context)
        return formatters.format_search(results)

    def _archive(self, managers: ManagerSet, args: Mapping[str, Any], context: RequestContext) -> str:
        params = extract_archive(args)
        store = managers.store

        descendants = self._descendant_ids(managers, params.id, context) if params.cascade else []
        archive_path = store.archive(params.id, params.quarter, cascade=params.cascade)
        for todo_id in (*descendants, params.id):
            self._unindex(managers, todo_id)
        return formatters.format_archive(params.id, store.relative_path(archive_path))

    def _link(self, managers: ManagerSet, args: Mapping[str, Any], context: RequestContext) -> str:
        params = extract_link(args)
        managers.linker.link_todos(params.parent_id, params.child_id, params.link_type)
        self._index(managers, params.child_id)
        return formatters.format_link(params.parent_id, params.child_id, params.link_type)

    # === 统计 / 清理 / 模板 ===

    def _stats(self, managers: ManagerSet, args: Mapping[str, Any], context: RequestContext) -> str:
        params = extract_stats(args)
        return formatters.format_stats(managers.stats.generate(params.period, context=context))

    def _clean(self, managers: ManagerSet, args: Mapping[str, Any], context: RequestContext) -> str:
        params = extract_clean(args, self.config.clean_days)
        if params.operation == "find_duplicates":
            return formatters.format_duplicates(managers.store.find_duplicates(context=context))

        before = {todo.id for todo in managers.store.list_todos(context=context)}
        count = managers.store.archive_old(params.days, context=context)
        if count:
            remaining = {todo.id for todo in managers.store.list_todos(context=context)}
            for todo_id in sorted(before - remaining):
                self._unindex(managers, todo_id)
        return formatters.format_clean_archived(count, params.days)

    def _template(self, managers: ManagerSet, args: Mapping[str, Any], context: RequestContext) -> str:
        params = extract_template(args)
        if not params.template:
            return formatters.format_template_list(managers.templates.list_templates())

        todo = managers.templates.create_from_template(
            params.template, params.task, params.priority, params.type, variables=params.variables
        )
        self._index(managers, todo.id)
        store = managers.store
        return formatters.format_create(
            todo,
            store.relative_path(store.todo_path(todo.id)),
            hint=detect_pattern(todo.task),
            from_template=params.template,
        )

    # === Section ===

    def _sections(self, managers: ManagerSet, args: Mapping[str, Any], context: RequestContext) -> str:
        params = extract_sections(args)
        todo, contents = managers.store.read_sections(params.id)
        missing = validate_required_sections(todo.sections, contents)
        return formatters.format_sections(todo, contents, missing)

    def _add_section(self, managers: ManagerSet, args: Mapping[str, Any], context: RequestContext) -> str:
        params = extract_add_section(args)
        store = managers.store
        todo = store.read(params.id)
        if params.key in todo.sections:
            raise ConflictError("section", f"section '{params.key}' already exists in todo '{params.id}'")

        todo.sections[params.key] = SectionDefinition(
            title=params.title,
            order=params.order,
            schema=params.schema,
            required=params.required,
            custom=True,
        )
        store.save(todo)
        self._index(managers, todo.id)
        return formatters.format_add_section(params.key, params.id)

    def _reorder_sections(self, managers: ManagerSet, args: Mapping[str, Any], context: RequestContext) -> str:
        params = extract_reorder_sections(args)
        store = managers.store
        todo = store.read(params.id)

        unknown = [key for key in params.order if key not in todo.sections]
        if unknown:
            raise ValidationError(f"order.{unknown[0]}", f"section '{unknown[0]}' does not exist in this todo")
        for key, order in params.order.items():
            todo.sections[key].order = order
        store.save(todo)
        return formatters.format_reorder(params.id)


# 全局单例
_dispatcher: Optional[TodoDispatcher] = None


def get_dispatcher() -> TodoDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = TodoDispatcher()
    return _dispatcher


def reset_dispatcher() -> None:
    """重置单例（用于测试）"""
    global _dispatcher
    _dispatcher = None


__all__ = ["ToolResult", "TodoDispatcher", "get_dispatcher", "reset_dispatcher"]
