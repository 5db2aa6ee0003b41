"""
参数提取 - 把工具调用的参数字典转换为类型化的参数记录

规则：
- 必填字符串必须存在且非空
- 枚举字符串必须在闭集内
- 数值参数接受整数和小数（小数截断为整数），布尔值不算数值
- 嵌套对象按同样规则递归校验

所有失败都抛出 ValidationError，field 为出错的参数路径（如 "children[1].task"）。
"""

import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from todo_server.core.errors import ValidationError
from todo_server.core.section_schema import normalize_schema, normalize_section_key
from todo_server.models.todo import SectionSchema, TodoPriority, TodoStatus, TodoType
from todo_server.services.linker import LINK_PARENT_CHILD
from todo_server.services.stats import PERIOD_DAYS
from todo_server.services.todo_store import METADATA_KEYS, SECTION_OPERATIONS

PRIORITIES = tuple(p.value for p in TodoPriority)
STATUSES = tuple(s.value for s in TodoStatus)
TYPES = tuple(t.value for t in TodoType)
READ_FORMATS = ("summary", "list", "full")
CLEAN_OPERATIONS = ("archive_old", "find_duplicates")
PERIODS = tuple(PERIOD_DAYS)

DEFAULT_SEARCH_LIMIT = 10
MAX_SEARCH_LIMIT = 100
DEFAULT_CLEAN_DAYS = 90
# 天数窗口上限（约 100 年）；更大的值等同于不限
MAX_DAYS = 36500
DEFAULT_SECTION_ORDER = 100


# === 基础提取函数 ===


def _path(prefix: str, name: str) -> str:
    return f"{prefix}.{name}" if prefix else name


def get_string(
    args: Mapping[str, Any],
    name: str,
    required: bool = False,
    default: str = "",
    prefix: str = "",
) -> str:
    field_name = _path(prefix, name)
    value = args.get(name)
    if value is None:
        if required:
            raise ValidationError(field_name, "is required")
        return default
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")
    if required and not value.strip():
        raise ValidationError(field_name, "must not be empty")
    return value


def get_enum(
    args: Mapping[str, Any],
    name: str,
    choices: Sequence[str],
    default: str = "",
    prefix: str = "",
) -> str:
    value = get_string(args, name, default=default, prefix=prefix).strip()
    if not value:
        return default
    if value not in choices:
        raise ValidationError(_path(prefix, name), f"must be one of: {', '.join(choices)}")
    return value


def _coerce_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(field_name, "must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError(field_name, "must be a number")
    return int(value)


def get_int(
    args: Mapping[str, Any],
    name: str,
    default: int,
    minimum: Optional[int] = None,
    maximum: Optional[int] = None,
    prefix: str = "",
) -> int:
    """读取整数参数；超过 maximum 的值截断为 maximum"""
    field_name = _path(prefix, name)
    value = args.get(name)
    if value is None:
        return default
    number = _coerce_int(value, field_name)
    if minimum is not None and number < minimum:
        raise ValidationError(field_name, f"must be at least {minimum}")
    if maximum is not None and number > maximum:
        return maximum
    return number


def get_bool(args: Mapping[str, Any], name: str, default: bool = False, prefix: str = "") -> bool:
    value = args.get(name)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValidationError(_path(prefix, name), "must be a boolean")


def get_mapping(args: Mapping[str, Any], name: str, required: bool = False, prefix: str = "") -> dict[str, Any]:
    field_name = _path(prefix, name)
    value = args.get(name)
    if value is None:
        if required:
            raise ValidationError(field_name, "is required")
        return {}
    if not isinstance(value, dict):
        raise ValidationError(field_name, "must be an object")
    return dict(value)


# === 参数记录 ===


@dataclass
class CreateParams:
    task: str
    priority: str = TodoPriority.HIGH.value
    type: str = TodoType.FEATURE.value
    parent_id: str = ""
    template: str = ""


@dataclass
class TodoSpec:
    """todo_create_multi 中的 parent / child"""
    task: str
    priority: str
    type: str


@dataclass
class CreateMultiParams:
    parent: TodoSpec
    children: list[TodoSpec] = field(default_factory=list)


@dataclass
class ReadFilter:
    status: str = ""
    priority: str = ""
    days: int = 0


@dataclass
class ReadParams:
    id: str = ""
    format: str = "summary"
    filter: ReadFilter = field(default_factory=ReadFilter)
    include_archived: bool = False


@dataclass
class UpdateParams:
    id: str
    section: str = ""
    operation: str = "append"
    content: str = ""
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class SearchParams:
    query: str
    filters: dict[str, str] = field(default_factory=dict)
    limit: int = DEFAULT_SEARCH_LIMIT


@dataclass
class ArchiveParams:
    id: str
    quarter: str = ""
    cascade: bool = False


@dataclass
class LinkParams:
    parent_id: str
    child_id: str
    link_type: str = LINK_PARENT_CHILD


@dataclass
class StatsParams:
    period: str = "all"


@dataclass
class CleanParams:
    operation: str = "archive_old"
    days: int = DEFAULT_CLEAN_DAYS


@dataclass
class TemplateParams:
    template: str = ""
    task: str = ""
    priority: str = TodoPriority.HIGH.value
    type: str = TodoType.FEATURE.value
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass
class SectionsParams:
    id: str


@dataclass
class AddSectionParams:
    id: str
    key: str
    title: str
    schema: SectionSchema = SectionSchema.FREEFORM
    required: bool = False
    order: int = DEFAULT_SECTION_ORDER


@dataclass
class ReorderSectionsParams:
    id: str
    order: dict[str, int] = field(default_factory=dict)


# === 每个工具一个提取函数 ===


def extract_create(args: Mapping[str, Any]) -> CreateParams:
    return CreateParams(
        task=get_string(args, "task", required=True).strip(),
        priority=get_enum(args, "priority", PRIORITIES, TodoPriority.HIGH.value),
        type=get_enum(args, "type", TYPES, TodoType.FEATURE.value),
        parent_id=get_string(args, "parent_id").strip(),
        template=get_string(args, "template").strip(),
    )


def _extract_spec(raw: Any, prefix: str, default_priority: str, default_type: str) -> TodoSpec:
    if not isinstance(raw, dict):
        raise ValidationError(prefix, "must be an object")
    return TodoSpec(
        task=get_string(raw, "task", required=True, prefix=prefix).strip(),
        priority=get_enum(raw, "priority", PRIORITIES, default_priority, prefix=prefix),
        type=get_enum(raw, "type", TYPES, default_type, prefix=prefix),
    )


def extract_create_multi(args: Mapping[str, Any]) -> CreateMultiParams:
    parent_raw = args.get("parent")
    if parent_raw is None:
        raise ValidationError("parent", "is required")
    parent = _extract_spec(parent_raw, "parent", TodoPriority.HIGH.value, TodoType.MULTI_PHASE.value)

    children_raw = args.get("children")
    if children_raw is None:
        raise ValidationError("children", "is required")
    if not isinstance(children_raw, list):
        raise ValidationError("children", "must be an array")
    children = [
        _extract_spec(child, f"children[{index}]", TodoPriority.MEDIUM.value, TodoType.PHASE.value)
        for index, child in enumerate(children_raw)
    ]
    return CreateMultiParams(parent=parent, children=children)


def extract_read(args: Mapping[str, Any]) -> ReadParams:
    raw_filter = get_mapping(args, "filter")
    return ReadParams(
        id=get_string(args, "id").strip(),
        format=get_enum(args, "format", READ_FORMATS, "summary"),
        filter=ReadFilter(
            status=get_enum(raw_filter, "status", STATUSES, prefix="filter"),
            priority=get_enum(raw_filter, "priority", PRIORITIES, prefix="filter"),
            days=get_int(raw_filter, "days", 0, minimum=0, maximum=MAX_DAYS, prefix="filter"),
        ),
        include_archived=get_bool(args, "include_archived"),
    )


_METADATA_ENUMS = {"status": STATUSES, "priority": PRIORITIES, "type": TYPES}


def _extract_metadata(args: Mapping[str, Any]) -> dict[str, str]:
    raw = get_mapping(args, "metadata")
    metadata: dict[str, str] = {}
    for key, value in raw.items():
        field_name = f"metadata.{key}"
        if key not in METADATA_KEYS:
            raise ValidationError(field_name, "unsupported metadata key")
        if value is None:
            value = ""
        if not isinstance(value, str):
            raise ValidationError(field_name, "must be a string")
        value = value.strip()
        if key in _METADATA_ENUMS:
            metadata[key] = get_enum(raw, key, _METADATA_ENUMS[key], prefix="metadata")
            if not metadata[key]:
                raise ValidationError(field_name, "must not be empty")
        else:
            metadata[key] = value
    return metadata


def extract_update(args: Mapping[str, Any]) -> UpdateParams:
    params = UpdateParams(
        id=get_string(args, "id", required=True).strip(),
        section=get_string(args, "section").strip(),
        operation=get_enum(args, "operation", SECTION_OPERATIONS, "append"),
        content=get_string(args, "content"),
        metadata=_extract_metadata(args),
    )
    if not params.section and not params.metadata:
        raise ValidationError("section", "either section or metadata must be provided")
    if params.section and params.operation != "replace" and not params.content.strip():
        raise ValidationError("content", f"content is required for {params.operation}")
    return params


def extract_search(
    args: Mapping[str, Any],
    default_limit: int = DEFAULT_SEARCH_LIMIT,
    max_limit: int = MAX_SEARCH_LIMIT,
) -> SearchParams:
    """limit 的默认值与上限来自配置（search_limit / search_limit_max）"""
    raw_filters = get_mapping(args, "filters")
    filters = {
        "status": get_enum(raw_filters, "status", STATUSES, prefix="filters"),
        "date_from": get_string(raw_filters, "date_from", prefix="filters").strip(),
        "date_to": get_string(raw_filters, "date_to", prefix="filters").strip(),
    }
    limit = get_int(args, "limit", min(default_limit, max_limit), minimum=1, maximum=max_limit)
    return SearchParams(
        query=get_string(args, "query", required=True).strip(),
        filters={key: value for key, value in filters.items() if value},
        limit=limit,
    )


def extract_archive(args: Mapping[str, Any]) -> ArchiveParams:
    return ArchiveParams(
        id=get_string(args, "id", required=True).strip(),
        quarter=get_string(args, "quarter").strip(),
        cascade=get_bool(args, "cascade"),
    )


def extract_link(args: Mapping[str, Any]) -> LinkParams:
    return LinkParams(
        parent_id=get_string(args, "parent_id", required=True).strip(),
        child_id=get_string(args, "child_id", required=True).strip(),
        link_type=get_string(args, "link_type").strip() or LINK_PARENT_CHILD,
    )


def extract_stats(args: Mapping[str, Any]) -> StatsParams:
    return StatsParams(period=get_enum(args, "period", PERIODS, "all"))


def extract_clean(args: Mapping[str, Any], default_days: int = DEFAULT_CLEAN_DAYS) -> CleanParams:
    return CleanParams(
        operation=get_enum(args, "operation", CLEAN_OPERATIONS, "archive_old"),
        days=get_int(args, "days", min(default_days, MAX_DAYS), minimum=0, maximum=MAX_DAYS),
    )


def extract_template(args: Mapping[str, Any]) -> TemplateParams:
    params = TemplateParams(
        template=get_string(args, "template").strip(),
        task=get_string(args, "task").strip(),
        priority=get_enum(args, "priority", PRIORITIES, TodoPriority.HIGH.value),
        type=get_enum(args, "type", TYPES, TodoType.FEATURE.value),
        variables=get_mapping(args, "variables"),
    )
    if params.template and not params.task:
        raise ValidationError("task", "is required when template is specified")
    return params


def extract_sections(args: Mapping[str, Any]) -> SectionsParams:
    return SectionsParams(id=get_string(args, "id", required=True).strip())


def extract_add_section(args: Mapping[str, Any]) -> AddSectionParams:
    raw_key = get_string(args, "key", required=True)
    key = normalize_section_key(raw_key)
    if not key:
        raise ValidationError("key", f"invalid section key: {raw_key}")
    return AddSectionParams(
        id=get_string(args, "id", required=True).strip(),
        key=key,
        title=get_string(args, "title", required=True).strip(),
        schema=normalize_schema(get_string(args, "schema").strip() or SectionSchema.FREEFORM),
        required=get_bool(args, "required"),
        order=get_int(args, "order", DEFAULT_SECTION_ORDER),
    )


def extract_reorder_sections(args: Mapping[str, Any]) -> ReorderSectionsParams:
    raw_order = get_mapping(args, "order", required=True)
    if not raw_order:
        raise ValidationError("order", "must not be empty")
    order = {str(key): _coerce_int(value, f"order.{key}") for key, value in raw_order.items()}
    return ReorderSectionsParams(id=get_string(args, "id", required=True).strip(), order=order)


__all__ = [
    "AddSectionParams",
    "ArchiveParams",
    "CleanParams",
    "CreateMultiParams",
    "CreateParams",
    "LinkParams",
    "ReadFilter",
    "ReadParams",
    "ReorderSectionsParams",
    "SearchParams",
    "SectionsParams",
    "StatsParams",
    "TemplateParams",
    "TodoSpec",
    "UpdateParams",
    "extract_add_section",
    "extract_archive",
    "extract_clean",
    "extract_create",
    "extract_create_multi",
    "extract_link",
    "extract_read",
    "extract_reorder_sections",
    "extract_search",
    "extract_sections",
    "extract_stats",
    "extract_template",
    "extract_update",
    "get_bool",
    "get_enum",
    "get_int",
    "get_mapping",
    "get_string",
]
