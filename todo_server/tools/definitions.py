"""
MCP 工具定义 - 13 个 todo 工具的名称、说明和输入 JSON Schema

每个工具都接受可选的 working_directory 参数（stdio 客户端使用；
HTTP 客户端通过 X-Working-Directory 请求头传入）。
"""

from typing import Any, Optional

from mcp.types import Tool

from todo_server.models.todo import SectionSchema
from todo_server.services.todo_store import METADATA_KEYS, SECTION_OPERATIONS
from todo_server.tools.params import (
    CLEAN_OPERATIONS,
    DEFAULT_CLEAN_DAYS,
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_SECTION_ORDER,
    MAX_SEARCH_LIMIT,
    PERIODS,
    PRIORITIES,
    READ_FORMATS,
    STATUSES,
    TYPES,
)

SCHEMAS = [schema.value for schema in SectionSchema]

_WORKING_DIRECTORY = {
    "type": "string",
    "description": "Project root whose .claude/ directory holds the todos (defaults to the server working directory)",
}


def _schema(properties: dict[str, Any], required: Optional[list[str]] = None) -> dict[str, Any]:
    schema: dict[str, Any] = {
        "type": "object",
        "properties": {**properties, "working_directory": _WORKING_DIRECTORY},
    }
    if required:
        schema["required"] = required
    return schema


def _todo_spec(default_priority: str, default_type: str) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "task": {"type": "string", "description": "Task title"},
            "priority": {"type": "string", "enum": list(PRIORITIES), "default": default_priority},
            "type": {"type": "string", "enum": list(TYPES), "default": default_type},
        },
        "required": ["task"],
    }


def get_tool_definitions() -> list[Tool]:
    """全部工具定义（顺序即 list_tools 的返回顺序）"""
    return [
        Tool(
            name="todo_create",
            description="""Create a new todo with the standard section layout.

Types 'phase' and 'subtask' require parent_id. A template name seeds the
body from .claude/templates/<template>.md. The response contains the todo
id, its path, and hints when the title looks like part of a larger project.""",
            inputSchema=_schema(
                {
                    "task": {"type": "string", "description": "Task title"},
                    "priority": {"type": "string", "enum": list(PRIORITIES), "default": "high"},
                    "type": {"type": "string", "enum": list(TYPES), "default": "feature"},
                    "parent_id": {"type": "string", "description": "Parent todo id"},
                    "template": {"type": "string", "description": "Template name"},
                },
                ["task"],
            ),
        ),
        Tool(
            name="todo_create_multi",
            description="Create a parent todo and its child phases in one call. Children are linked to the parent.",
            inputSchema=_schema(
                {
                    "parent": _todo_spec("high", "multi-phase"),
                    "children": {
                        "type": "array",
                        "items": _todo_spec("medium", "phase"),
                        "minItems": 1,
                    },
                },
                ["parent", "children"],
            ),
        ),
        Tool(
            name="todo_read",
            description="""Read one todo by id, or list todos.

Formats:
- summary: grouped by status, with a hierarchy view when parents exist
- list: one line per todo
- full: JSON with metadata and section contents""",
            inputSchema=_schema(
                {
                    "id": {"type": "string", "description": "Todo id (omit to list)"},
                    "format": {"type": "string", "enum": list(READ_FORMATS), "default": "summary"},
                    "filter": {
                        "type": "object",
                        "properties": {
                            "status": {"type": "string", "enum": list(STATUSES)},
                            "priority": {"type": "string", "enum": list(PRIORITIES)},
                            "days": {"type": "number", "description": "Only todos started within N days"},
                        },
                    },
                    "include_archived": {"type": "boolean", "default": False},
                }
            ),
        ),
        Tool(
            name="todo_update",
            description="""Update a todo section and/or its metadata.

Section operations: append, prepend, replace, toggle (checklist items only).
Setting metadata.status to 'completed' archives the todo when auto-archive is enabled.""",
            inputSchema=_schema(
                {
                    "id": {"type": "string"},
                    "section": {"type": "string", "description": "Section key, e.g. findings, checklist, tests"},
                    "operation": {"type": "string", "enum": list(SECTION_OPERATIONS), "default": "append"},
                    "content": {"type": "string"},
                    "metadata": {
                        "type": "object",
                        "properties": {
                            "status": {"type": "string", "enum": list(STATUSES)},
                            "priority": {"type": "string", "enum": list(PRIORITIES)},
                            "type": {"type": "string", "enum": list(TYPES)},
                            **{
                                key: {"type": "string"}
                                for key in METADATA_KEYS
                                if key not in ("status", "priority", "type")
                            },
                        },
                    },
                },
                ["id"],
            ),
        ),
        Tool(
            name="todo_search",
            description="Full-text search across active todos.",
            inputSchema=_schema(
                {
                    "query": {"type": "string"},
                    "filters": {
                        "type": "object",
                        "properties": {
                            "status": {"type": "string", "enum": list(STATUSES)},
                            "date_from": {"type": "string", "description": "YYYY-MM-DD"},
                            "date_to": {"type": "string", "description": "YYYY-MM-DD (inclusive)"},
                        },
                    },
                    "limit": {
                        "type": "number",
                        "default": DEFAULT_SEARCH_LIMIT,
                        "minimum": 1,
                        "maximum": MAX_SEARCH_LIMIT,
                    },
                },
                ["query"],
            ),
        ),
        Tool(
            name="todo_archive",
            description="Move a todo to .claude/archive/YYYY/MM/DD/ (or to an explicit bucket).",
            inputSchema=_schema(
                {
                    "id": {"type": "string"},
                    "quarter": {"type": "string", "description": "Archive bucket override, e.g. 2025-Q1"},
                    "cascade": {"type": "boolean", "default": False, "description": "Archive all children first"},
                },
                ["id"],
            ),
        ),
        Tool(
            name="todo_link",
            description="Link a child todo to a parent todo.",
            inputSchema=_schema(
                {
                    "parent_id": {"type": "string"},
                    "child_id": {"type": "string"},
                    "link_type": {"type": "string", "enum": ["parent-child"], "default": "parent-child"},
                },
                ["parent_id", "child_id"],
            ),
        ),
        Tool(
            name="todo_stats",
            description="Completion statistics for the active todos.",
            inputSchema=_schema({"period": {"type": "string", "enum": list(PERIODS), "default": "all"}}),
        ),
        Tool(
            name="todo_clean",
            description="Archive old completed todos, or report duplicate titles.",
            inputSchema=_schema(
                {
                    "operation": {"type": "string", "enum": list(CLEAN_OPERATIONS), "default": "archive_old"},
                    "days": {"type": "number", "default": DEFAULT_CLEAN_DAYS},
                }
            ),
        ),
        Tool(
            name="todo_template",
            description="List templates, or create a todo from a template.",
            inputSchema=_schema(
                {
                    "template": {"type": "string"},
                    "task": {"type": "string"},
                    "priority": {"type": "string", "enum": list(PRIORITIES), "default": "high"},
                    "type": {"type": "string", "enum": list(TYPES), "default": "feature"},
                    "variables": {"type": "object", "description": "Template variables"},
                }
            ),
        ),
        Tool(
            name="todo_sections",
            description="Show the sections of a todo with content statistics.",
            inputSchema=_schema({"id": {"type": "string"}}, ["id"]),
        ),
        Tool(
            name="todo_add_section",
            description="Add a custom section to a todo.",
            inputSchema=_schema(
                {
                    "id": {"type": "string"},
                    "key": {"type": "string"},
                    "title": {"type": "string"},
                    "schema": {"type": "string", "enum": SCHEMAS, "default": "freeform"},
                    "required": {"type": "boolean", "default": False},
                    "order": {"type": "number", "default": DEFAULT_SECTION_ORDER},
                },
                ["id", "key", "title"],
            ),
        ),
        Tool(
            name="todo_reorder_sections",
            description="Change the display order of sections.",
            inputSchema=_schema(
                {
                    "id": {"type": "string"},
                    "order": {
                        "type": "object",
                        "additionalProperties": {"type": "number"},
                        "description": "Mapping of section key to order",
                    },
                },
                ["id", "order"],
            ),
        ),
    ]


__all__ = ["get_tool_definitions"]
