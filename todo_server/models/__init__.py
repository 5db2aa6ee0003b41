"""Data models for Todo Server"""

from todo_server.models.todo import (
    TYPES_REQUIRING_PARENT,
    ChecklistItem,
    ChecklistStatus,
    SearchResult,
    SectionDefinition,
    SectionSchema,
    Template,
    Todo,
    TodoPriority,
    TodoStats,
    TodoStatus,
    TodoType,
)

__all__ = [
    "TYPES_REQUIRING_PARENT",
    "ChecklistItem",
    "ChecklistStatus",
    "SearchResult",
    "SectionDefinition",
    "SectionSchema",
    "Template",
    "Todo",
    "TodoPriority",
    "TodoStats",
    "TodoStatus",
    "TodoType",
]
