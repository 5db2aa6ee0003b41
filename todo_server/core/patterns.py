"""
标题模式识别

"Phase 2: ..." / "Step 3 ..." / "1. ..." 之类的标题通常应该是某个父任务下的
phase 或 subtask；创建时据此给出提示，并找出同类标题的已有 todo。
"""

import re
from typing import Iterable, Optional

from pydantic import BaseModel

from todo_server.models.todo import Todo

_PHASE_RE = re.compile(r"^phase\s+(\d+(?:\.\d+)?)\b", re.IGNORECASE)
_PART_RE = re.compile(r"^part\s+(\d+)(?:\s+of\s+\d+)?\b", re.IGNORECASE)
_STEP_RE = re.compile(r"^step\s+(\d+)\b", re.IGNORECASE)
_NUMBERED_RES = (
    re.compile(r"^\[(\d+)\]\s+"),
    re.compile(r"^(\d+)\.\s+"),
    re.compile(r"^(\d+)\)\s+"),
)

_NUMBERED_MESSAGE = "This looks like a numbered task. Consider using type 'subtask' with a parent_id."


class PatternHint(BaseModel):
    """标题模式提示"""
    pattern: str
    suggestedType: str
    message: str
    number: str = ""


def detect_pattern(title: str) -> Optional[PatternHint]:
    title = title.strip()

    match = _PHASE_RE.match(title)
    if match:
        return PatternHint(
            pattern="phase",
            suggestedType="phase",
            message="This looks like a phase. Consider using type 'phase' with a parent_id.",
            number=match.group(1),
        )
    match = _PART_RE.match(title)
    if match:
        return PatternHint(
            pattern="part",
            suggestedType="phase",
            message="This looks like a multi-part task. Consider using type 'phase' with a parent_id.",
            number=match.group(1),
        )
    match = _STEP_RE.match(title)
    if match:
        return PatternHint(
            pattern="step",
            suggestedType="subtask",
            message="This looks like a step. Consider using type 'subtask' with a parent_id.",
            number=match.group(1),
        )
    for numbered in _NUMBERED_RES:
        match = numbered.match(title)
        if match:
            return PatternHint(
                pattern="numbered",
                suggestedType="subtask",
                message=_NUMBERED_MESSAGE,
                number=match.group(1),
            )
    return None


def _prefix_class(title: str) -> str:
    """标题的前缀类别：Phase / Part / Step / Numbered / 冒号或破折号前的短前缀"""
    title = title.strip()
    if _PHASE_RE.match(title):
        return "phase"
    if _PART_RE.match(title):
        return "part"
    if _STEP_RE.match(title):
        return "step"
    if any(numbered.match(title) for numbered in _NUMBERED_RES):
        return "numbered"
    for separator in (":", " - ", " — "):
        index = title.find(separator)
        if index > 0:
            prefix = title[:index].strip()
            if len(prefix) < 30:
                return prefix.lower()
    return ""


def find_similar_todos(todos: Iterable[Todo], title: str, exclude_id: str = "") -> list[str]:
    """前缀类别相同的 todo id"""
    prefix = _prefix_class(title)
    if not prefix:
        return []
    return [
        todo.id
        for todo in todos
        if todo.id and todo.id != exclude_id and _prefix_class(todo.task) == prefix
    ]


__all__ = ["PatternHint", "detect_pattern", "find_similar_todos"]
