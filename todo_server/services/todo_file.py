"""
Todo 文件格式 - front-matter + markdown 正文的解析与渲染

文件结构：
    ---
    todo_id: build-api
    started: '2025-01-19 10:00:00'
    ...
    sections:
      findings: {title: Findings & Research, order: 1, schema: research, required: false}
    ---
    # Task: Build API

    ## Findings & Research

    ## Web Searches
    ...

正文按 "## " 标题切分成块；未被修改的块原样保留（逐行无损）。
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

import yaml

from todo_server.core.errors import ValidationError
from todo_server.core.section_schema import (
    default_sections,
    infer_legacy_section,
    normalize_schema,
    ordered_sections,
)
from todo_server.core.timeutil import format_timestamp, now, parse_timestamp
from todo_server.models.todo import SectionDefinition, SectionSchema, Todo

logger = logging.getLogger(__name__)

FENCE = "---"
TASK_PREFIX = "# Task:"
SECTION_PREFIX = "## "

_CODE_FENCE = "```"


class TodoFormatError(ValueError):
    """todo 文件无法解析"""

    pass


# === 正文 ===


def _is_blank(line: str) -> bool:
    return not line.strip()


def _ensure_trailing_blank(lines: list[str]) -> None:
    if lines and not _is_blank(lines[-1]):
        lines.append("")


@dataclass
class SectionBlock:
    """一个 "## <title>" 块：标题行之后、下一个标题之前的原始行"""

    title: str
    lines: list[str] = field(default_factory=lambda: [""])

    @property
    def content(self) -> str:
        """去掉首尾空行后的内容"""
        start, end = 0, len(self.lines)
        while start < end and _is_blank(self.lines[start]):
            start += 1
        while end > start and _is_blank(self.lines[end - 1]):
            end -= 1
        return "\n".join(self.lines[start:end])

    def set_content(self, content: str) -> None:
        """替换：标题、空行、内容、空行"""
        if content.strip():
            self.lines = ["", *content.split("\n"), ""]
        else:
            self.lines = [""]

    def append(self, content: str) -> None:
        """插入到最后一个非空行之后"""
        last = max((i for i, line in enumerate(self.lines) if not _is_blank(line)), default=-1)
        if last < 0:
            self.set_content(content)
            return
        self.lines[last + 1:last + 1] = content.split("\n")

    def prepend(self, content: str) -> None:
        """插入到标题后的空行之后"""
        first = next((i for i, line in enumerate(self.lines) if not _is_blank(line)), -1)
        if first < 0:
            self.set_content(content)
            return
        self.lines[first:first] = content.split("\n")


@dataclass
class TodoBody:
    """解析后的正文：标题前的前言 + section 块"""

    preamble: list[str] = field(default_factory=list)
    blocks: list[SectionBlock] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> "TodoBody":
        body = cls()
        current: Optional[SectionBlock] = None
        in_code = False
        for line in text.split("\n"):
            if line.strip().startswith(_CODE_FENCE):
                in_code = not in_code
            if not in_code and line.startswith(SECTION_PREFIX):
                current = SectionBlock(title=line[len(SECTION_PREFIX):].strip(), lines=[])
                body.blocks.append(current)
            elif current is None:
                body.preamble.append(line)
            else:
                current.lines.append(line)
        return body

    @classmethod
    def new(cls, task: str, sections: Mapping[str, SectionDefinition]) -> "TodoBody":
        body = cls(preamble=[f"{TASK_PREFIX} {task}", ""])
        for _, definition in ordered_sections(sections):
            body.blocks.append(SectionBlock(title=definition.title))
        return body

    def render(self) -> str:
        lines = list(self.preamble)
        for block in self.blocks:
            lines.append(f"{SECTION_PREFIX}{block.title}")
            lines.extend(block.lines)
        return "\n".join(lines)

    @property
    def task(self) -> str:
        for line in self.preamble:
            if line.startswith(TASK_PREFIX):
                return line[len(TASK_PREFIX):].strip()
        return ""

    def set_task(self, task: str) -> None:
        for index, line in enumerate(self.preamble):
            if line.startswith(TASK_PREFIX):
                self.preamble[index] = f"{TASK_PREFIX} {task}"
                return
        # 前言里可能只有空行
        while self.preamble and _is_blank(self.preamble[0]):
            self.preamble.pop(0)
        self.preamble[:0] = [f"{TASK_PREFIX} {task}", ""]

    def find(self, title: str) -> Optional[SectionBlock]:
        for block in self.blocks:
            if block.title == title:
                return block
        return None

    def ensure_block(self, title: str, sections: Mapping[str, SectionDefinition]) -> SectionBlock:
        """
        返回标题对应的块；不存在时按 order 插入到合适位置。

        已有块的相对顺序不变。
        """
        block = self.find(title)
        if block is not None:
            return block

        rank = _title_rank(sections)
        new_block = SectionBlock(title=title)
        own_rank = rank.get(title)
        position = len(self.blocks)
        if own_rank is not None:
            for index, existing in enumerate(self.blocks):
                existing_rank = rank.get(existing.title)
                if existing_rank is not None and existing_rank > own_rank:
                    position = index
                    break

        previous = self.blocks[position - 1].lines if position > 0 else self.preamble
        _ensure_trailing_blank(previous)
        self.blocks.insert(position, new_block)
        return new_block

    def arrange(self, sections: Mapping[str, SectionDefinition]) -> None:
        """按 (order, key) 重排已定义的块，未定义的块保持相对顺序排在后面；补齐缺失的标题"""
        rank = _title_rank(sections)
        indexed = list(enumerate(self.blocks))
        indexed.sort(
            key=lambda pair: (0, *rank[pair[1].title], pair[0])
            if pair[1].title in rank
            else (1, 0, "", pair[0])
        )
        self.blocks = [block for _, block in indexed]
        for block in self.blocks[:-1]:
            _ensure_trailing_blank(block.lines)
        for _, definition in ordered_sections(sections):
            self.ensure_block(definition.title, sections)


def _title_rank(sections: Mapping[str, SectionDefinition]) -> dict[str, tuple[int, str]]:
    rank: dict[str, tuple[int, str]] = {}
    for key, definition in sections.items():
        rank.setdefault(definition.title, (definition.order, key))
    return rank


# === Front-matter ===


def split_document(text: str) -> tuple[dict[str, Any], str]:
    """
    拆分 front-matter 与正文。

    Raises:
        TodoFormatError: 缺少 front-matter 分隔符或 YAML 不合法
    """
    lines = text.split("\n")
    if not lines or lines[0].strip() != FENCE:
        raise TodoFormatError("missing front-matter delimiters")
    for end in range(1, len(lines)):
        if lines[end].strip() == FENCE:
            break
    else:
        raise TodoFormatError("unterminated front-matter")

    try:
        data = yaml.safe_load("\n".join(lines[1:end])) or {}
    except yaml.YAMLError as e:
        raise TodoFormatError(f"invalid YAML front-matter: {e}") from e
    if not isinstance(data, dict):
        raise TodoFormatError("front-matter must be a mapping")
    return data, "\n".join(lines[end + 1:])


def _parse_sections(raw: Any) -> dict[str, SectionDefinition]:
    sections: dict[str, SectionDefinition] = {}
    if not isinstance(raw, dict):
        return sections
    for key, value in raw.items():
        if not isinstance(value, dict):
            value = {"title": str(value)} if value else {}
        title = str(value.get("title") or key).strip()
        if title.startswith(SECTION_PREFIX):
            title = title[len(SECTION_PREFIX):].strip()
        try:
            schema = normalize_schema(value.get("schema") or SectionSchema.FREEFORM)
        except ValidationError:
            logger.warning(f"Unknown schema for section '{key}': {value.get('schema')}, using freeform")
            schema = SectionSchema.FREEFORM
        try:
            order = int(value.get("order", 100))
        except (TypeError, ValueError):
            order = 100
        metadata = value.get("metadata")
        sections[str(key)] = SectionDefinition(
            title=title,
            order=order,
            schema=schema,
            required=bool(value.get("required", False)),
            custom=bool(value.get("custom", False)),
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )
    return sections


def infer_sections(body: str) -> dict[str, SectionDefinition]:
    """旧格式：按正文中的 "## " 标题推断 section 定义（order 为出现顺序）"""
    sections: dict[str, SectionDefinition] = {}
    for index, block in enumerate(TodoBody.parse(body).blocks, start=1):
        key, schema = infer_legacy_section(block.title)
        if not key or key in sections:
            continue
        sections[key] = SectionDefinition(title=block.title, order=index, schema=schema)
    return sections


def _parse_time_field(data: Mapping[str, Any], key: str) -> Optional[datetime]:
    try:
        return parse_timestamp(data.get(key))
    except ValueError as e:
        raise TodoFormatError(f"invalid '{key}' timestamp: {e}") from e


def parse_todo(text: str, fallback_id: str) -> tuple[Todo, str]:
    """
    解析 todo 文件。

    Returns:
        (todo, 正文)

    Raises:
        TodoFormatError: 格式错误
    """
    data, body = split_document(text)

    sections = _parse_sections(data.get("sections"))
    if not sections:
        sections = infer_sections(body)

    tags = data.get("tags") or []
    if not isinstance(tags, list):
        tags = [tags]

    task = TodoBody.parse(body).task or str(data.get("task") or "") or fallback_id
    todo = Todo(
        id=str(data.get("todo_id") or fallback_id),
        task=task,
        started=_parse_time_field(data, "started") or now(),
        completed=_parse_time_field(data, "completed"),
        status=str(data.get("status") or "in_progress"),
        priority=str(data.get("priority") or "high"),
        type=str(data.get("type") or "feature"),
        parent_id=str(data.get("parent_id") or ""),
        current_test=str(data.get("current_test") or ""),
        tags=[str(tag) for tag in tags],
        sections=sections,
    )
    return todo, body


def todo_frontmatter(todo: Todo) -> dict[str, Any]:
    data: dict[str, Any] = {
        "todo_id": todo.id,
        "started": format_timestamp(todo.started),
        "completed": format_timestamp(todo.completed),
        "status": todo.status,
        "priority": todo.priority,
        "type": todo.type,
    }
    if todo.parent_id:
        data["parent_id"] = todo.parent_id
    if todo.current_test:
        data["current_test"] = todo.current_test
    data["tags"] = list(todo.tags)
    data["sections"] = {key: definition.to_frontmatter() for key, definition in ordered_sections(todo.sections)}
    return data


def render_todo(todo: Todo, body: str) -> str:
    """front-matter + 正文"""
    front = yaml.safe_dump(
        todo_frontmatter(todo),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )
    return f"{FENCE}\n{front}{FENCE}\n{body}"


def section_contents(todo: Todo, body: str) -> dict[str, str]:
    """section key -> 内容（正文缺少标题的 section 为空字符串）"""
    parsed = TodoBody.parse(body)
    contents = {}
    for key, definition in ordered_sections(todo.sections):
        block = parsed.find(definition.title)
        contents[key] = block.content if block is not None else ""
    return contents


def body_from_template(task: str, rendered: str) -> tuple[str, dict[str, SectionDefinition]]:
    """
    模板渲染结果 -> (正文, section 定义)

    模板中识别出的 "## " 标题即为 section；一个都没有时补上默认 section。
    """
    parsed = TodoBody.parse(rendered)
    parsed.set_task(task)
    sections = infer_sections(rendered)
    if not sections:
        sections = default_sections()
        parsed.arrange(sections)
    return parsed.render(), sections


# === ID ===

_ID_SEPARATORS = re.compile(r"[\s_/\\]+")
_ID_INVALID = re.compile(r"[^\w-]")
_ID_DASHES = re.compile(r"-{2,}")

MAX_ID_LENGTH = 50


def generate_base_id(task: str) -> str:
    """由标题生成文件名安全的 slug"""
    base = _ID_SEPARATORS.sub("-", task.strip().lower())
    base = _ID_INVALID.sub("", base)
    base = _ID_DASHES.sub("-", base).strip("-")
    if len(base) > MAX_ID_LENGTH:
        base = base[:MAX_ID_LENGTH]
        cut = base.rfind("-")
        if cut > 30:
            base = base[:cut]
        base = base.strip("-")
    return base or "todo"


__all__ = [
    "SectionBlock",
    "TodoBody",
    "TodoFormatError",
    "body_from_template",
    "generate_base_id",
    "infer_sections",
    "parse_todo",
    "render_todo",
    "section_contents",
    "split_document",
    "todo_frontmatter",
]
