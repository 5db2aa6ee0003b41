"""
Section Schema - section 内容校验

每种 schema 对应一个纯函数校验器（无 I/O）：
- freeform / research / strategy / results: 任意文本
- checklist: 每个非空行必须是 "- [ ] text" / "- [x] text" / "- [>] text" / "- [-] text" / "- [~] text"
- test_cases: 至少包含一个 ``` 代码块

同时提供清单解析、三态切换、section 排序与必填校验。
"""

import re
from typing import Callable, Mapping, Optional, Union

from todo_server.core.errors import ValidationError
from todo_server.models.todo import (
    ChecklistItem,
    ChecklistStatus,
    SectionDefinition,
    SectionSchema,
)

# 默认 section：(key, title, schema)，顺序即 order 1..8
DEFAULT_SECTIONS: tuple[tuple[str, str, SectionSchema], ...] = (
    ("findings", "Findings & Research", SectionSchema.RESEARCH),
    ("web_searches", "Web Searches", SectionSchema.RESEARCH),
    ("test_strategy", "Test Strategy", SectionSchema.STRATEGY),
    ("test_list", "Test List", SectionSchema.CHECKLIST),
    ("tests", "Test Cases", SectionSchema.TEST_CASES),
    ("test_results", "Test Results Log", SectionSchema.RESULTS),
    ("checklist", "Checklist", SectionSchema.CHECKLIST),
    ("scratchpad", "Working Scratchpad", SectionSchema.FREEFORM),
)

# 旧文件（front-matter 无 sections）按标题推断 key
LEGACY_TITLE_KEYS: dict[str, tuple[str, SectionSchema]] = {
    title: (key, schema) for key, title, schema in DEFAULT_SECTIONS
}
LEGACY_TITLE_KEYS["Findings"] = ("findings", SectionSchema.RESEARCH)
LEGACY_TITLE_KEYS["Maintainability Analysis"] = ("maintainability", SectionSchema.FREEFORM)

CHECKBOX_PREFIXES = ("- [ ] ", "- [x] ", "- [X] ", "- [>] ", "- [-] ", "- [~] ")

_CHECKBOX_RE = re.compile(r"^(\s*)- \[([ xX>\-~])\] (.*)$")

_MARK_STATUS = {
    " ": ChecklistStatus.PENDING,
    "x": ChecklistStatus.COMPLETED,
    "X": ChecklistStatus.COMPLETED,
    ">": ChecklistStatus.IN_PROGRESS,
    "-": ChecklistStatus.IN_PROGRESS,
    "~": ChecklistStatus.IN_PROGRESS,
}

# pending → in_progress → completed → pending
_NEXT_MARK = {" ": ">", ">": "x", "-": "x", "~": "x", "x": " ", "X": " "}


def default_sections() -> dict[str, SectionDefinition]:
    """新 todo 的默认 section 定义"""
    return {
        key: SectionDefinition(title=title, order=index, schema=schema)
        for index, (key, title, schema) in enumerate(DEFAULT_SECTIONS, start=1)
    }


def normalize_schema(schema: Union[str, SectionSchema]) -> SectionSchema:
    """字符串转 SectionSchema，未知值抛 ValidationError"""
    if isinstance(schema, SectionSchema):
        return schema
    try:
        return SectionSchema(str(schema))
    except ValueError:
        raise ValidationError("schema", f"unknown schema: {schema}") from None


# === 校验器 ===


def _validate_any(content: str) -> None:
    return None


def _validate_checklist(content: str) -> None:
    for lineno, line in enumerate(content.split("\n"), start=1):
        stripped = line.strip()
        if not stripped:
            continue
        if any(stripped.startswith(prefix) for prefix in CHECKBOX_PREFIXES):
            continue
        if stripped.startswith("- [") or stripped.startswith("- []"):
            raise ValidationError("content", f"invalid checkbox syntax at line {lineno}: {stripped}")
        raise ValidationError("content", f"non-checklist content found at line {lineno}: {stripped}")


def _validate_test_cases(content: str) -> None:
    if "```" not in content:
        raise ValidationError("content", "no code blocks found")


_VALIDATORS: dict[SectionSchema, Callable[[str], None]] = {
    SectionSchema.FREEFORM: _validate_any,
    SectionSchema.CHECKLIST: _validate_checklist,
    SectionSchema.TEST_CASES: _validate_test_cases,
    SectionSchema.RESEARCH: _validate_any,
    SectionSchema.STRATEGY: _validate_any,
    SectionSchema.RESULTS: _validate_any,
}


def validate_content(schema: Union[str, SectionSchema], content: str) -> None:
    """
    按 schema 校验内容。

    Raises:
        ValidationError: 未知 schema 或内容不符合规则
    """
    _VALIDATORS[normalize_schema(schema)](content)


def schema_metrics(schema: Union[str, SectionSchema], content: str) -> dict[str, int]:
    """各 schema 的内容度量（用于更新回执）"""
    schema = normalize_schema(schema)
    if schema == SectionSchema.CHECKLIST:
        items = parse_checklist(content)
        counts = {status.value: 0 for status in ChecklistStatus}
        for item in items:
            counts[item.status.value] += 1
        return {
            "completed": counts["completed"],
            "in_progress": counts["in_progress"],
            "pending": counts["pending"],
            "total": len(items),
        }
    if schema == SectionSchema.TEST_CASES:
        return {"code_blocks": content.count("```") // 2}
    if schema == SectionSchema.RESULTS:
        entries = sum(1 for line in content.split("\n") if line.strip().startswith("["))
        return {"entries": entries}
    if schema == SectionSchema.STRATEGY:
        return {"sections": content.count("###")}
    if schema == SectionSchema.RESEARCH:
        return {"word_count": len(content.split())}
    return {"length": len(content)}


# === 清单 ===


def parse_checklist(content: str) -> list[ChecklistItem]:
    """解析清单项；空文本的项跳过"""
    items = []
    for line in content.split("\n"):
        match = _CHECKBOX_RE.match(line.rstrip())
        if not match:
            continue
        text = match.group(3).strip()
        if not text:
            continue
        items.append(ChecklistItem(text=text, status=_MARK_STATUS[match.group(2)]))
    return items


def toggle_checklist_item(content: str, item_text: str) -> Optional[str]:
    """
    切换第一个文本等于 item_text 的清单项。

    Returns:
        切换后的内容；找不到该项时返回 None
    """
    target = item_text.strip()
    lines = content.split("\n")
    for index, line in enumerate(lines):
        match = _CHECKBOX_RE.match(line.rstrip())
        if not match or match.group(3).strip() != target:
            continue
        indent, mark, text = match.groups()
        lines[index] = f"{indent}- [{_NEXT_MARK[mark]}] {text.strip()}"
        return "\n".join(lines)
    return None


# === Section 排序与必填 ===


def ordered_sections(sections: Mapping[str, SectionDefinition]) -> list[tuple[str, SectionDefinition]]:
    """按 (order, key) 排序"""
    return sorted(sections.items(), key=lambda kv: (kv[1].order, kv[0]))


def validate_required_sections(
    sections: Mapping[str, SectionDefinition],
    contents: Mapping[str, str],
) -> list[str]:
    """返回缺失内容的必填 section 列表（为空表示通过）"""
    missing = []
    for key, definition in ordered_sections(sections):
        if definition.required and not contents.get(key, "").strip():
            missing.append(f"missing required section: {key}")
    return missing


def normalize_section_key(title: str) -> str:
    """由标题生成 section key：小写、空格转 _、& 转 and、去标点"""
    key = title.strip().lower().replace("&", "and")
    key = re.sub(r"[\s/\\\-]+", "_", key)
    key = re.sub(r"[^a-z0-9_]", "", key)
    key = re.sub(r"_+", "_", key)
    return key.strip("_")


def infer_legacy_section(title: str) -> tuple[str, SectionSchema]:
    """旧文件标题到 (key, schema) 的映射"""
    if title in LEGACY_TITLE_KEYS:
        return LEGACY_TITLE_KEYS[title]
    return normalize_section_key(title), SectionSchema.FREEFORM


__all__ = [
    "CHECKBOX_PREFIXES",
    "DEFAULT_SECTIONS",
    "default_sections",
    "infer_legacy_section",
    "normalize_schema",
    "normalize_section_key",
    "ordered_sections",
    "parse_checklist",
    "schema_metrics",
    "toggle_checklist_item",
    "validate_content",
    "validate_required_sections",
]
