"""
响应格式化 - 把操作结果转成返回给客户端的文本

JSON 响应统一缩进 2 格；文本响应附带面向助手的下一步提示。
"""

import json
from collections import Counter
from typing import Any, Iterable, Mapping, Optional, Sequence

from todo_server.core.hierarchy import TodoNode, build_hierarchy
from todo_server.core.patterns import PatternHint
from todo_server.core.section_schema import ordered_sections, parse_checklist
from todo_server.core.timeutil import format_rfc3339
from todo_server.models.todo import SearchResult, SectionSchema, Todo, TodoStats

STATUS_ORDER = ("in_progress", "completed", "blocked")

_STATUS_ICONS = {"completed": "[✓]", "in_progress": "[→]", "blocked": "[✗]"}
_PRIORITY_LABELS = {"high": "[HIGH]", "low": "[LOW]"}

BRANCH = "├── "
LAST_BRANCH = "└── "
VERTICAL = "│   "
SPACE = "    "


def json_text(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


# === 单行 ===


def status_icon(status: str) -> str:
    return _STATUS_ICONS.get(status, "[ ]")


def format_todo_line(todo: Todo, show_parent: bool = True, show_type: bool = True) -> str:
    """[状态] id: task [优先级] [类型] (parent: p)；medium 优先级省略"""
    line = f"{status_icon(todo.status)} {todo.id}: {todo.task}"
    priority = _PRIORITY_LABELS.get(todo.priority)
    if priority:
        line += f" {priority}"
    if show_type and todo.type:
        line += f" [{todo.type}]"
    if show_parent and todo.parent_id:
        line += f" (parent: {todo.parent_id})"
    return line


# === 创建 ===

_CREATE_GUIDANCE = {
    "bug": (
        "Starting a bug fix. To ensure a robust solution:\n"
        "- First reproduce the issue and document it in 'findings'\n"
        "- Write a failing test that captures the bug\n"
        "- Only then implement the fix\n\n"
        "Can you describe how to reproduce this bug?"
    ),
    "feature": (
        "Starting a new feature. To build effectively:\n"
        "- Define clear acceptance criteria in the 'tests' section\n"
        "- Document design decisions in 'findings' as you research\n"
        "- Break down into subtasks if scope seems large\n\n"
        "What specific aspect will you tackle first?"
    ),
    "refactor": (
        "Starting refactoring work. To maintain code quality:\n"
        "- Ensure comprehensive tests exist before changing structure\n"
        "- Document the current design problems in 'findings'\n"
        "- Make structural changes separate from behavioral changes\n\n"
        "What specific code smell or design issue are you addressing?"
    ),
    "research": (
        "Starting research task. To capture valuable insights:\n"
        "- Document all findings systematically as you explore\n"
        "- Include links and references for future access\n"
        "- Synthesize conclusions at the end\n\n"
        "What specific question are you trying to answer?"
    ),
}

_LINKED_PHASE_GUIDANCE = (
    "Phase created and linked to parent project. Consider:\n"
    "- Review parent todo for overall context and goals\n"
    "- Check if other phases might have dependencies\n"
    "- Update parent's checklist to track this phase\n\n"
    "Ready to begin implementation or need to create more phases first?"
)


def create_guidance(todo: Todo) -> str:
    if todo.type in ("phase", "subtask"):
        return _LINKED_PHASE_GUIDANCE
    if todo.type in _CREATE_GUIDANCE:
        return _CREATE_GUIDANCE[todo.type]
    return (
        f"Starting new {todo.type} task. To maximize effectiveness:\n"
        "- Define clear success criteria\n"
        "- Document progress in appropriate sections\n"
        "- Consider if this should be broken into smaller pieces\n\n"
        "What's the first concrete step to make progress?"
    )


def format_create(
    todo: Todo,
    path: str,
    hint: Optional[PatternHint] = None,
    similar: Sequence[str] = (),
    warning: str = "",
    from_template: str = "",
) -> str:
    message = f"Todo created successfully: {todo.id}"
    if from_template:
        message = f"Todo created from template '{from_template}' successfully: {todo.id}"
    response: dict[str, Any] = {"id": todo.id, "path": path, "message": message}
    if hint is not None:
        response["hint"] = {
            "pattern": hint.pattern,
            "suggestedType": hint.suggestedType,
            "message": hint.message,
        }
    if similar:
        response["similar_todos"] = list(similar)
    if warning:
        response["warning"] = warning
    return f"{json_text(response)}\n\n{create_guidance(todo)}"


def format_create_multi(parent: Todo, children: Sequence[Todo], failures: Sequence[str] = ()) -> str:
    lines = [
        f"Created multi-phase project: {parent.id}",
        "",
        "Project Structure:",
        f"[PARENT] {parent.id}: {parent.task} [{parent.priority.upper()}] [{parent.type}]",
    ]
    for index, child in enumerate(children):
        prefix = "└─" if index == len(children) - 1 else "├─"
        lines.append(f"  {prefix} {child.id}: {child.task} [{child.priority.upper()}] [{child.type}]")

    lines.append("")
    lines.append(f"Successfully created {len(children) + 1} todos (1 parent, {len(children)} children)")
    if failures:
        lines.append("")
        lines.append("Failed children:")
        lines.extend(f"- {failure}" for failure in failures)
    lines.append(json.dumps({"parent": parent.id, "children": [c.id for c in children], "created": len(children)}))
    lines.append("")
    lines.append("Multi-phase project initialized. To work effectively:")
    lines.append("- Start with the first phase while keeping the full scope in mind")
    lines.append("- Update parent's checklist as you complete each phase")
    lines.append("- Use todo_read to see progress across all phases")
    lines.append("")
    lines.append("Which phase should be tackled first based on dependencies and priority?")
    return "\n".join(lines)


# === 读取 ===


def _format_node(node: TodoNode, prefix: str, is_last: bool) -> list[str]:
    lines = [prefix + (LAST_BRANCH if is_last else BRANCH) + format_todo_line(node.todo, show_parent=False)]
    child_prefix = prefix + (SPACE if is_last else VERTICAL)
    for index, child in enumerate(node.children):
        lines.extend(_format_node(child, child_prefix, index == len(node.children) - 1))
    return lines


def format_hierarchy(roots: Sequence[TodoNode], orphans: Sequence[Todo]) -> list[str]:
    lines = ["HIERARCHICAL VIEW:", ""]
    for root in roots:
        lines.append(format_todo_line(root.todo, show_parent=False))
        for index, child in enumerate(root.children):
            lines.extend(_format_node(child, "", index == len(root.children) - 1))

    if orphans:
        lines.append("")
        lines.append("ORPHANED PHASES/SUBTASKS:")
        for orphan in orphans:
            line = format_todo_line(orphan)
            if orphan.parent_id:
                line = line.replace(f"(parent: {orphan.parent_id})", f"(parent: {orphan.parent_id} not found)", 1)
            lines.append(line)
    return lines


def _grouped_by_status(todos: Sequence[Todo]) -> list[str]:
    lines = ["GROUPED BY STATUS:"]
    groups: dict[str, list[Todo]] = {}
    for todo in todos:
        groups.setdefault(todo.status, []).append(todo)
    extra = sorted(status for status in groups if status not in STATUS_ORDER)
    for status in (*STATUS_ORDER, *extra):
        members = groups.get(status)
        if not members:
            continue
        lines.append("")
        lines.append(f"{status.upper()} ({len(members)}):")
        lines.extend(f"  {format_todo_line(todo)}" for todo in members)
    return lines


def _workload_guidance(todos: Sequence[Todo]) -> list[str]:
    counts = Counter(todo.status for todo in todos)
    in_progress = counts["in_progress"]
    blocked = [todo.id for todo in todos if todo.status == "blocked"]

    workload = f"Current workload: {in_progress} active tasks"
    if blocked:
        workload += f", {len(blocked)} blocked"
    lines = [workload, "", "Workflow suggestions:"]
    if blocked:
        lines.append(f"- Address blocked items first to unblock progress: {', '.join(blocked)}")
    if in_progress > 3:
        lines.append("- Consider completing existing work before starting new tasks (high WIP detected)")
        oldest = min((todo for todo in todos if todo.status == "in_progress"), key=lambda todo: todo.started)
        lines.append(f"- Focus on '{oldest.id}' - it has been in progress the longest")
    elif in_progress == 0 and todos:
        lines.append("- No tasks currently in progress. Choose the highest priority item to start")
    high = sum(1 for todo in todos if todo.priority == "high" and todo.status == "in_progress")
    if high > 1:
        lines.append("- Multiple high-priority items in progress. Consider if they're all truly urgent")
    lines.append("")
    lines.append("Which task requires your immediate attention?")
    return lines


def format_summary(todos: Sequence[Todo]) -> str:
    """状态分组视图；存在父子关系时前面加层级树"""
    if not todos:
        return "No todos found"

    lines: list[str] = []
    if any(todo.parent_id for todo in todos):
        roots, orphans = build_hierarchy(todos)
        lines.extend(format_hierarchy(roots, orphans))
        lines.append("")
    lines.extend(_grouped_by_status(todos))
    lines.append("")
    lines.extend(_workload_guidance(todos))
    return "\n".join(lines)


def format_list(todos: Sequence[Todo]) -> str:
    if not todos:
        return "No todos found"
    return "\n".join(f"- {todo.id}: {todo.task}" for todo in todos)


_SINGLE_GUIDANCE = {
    "in_progress": (
        "Task is in progress. To maintain momentum:\n"
        "- Focus on the current test or next checklist item\n"
        "- Document findings as you work\n"
        "- Avoid context switching until a logical stopping point\n\n"
        "What specific progress can you make on this task right now?"
    ),
    "blocked": (
        "Task is blocked. To resolve efficiently:\n"
        "- Document the specific blocker in the findings section\n"
        "- Identify who can help or what information is needed\n"
        "- Consider if there's a workaround or alternative approach\n\n"
        "Can you describe the blocker in detail?"
    ),
}


def format_single_summary(todo: Todo) -> str:
    guidance = _SINGLE_GUIDANCE.get(
        todo.status,
        "Task ready to begin. To start effectively:\n"
        "- Review the task description and any existing notes\n"
        "- Add acceptance criteria or break down into concrete steps\n\n"
        "What's the first concrete action to move this forward?",
    )
    return f"{format_todo_line(todo)}\n\n{guidance}"


def todo_metadata(todo: Todo) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": todo.id,
        "task": todo.task,
        "status": todo.status,
        "priority": todo.priority,
        "type": todo.type,
        "started": format_rfc3339(todo.started),
        "tags": list(todo.tags),
    }
    if todo.completed is not None:
        data["completed"] = format_rfc3339(todo.completed)
    if todo.parent_id:
        data["parent_id"] = todo.parent_id
    if todo.current_test:
        data["current_test"] = todo.current_test
    return data


def todo_full_data(todo: Todo, contents: Mapping[str, str]) -> dict[str, Any]:
    """元数据 + section 内容（清单 section 解析为清单项）"""
    data = todo_metadata(todo)
    sections: dict[str, Any] = {}
    for key, definition in ordered_sections(todo.sections):
        content = contents.get(key, "")
        if definition.schema_ == SectionSchema.CHECKLIST:
            sections[key] = [item.model_dump(mode="json") for item in parse_checklist(content)]
        else:
            sections[key] = content.strip()
    data["sections"] = sections
    return data


def format_full(todo: Todo, contents: Mapping[str, str]) -> str:
    return json_text(todo_full_data(todo, contents))


def format_full_many(entries: Iterable[tuple[Todo, Mapping[str, str]]]) -> str:
    return json_text([todo_full_data(todo, contents) for todo, contents in entries])


# === 搜索 / 归档 / 链接 / 统计 / 清理 ===


def format_search(results: Sequence[SearchResult]) -> str:
    if not results:
        return "No matching todos found"
    entries = [
        f"• {result.id} (relevance: {result.score * 100:.0f}%)\n  {result.snippet or 'No content preview available'}"
        for result in results
    ]
    return f"Found {len(results)} matching todos:\n" + "\n\n".join(entries)


def format_archive(todo_id: str, archive_path: str) -> str:
    return json_text(
        {
            "id": todo_id,
            "archive_path": archive_path,
            "message": f"Todo '{todo_id}' archived successfully",
        }
    )


def format_link(parent_id: str, child_id: str, link_type: str) -> str:
    return json_text(
        {
            "parent_id": parent_id,
            "child_id": child_id,
            "link_type": link_type,
            "message": f"Todos linked successfully: {parent_id} -> {child_id}",
        }
    )


def format_stats(stats: TodoStats) -> str:
    return json_text(stats.model_dump(mode="json"))


def format_clean_archived(count: int, days: int) -> str:
    return f"Archived {count} todos older than {days} days"


def format_duplicates(groups: Sequence[Sequence[str]]) -> str:
    if not groups:
        return "No duplicate todos found"
    text = f"Found {len(groups)} sets of duplicates:\n"
    for group in groups:
        text += f"\n- {group[0]}\n"
        for duplicate in group[1:]:
            text += f"  - {duplicate}\n"
    return text


def format_template_list(names: Sequence[str]) -> str:
    if not names:
        return "No templates available"
    return "Available templates:\n" + "".join(f"- {name}\n" for name in names)


# === Section ===


def format_sections(todo: Todo, contents: Mapping[str, str], missing_required: Sequence[str] = ()) -> str:
    sections: dict[str, Any] = {}
    for key, definition in ordered_sections(todo.sections):
        content = contents.get(key, "").strip()
        sections[key] = {
            "title": definition.title,
            "schema": definition.schema_.value,
            "required": definition.required,
            "order": definition.order,
            "custom": definition.custom,
            "hasContent": bool(content),
            "wordCount": len(content.split()),
        }
    response: dict[str, Any] = {"id": todo.id, "task": todo.task, "sections": sections}
    if missing_required:
        response["missing_required"] = list(missing_required)
    return json_text(response)


def format_add_section(key: str, todo_id: str) -> str:
    return f"Section '{key}' added successfully to todo '{todo_id}'"


def format_reorder(todo_id: str) -> str:
    return f"Sections reordered successfully for todo '{todo_id}'"


# === 更新回执 ===

_SECTION_GUIDANCE = {
    "findings": (
        "Research captured. To maximize value from these findings:\n"
        "- Synthesize key insights into actionable conclusions\n"
        "- Consider how these findings affect your implementation approach\n\n"
        "What key insight from your research will most impact the implementation?"
    ),
    "tests": (
        "Test cases documented. Following TDD practices:\n"
        "- Start with the simplest test that will fail\n"
        "- Write just enough code to make it pass\n"
        "- Refactor only after achieving green status\n\n"
        "Which test case should be implemented first to drive the design?"
    ),
    "scratchpad": (
        "Notes captured. Remember to:\n"
        "- Transfer important information to appropriate sections\n"
        "- Convert rough ideas into actionable items\n\n"
        "Should any of these notes be formalized into findings or test cases?"
    ),
}

_TOGGLE_GUIDANCE = (
    "Checklist item toggled. To maintain progress:\n"
    "- Ensure completed items are truly done before checking them off\n"
    "- Move to the next unchecked item systematically\n\n"
    "What's the next checklist item to tackle?"
)


def format_section_update(todo_id: str, section: str, operation: str, metrics: Mapping[str, int]) -> str:
    lines = [f"Todo '{todo_id}' {section} section updated ({operation})"]
    if metrics:
        lines.append("Section metrics: " + ", ".join(f"{key}={value}" for key, value in metrics.items()))
    lines.append("")
    if operation == "toggle":
        lines.append(_TOGGLE_GUIDANCE)
    else:
        lines.append(_SECTION_GUIDANCE.get(section, "Section updated. Continue documenting your progress systematically."))
    return "\n".join(lines)


def format_metadata_update(todo_id: str, metadata: Mapping[str, str], note: str = "") -> str:
    lines = [f"Todo '{todo_id}' updated successfully"]
    lines.append("Updated: " + ", ".join(f"{key}: {value}" for key, value in metadata.items()))
    if note:
        lines.append(note)
    lines.append("")

    if metadata.get("status") == "completed":
        lines.append(
            "Task marked as completed. Please analyze what you've accomplished and determine "
            "the most effective next action.\n\n"
            "What related task could benefit from immediate attention while context is fresh?"
        )
    elif "priority" in metadata:
        lines.append(
            f"Priority adjusted to {metadata['priority']}. Review your current task list to ensure "
            "you're working on the highest priority items.\n\n"
            "Does this priority change require immediate task switching?"
        )
    elif metadata.get("status") == "blocked":
        lines.append(
            "Task marked as blocked. Document the specific blocker in the findings section "
            "and identify who can help unblock it.\n\n"
            "What is the specific blocker preventing progress?"
        )
    elif "current_test" in metadata:
        lines.append(
            f"Current test focus: {metadata['current_test']}\n"
            "Keep the test failing before implementation and make minimal changes to turn it green.\n\n"
            "Is the test currently in red (failing) state?"
        )
    else:
        lines.append("Metadata updated. Continue with your current workflow.")
    return "\n".join(lines)


def format_auto_archive(todo_id: str, archive_path: str) -> str:
    return (
        f"Todo '{todo_id}' has been completed and archived to {archive_path}.\n\n"
        "Task completed successfully. Take a moment to reflect on this completion and plan your next steps.\n\n"
        "Consider the following:\n"
        "- What specific knowledge or insights were gained from completing this task?\n"
        "- Are there any immediate follow-up tasks that would benefit from your current context?\n"
        "- Should any learnings be documented to help future similar work?\n\n"
        "Based on your reflection, what is the single most valuable action to take next?"
    )


__all__ = [
    "format_add_section",
    "format_archive",
    "format_auto_archive",
    "format_clean_archived",
    "format_create",
    "format_create_multi",
    "format_duplicates",
    "format_full",
    "format_full_many",
    "format_hierarchy",
    "format_link",
    "format_list",
    "format_metadata_update",
    "format_reorder",
    "format_search",
    "format_section_update",
    "format_sections",
    "format_single_summary",
    "format_stats",
    "format_summary",
    "format_template_list",
    "format_todo_line",
    "json_text",
    "todo_full_data",
    "todo_metadata",
]
