"""
工具分发器端到端测试

直接调用 TodoDispatcher.handle（与 MCP 运行时调用的入口相同），
验证参数提取、manager 选择、操作执行与响应文本。
"""

import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest

from todo_server.config import TodoServerConfig
from todo_server.core.context import RequestContext
from todo_server.services.manager_factory import ManagerFactory
from todo_server.tests.conftest import write_todo_file
from todo_server.tools.dispatcher import TodoDispatcher


def response_json(text: str) -> dict:
    """创建类响应：JSON 在第一个空行之前"""
    return json.loads(text.split("\n\n")[0])


@pytest.fixture
def base_store(factory):
    return factory.base_managers().store


def create(dispatcher, task: str, **extra) -> str:
    result = dispatcher.handle("todo_create", {"task": task, **extra})
    assert not result.is_error, result.text
    return response_json(result.text)["id"]


class TestScenarios:
    """端到端场景"""

    def test_phase_without_parent_fails(self, dispatcher, project_dir):
        result = dispatcher.handle("todo_create", {"task": "Phase 1: Plan", "type": "phase"})

        assert result.is_error
        assert "parent_id" in result.text
        assert list(project_dir.rglob("*.md")) == []

    def test_multi_phase_tree(self, dispatcher, base_store):
        result = dispatcher.handle(
            "todo_create_multi",
            {
                "parent": {"task": "Build API", "type": "multi-phase", "priority": "high"},
                "children": [
                    {"task": "Phase 1: Design", "type": "phase", "priority": "high"},
                    {"task": "Phase 2: Implement", "type": "phase", "priority": "high"},
                    {"task": "Phase 3: Test", "type": "phase", "priority": "medium"},
                ],
            },
        )
        assert not result.is_error, result.text
        assert "Successfully created 4 todos (1 parent, 3 children)" in result.text

        files = sorted(path.stem for path in base_store.get_base_path().glob("*.md"))
        assert files == ["build-api", "phase-1-design", "phase-2-implement", "phase-3-test"]
        for child_id in files[1:]:
            assert base_store.read(child_id).parent_id == "build-api"

        summary = dispatcher.handle("todo_read", {"format": "summary"}).text
        assert "HIERARCHICAL VIEW" in summary
        assert "├── " in summary
        assert "└── " in summary
        assert "└── [→] phase-3-test: Phase 3: Test [phase]" in summary

    def test_checklist_toggle_cycle(self, dispatcher, base_store):
        todo_id = create(dispatcher, "Checklist work")
        dispatcher.handle(
            "todo_update", {"id": todo_id, "section": "checklist", "operation": "replace", "content": "- [ ] A"}
        )
        path = base_store.todo_path(todo_id)

        for mark in ("- [>] A", "- [x] A", "- [ ] A"):
            result = dispatcher.handle(
                "todo_update", {"id": todo_id, "section": "checklist", "operation": "toggle", "content": "A"}
            )
            assert not result.is_error, result.text
            assert mark in path.read_text(encoding="utf-8")

        assert "Checklist item toggled" in result.text
        assert "Section metrics: completed=0, in_progress=0, pending=1, total=1" in result.text

    def test_invalid_checklist_rejected(self, dispatcher, base_store):
        todo_id = create(dispatcher, "Checklist work")
        path = base_store.todo_path(todo_id)
        before = path.read_bytes()

        result = dispatcher.handle(
            "todo_update",
            {"id": todo_id, "section": "checklist", "operation": "replace", "content": "- [] Missing space"},
        )

        assert result.is_error
        assert "invalid checkbox syntax" in result.text
        assert path.read_bytes() == before

    def test_concurrent_creates_share_one_manager_set(self, dispatcher, factory, tmp_path):
        shared = tmp_path / "shared"

        def create_one(number: int):
            return dispatcher.handle("todo_create", {"task": f"Task {number}"}, working_directory=str(shared))

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(create_one, range(100)))

        assert [r.text for r in results if r.is_error] == []
        assert factory.get_active_count() == 1
        assert factory.working_directories() == [str(shared)]
        assert len(list((shared / ".claude" / "todos").glob("*.md"))) == 100

    def test_auto_archive_on_completion(self, dispatcher, project_dir):
        write_todo_file(
            project_dir / ".claude" / "todos",
            "X",
            "todo_id: X\nstarted: 2025-01-19 09:00:00\nstatus: in_progress\npriority: high\ntype: feature",
            "# Task: Ship it\n\n## Checklist\n\n- [x] done\n",
        )

        result = dispatcher.handle("todo_update", {"id": "X", "metadata": {"status": "completed"}})

        assert not result.is_error, result.text
        assert ".claude/archive/2025/01/19/X.md" in result.text
        assert (project_dir / ".claude" / "archive" / "2025" / "01" / "19" / "X.md").exists()

        read = dispatcher.handle("todo_read", {"id": "X"})
        assert read.is_error
        assert read.text == "Todo not found: X"


class TestCreate:
    """测试 todo_create / todo_template"""

    def test_response_shape(self, dispatcher):
        result = dispatcher.handle("todo_create", {"task": "Build API"})
        data = response_json(result.text)
        assert data == {
            "id": "build-api",
            "path": ".claude/todos/build-api.md",
            "message": "Todo created successfully: build-api",
        }
        assert "Starting a new feature" in result.text

    def test_pattern_hint_and_similar(self, dispatcher):
        create(dispatcher, "Phase 1: Plan")
        data = response_json(dispatcher.handle("todo_create", {"task": "Phase 2: Build"}).text)
        assert data["hint"]["pattern"] == "phase"
        assert data["hint"]["suggestedType"] == "phase"
        assert data["similar_todos"] == ["phase-1-plan"]

    def test_phase_with_parent(self, dispatcher, base_store):
        parent_id = create(dispatcher, "Project", type="multi-phase")
        result = dispatcher.handle("todo_create", {"task": "Phase 1", "type": "phase", "parent_id": parent_id})
        assert not result.is_error, result.text
        assert "Phase created and linked to parent project" in result.text
        assert base_store.read("phase-1").parent_id == "project"

    def test_missing_parent(self, dispatcher, base_store):
        result = dispatcher.handle("todo_create", {"task": "Phase 1", "type": "phase", "parent_id": "ghost"})
        assert result.is_error
        assert result.text == "Todo not found: ghost"
        assert base_store.list_todos() == []

    def test_prd_falls_back_with_warning(self, dispatcher, base_store):
        data = response_json(dispatcher.handle("todo_create", {"task": "Checkout PRD", "type": "prd"}).text)
        assert "prd template could not be applied" in data["warning"]
        assert "findings" in base_store.read(data["id"]).sections

    def test_prd_uses_template(self, dispatcher, factory, base_store):
        factory.base_managers().templates.install_builtin_templates()
        data = response_json(dispatcher.handle("todo_create", {"task": "Checkout PRD", "type": "prd"}).text)
        assert "warning" not in data
        todo = base_store.read(data["id"])
        assert todo.type == "prd"
        assert "problem_statement" in todo.sections

    def test_template_tool(self, dispatcher, factory, base_store):
        assert dispatcher.handle("todo_template", {}).text == "No templates available"

        factory.base_managers().templates.install_builtin_templates()
        listing = dispatcher.handle("todo_template", {}).text
        assert listing == "Available templates:\n- bug\n- feature\n- prd\n- research\n"

        result = dispatcher.handle(
            "todo_template", {"template": "bug", "task": "Crash", "variables": {"severity": "high"}}
        )
        assert response_json(result.text)["message"] == "Todo created from template 'bug' successfully: crash"
        _, contents = base_store.read_sections("crash")
        assert contents["findings"] == "Severity: high"

        missing = dispatcher.handle("todo_template", {"template": "nope", "task": "x"})
        assert missing.is_error
        assert missing.text == "Template not found: nope"

    def test_unknown_template_on_create(self, dispatcher):
        result = dispatcher.handle("todo_create", {"task": "x", "template": "nope"})
        assert result.is_error
        assert result.text == "Template not found: nope"


class TestRead:
    """测试 todo_read"""

    def test_empty(self, dispatcher):
        assert dispatcher.handle("todo_read", {}).text == "No todos found"
        assert dispatcher.handle("todo_read", {"format": "list"}).text == "No todos found"

    def test_single_formats(self, dispatcher):
        todo_id = create(dispatcher, "Build API")
        dispatcher.handle(
            "todo_update", {"id": todo_id, "section": "checklist", "operation": "replace", "content": "- [x] one"}
        )

        summary = dispatcher.handle("todo_read", {"id": todo_id}).text
        assert summary.startswith("[→] build-api: Build API [HIGH] [feature]")

        assert dispatcher.handle("todo_read", {"id": todo_id, "format": "list"}).text == "- build-api: Build API"

        full = json.loads(dispatcher.handle("todo_read", {"id": todo_id, "format": "full"}).text)
        assert full["id"] == "build-api"
        assert full["status"] == "in_progress"
        assert full["sections"]["checklist"] == [{"text": "one", "status": "completed"}]
        assert full["sections"]["findings"] == ""

    def test_list_filters(self, dispatcher):
        create(dispatcher, "Alpha", priority="low")
        create(dispatcher, "Beta")
        result = dispatcher.handle("todo_read", {"format": "list", "filter": {"priority": "low"}})
        assert result.text == "- alpha: Alpha"

    def test_summary_groups(self, dispatcher):
        create(dispatcher, "Alpha")
        beta = create(dispatcher, "Beta")
        dispatcher.handle("todo_update", {"id": beta, "metadata": {"status": "blocked"}})

        summary = dispatcher.handle("todo_read", {}).text
        assert "HIERARCHICAL VIEW" not in summary
        assert "IN_PROGRESS (1):" in summary
        assert "BLOCKED (1):" in summary
        assert "Address blocked items first to unblock progress: beta" in summary

    def test_full_listing_includes_archived(self, dispatcher):
        create(dispatcher, "Active")
        done = create(dispatcher, "Done")
        dispatcher.handle("todo_archive", {"id": done})

        entries = json.loads(dispatcher.handle("todo_read", {"format": "full", "include_archived": True}).text)
        assert sorted(entry["id"] for entry in entries) == ["active", "done"]

    def test_missing(self, dispatcher):
        result = dispatcher.handle("todo_read", {"id": "nope"})
        assert result.is_error
        assert result.text == "Todo not found: nope"


class TestUpdate:
    """测试 todo_update"""

    def test_section_append_receipt(self, dispatcher, base_store):
        todo_id = create(dispatcher, "Research")
        result = dispatcher.handle("todo_update", {"id": todo_id, "section": "findings", "content": "two words"})
        assert result.text.startswith("Todo 'research' findings section updated (append)\nSection metrics: word_count=2")
        _, contents = base_store.read_sections(todo_id)
        assert contents["findings"] == "two words"

    def test_unknown_section(self, dispatcher):
        todo_id = create(dispatcher, "Research")
        result = dispatcher.handle("todo_update", {"id": todo_id, "section": "nope", "content": "x"})
        assert result.is_error
        assert result.text == "Invalid parameter: section (section 'nope' does not exist in this todo)"

    def test_test_cases_require_code_block(self, dispatcher):
        todo_id = create(dispatcher, "TDD")
        result = dispatcher.handle("todo_update", {"id": todo_id, "section": "tests", "content": "prose"})
        assert result.is_error
        assert result.text == "Invalid parameter: content (no code blocks found)"

    def test_toggle_on_freeform_rejected(self, dispatcher):
        todo_id = create(dispatcher, "Notes")
        result = dispatcher.handle(
            "todo_update", {"id": todo_id, "section": "scratchpad", "operation": "toggle", "content": "x"}
        )
        assert result.is_error
        assert "toggle operation only supported for checklist sections" in result.text

    def test_metadata_and_section_together(self, dispatcher, base_store):
        todo_id = create(dispatcher, "Both")
        result = dispatcher.handle(
            "todo_update",
            {"id": todo_id, "section": "scratchpad", "content": "note", "metadata": {"priority": "low"}},
        )
        assert "scratchpad section updated" in result.text
        assert "Updated: priority: low" in result.text
        assert "Priority adjusted to low" in result.text
        todo, contents = base_store.read_sections(todo_id)
        assert todo.priority == "low"
        assert contents["scratchpad"] == "note"

    def test_completion_blocked_by_children(self, dispatcher, base_store):
        parent_id = create(dispatcher, "Parent")
        create(dispatcher, "Phase 1", type="phase", parent_id=parent_id)

        result = dispatcher.handle("todo_update", {"id": parent_id, "metadata": {"status": "completed"}})

        assert not result.is_error, result.text
        assert "Todo remains active: todo 'parent' has 1 active children" in result.text
        assert base_store.read(parent_id).status == "completed"

    def test_auto_archive_disabled(self, factory, project_dir, base_store):
        dispatcher = TodoDispatcher(factory, TodoServerConfig(working_dir=project_dir, auto_archive=False))
        todo_id = create(dispatcher, "Keep me")
        result = dispatcher.handle("todo_update", {"id": todo_id, "metadata": {"status": "completed"}})
        assert "Task marked as completed" in result.text
        assert base_store.read(todo_id).completed is not None

    def test_completed_with_empty_timestamp_keeps_stamp(self, factory, project_dir, base_store):
        dispatcher = TodoDispatcher(factory, TodoServerConfig(working_dir=project_dir, auto_archive=False))
        todo_id = create(dispatcher, "Done")
        result = dispatcher.handle("todo_update", {"id": todo_id, "metadata": {"status": "completed", "completed": ""}})
        assert not result.is_error, result.text
        todo = base_store.read(todo_id)
        assert todo.status == "completed"
        assert todo.completed is not None

    def test_metadata_parent_must_exist(self, dispatcher, base_store):
        todo_id = create(dispatcher, "Alpha")
        result = dispatcher.handle("todo_update", {"id": todo_id, "metadata": {"parent_id": "ghost"}})
        assert result.is_error
        assert result.text == "Todo not found: ghost"
        assert base_store.read(todo_id).parent_id == ""

    def test_metadata_self_parent_rejected(self, dispatcher, base_store):
        todo_id = create(dispatcher, "Alpha")
        result = dispatcher.handle("todo_update", {"id": todo_id, "metadata": {"parent_id": todo_id}})
        assert result.is_error
        assert result.text == "Invalid parameter: metadata.parent_id (cannot link a todo to itself)"

        archived = dispatcher.handle("todo_archive", {"id": todo_id, "cascade": True})
        assert not archived.is_error, archived.text

    def test_metadata_parent_cycle_rejected(self, dispatcher, base_store):
        alpha = create(dispatcher, "Alpha")
        beta = create(dispatcher, "Beta")
        dispatcher.handle("todo_link", {"parent_id": alpha, "child_id": beta})

        result = dispatcher.handle("todo_update", {"id": alpha, "metadata": {"parent_id": beta}})
        assert result.is_error
        assert "would create a cycle" in result.text
        assert base_store.read(alpha).parent_id == ""

    def test_metadata_parent_links_existing_todo(self, dispatcher, base_store):
        parent_id = create(dispatcher, "Parent")
        child_id = create(dispatcher, "Child")
        result = dispatcher.handle("todo_update", {"id": child_id, "metadata": {"parent_id": parent_id}})
        assert not result.is_error, result.text
        assert base_store.read(child_id).parent_id == parent_id


class TestSearchArchiveLink:
    """测试搜索、归档、链接"""

    def test_search_and_unindex_on_archive(self, dispatcher):
        todo_id = create(dispatcher, "Implement authentication")
        dispatcher.handle("todo_update", {"id": todo_id, "section": "findings", "content": "OAuth tokens"})

        found = dispatcher.handle("todo_search", {"query": "oauth"}).text
        assert found.startswith("Found 1 matching todos:\n• implement-authentication (relevance: 100%)")

        dispatcher.handle("todo_archive", {"id": todo_id})
        assert dispatcher.handle("todo_search", {"query": "oauth"}).text == "No matching todos found"

    def test_index_failure_does_not_fail_operations(self, dispatcher, factory, project_dir):
        create(dispatcher, "Alpha")
        assert factory.base_managers().index is not None
        db_path = project_dir / ".claude" / "index" / "todos.db"
        db_path.unlink()
        db_path.mkdir()

        result = dispatcher.handle("todo_create", {"task": "Gamma"})
        assert not result.is_error, result.text
        assert response_json(result.text)["id"] == "gamma"

        updated = dispatcher.handle("todo_update", {"id": "gamma", "section": "scratchpad", "content": "note"})
        assert not updated.is_error, updated.text
        archived = dispatcher.handle("todo_archive", {"id": "gamma"})
        assert not archived.is_error, archived.text
        assert not (project_dir / ".claude" / "todos" / "gamma-2.md").exists()

    def test_search_unavailable(self, config):
        def broken(paths, store):
            raise RuntimeError("no sqlite")

        manager_factory = ManagerFactory(config, index_factory=broken)
        try:
            result = TodoDispatcher(manager_factory, config).handle("todo_search", {"query": "x"})
            assert result.is_error
            assert result.text == "search failed: search not available"
        finally:
            manager_factory.close()

    def test_archive_response_and_conflict(self, dispatcher):
        parent_id = create(dispatcher, "Parent")
        create(dispatcher, "Phase 1", type="phase", parent_id=parent_id)

        conflict = dispatcher.handle("todo_archive", {"id": parent_id})
        assert conflict.is_error
        assert conflict.text == "Resource conflict: todo 'parent' has 1 active children"

        result = dispatcher.handle("todo_archive", {"id": parent_id, "cascade": True, "quarter": "2025-Q1"})
        data = json.loads(result.text)
        assert data["archive_path"] == ".claude/archive/2025-Q1/parent.md"
        assert dispatcher.handle("todo_read", {}).text == "No todos found"

        again = dispatcher.handle("todo_archive", {"id": parent_id})
        assert again.text == "Todo not found: parent"

    def test_link(self, dispatcher, base_store):
        create(dispatcher, "Parent")
        create(dispatcher, "Child")
        result = dispatcher.handle("todo_link", {"parent_id": "parent", "child_id": "child"})
        assert json.loads(result.text)["message"] == "Todos linked successfully: parent -> child"
        assert base_store.read("child").parent_id == "parent"

        self_link = dispatcher.handle("todo_link", {"parent_id": "parent", "child_id": "parent"})
        assert self_link.text == "Invalid parameter: child_id (cannot link a todo to itself)"


class TestStatsCleanSections:
    """测试统计、清理、section 管理"""

    def test_stats(self, dispatcher):
        create(dispatcher, "One")
        data = json.loads(dispatcher.handle("todo_stats", {"period": "week"}).text)
        assert data["period"] == "week"
        assert data["total_todos"] == 1
        assert data["in_progress_todos"] == 1

    def test_clean(self, dispatcher, base_store):
        create(dispatcher, "Same")
        create(dispatcher, "Same")
        duplicates = dispatcher.handle("todo_clean", {"operation": "find_duplicates"}).text
        assert duplicates == "Found 1 sets of duplicates:\n\n- same\n  - same-2\n"

        base_store.update("same-2", metadata={"status": "completed", "completed": "2020-01-01 00:00:00"})
        result = dispatcher.handle("todo_clean", {"days": 30})
        assert result.text == "Archived 1 todos older than 30 days"
        assert [t.id for t in base_store.list_todos()] == ["same"]

    def test_search_and_clean_defaults_from_config(self, factory, project_dir, base_store):
        config = TodoServerConfig(working_dir=project_dir, search_limit=1, clean_days=7)
        dispatcher = TodoDispatcher(factory, config)
        create(dispatcher, "Auth one")
        create(dispatcher, "Auth two")

        found = dispatcher.handle("todo_search", {"query": "auth"}).text
        assert found.startswith("Found 1 matching todos:")

        ten_days_ago = (datetime.now() - timedelta(days=10)).strftime("%Y-%m-%d %H:%M:%S")
        base_store.update("auth-one", metadata={"status": "completed", "completed": ten_days_ago})
        assert dispatcher.handle("todo_clean", {}).text == "Archived 1 todos older than 7 days"

    def test_huge_day_windows_are_clamped(self, dispatcher):
        create(dispatcher, "Old enough")
        listing = dispatcher.handle("todo_read", {"format": "list", "filter": {"days": 1000000}})
        assert listing.text == "- old-enough: Old enough"

        cleaned = dispatcher.handle("todo_clean", {"days": 10**9})
        assert cleaned.text == "Archived 0 todos older than 36500 days"

    def test_add_and_reorder_sections(self, dispatcher, base_store):
        todo_id = create(dispatcher, "Sections")
        added = dispatcher.handle(
            "todo_add_section",
            {"id": todo_id, "key": "API Notes", "title": "API Notes", "schema": "checklist", "required": True},
        )
        assert added.text == "Section 'api_notes' added successfully to todo 'sections'"

        duplicate = dispatcher.handle("todo_add_section", {"id": todo_id, "key": "api_notes", "title": "Again"})
        assert duplicate.is_error
        assert duplicate.text.startswith("Resource conflict:")

        sections = json.loads(dispatcher.handle("todo_sections", {"id": todo_id}).text)
        assert sections["sections"]["api_notes"]["custom"] is True
        assert sections["missing_required"] == ["missing required section: api_notes"]

        reordered = dispatcher.handle("todo_reorder_sections", {"id": todo_id, "order": {"api_notes": 0}})
        assert reordered.text == "Sections reordered successfully for todo 'sections'"
        sections = json.loads(dispatcher.handle("todo_sections", {"id": todo_id}).text)
        assert list(sections["sections"])[0] == "api_notes"
        assert sections["sections"]["api_notes"]["order"] == 0

        body = base_store.read_content(todo_id)
        assert body.index("## API Notes") < body.index("## Findings & Research")

        update = dispatcher.handle("todo_update", {"id": todo_id, "section": "api_notes", "content": "- [ ] list"})
        assert not update.is_error, update.text

        unknown = dispatcher.handle("todo_reorder_sections", {"id": todo_id, "order": {"ghost": 1}})
        assert unknown.text == "Invalid parameter: order.ghost (section 'ghost' does not exist in this todo)"


class TestDispatch:
    """测试分发本身"""

    def test_unknown_tool(self, dispatcher):
        result = dispatcher.handle("todo_delete", {})
        assert result.is_error
        assert result.text == "Unknown tool: todo_delete"

    def test_tool_names(self, dispatcher):
        assert len(dispatcher.tool_names) == 13

    def test_validation_has_no_side_effects(self, dispatcher, factory):
        result = dispatcher.handle("todo_create", {"priority": "high"})
        assert result.text == "Invalid parameter: task (is required)"
        assert factory.base_managers().store.list_todos() == []

    def test_working_directory_argument_and_header(self, dispatcher, tmp_path):
        arg_dir = tmp_path / "from-arg"
        header_dir = tmp_path / "from-header"

        dispatcher.handle("todo_create", {"task": "Via arg", "working_directory": str(arg_dir)})
        dispatcher.handle(
            "todo_create",
            {"task": "Via header", "working_directory": str(arg_dir)},
            working_directory=str(header_dir),
        )

        assert (arg_dir / ".claude" / "todos" / "via-arg.md").exists()
        assert (header_dir / ".claude" / "todos" / "via-header.md").exists()
        assert not (arg_dir / ".claude" / "todos" / "via-header.md").exists()

    def test_cancelled_request(self, dispatcher):
        context = RequestContext()
        context.cancel()
        result = dispatcher.handle("todo_read", {}, context=context)
        assert result.is_error
        assert result.text == "request failed: cancelled"

    def test_unexpected_exception_is_hidden(self, dispatcher, monkeypatch):
        def boom(managers, args, context):
            raise RuntimeError("disk on fire at /secret/path")

        monkeypatch.setitem(dispatcher._handlers, "todo_stats", boom)
        result = dispatcher.handle("todo_stats", {})
        assert result.is_error
        assert result.text == "Internal error"
