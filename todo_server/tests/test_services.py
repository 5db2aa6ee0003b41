"""
服务层测试：统计、模板、父子链接、全文索引
"""

import pytest

from todo_server.core.context import RequestContext
from todo_server.core.errors import NotFoundError, OperationError, ValidationError
from todo_server.services.linker import TodoLinker
from todo_server.services.search_index import SearchIndex, build_match_query
from todo_server.services.stats import StatsEngine
from todo_server.services.templates import BUILTIN_TEMPLATES, TemplateManager


@pytest.fixture
def templates(paths, store) -> TemplateManager:
    return TemplateManager(paths.templates, store)


@pytest.fixture
def index(paths):
    search_index = SearchIndex(paths.index)
    yield search_index
    search_index.close()


class TestStatsEngine:
    """测试统计"""

    def test_empty(self, store):
        stats = StatsEngine(store).generate()
        assert stats.total_todos == 0
        assert stats.average_completion_time == "0s"
        assert stats.completion_rates_by_type == {}

    def test_counts_rates_and_duration(self, store):
        store.create("Feature work", priority="high", todo_type="feature")
        fixed = store.create("Fix crash", priority="low", todo_type="bug")
        store.create("Fix leak", priority="low", todo_type="bug")
        store.update(
            fixed.id,
            metadata={
                "status": "completed",
                "started": "2025-01-19 10:00:00",
                "completed": "2025-01-19 11:30:00",
            },
        )

        stats = StatsEngine(store).generate("all")

        assert stats.total_todos == 3
        assert stats.completed_todos == 1
        assert stats.in_progress_todos == 2
        assert stats.blocked_todos == 0
        assert stats.todos_by_type == {"bug": 2, "feature": 1}
        assert stats.todos_by_priority == {"high": 1, "low": 2}
        assert stats.completion_rates_by_type == {"bug": 50.0, "feature": 0.0}
        assert stats.completion_rates_by_priority == {"high": 0.0, "low": 50.0}
        assert stats.average_completion_seconds == 5400.0
        assert stats.average_completion_time == "1h30m"

    def test_period_filters_by_started(self, store):
        store.create("Recent")
        old = store.create("Old")
        store.update(old.id, metadata={"started": "2020-01-01 00:00:00"})

        engine = StatsEngine(store)
        assert engine.generate("week").total_todos == 1
        assert engine.generate("all").total_todos == 2

    def test_unknown_period(self, store):
        with pytest.raises(ValidationError) as exc_info:
            StatsEngine(store).generate("decade")
        assert exc_info.value.field == "period"

    def test_coverage_prefers_test_list(self, store):
        with_list = store.create("Covered")
        store.update(with_list.id, "test_list", "replace", "- [x] login\n- [ ] logout")
        with_cases = store.create("Cases only")
        store.update(with_cases.id, "tests", "replace", "- [x] one\n- [x] two")
        store.create("Nothing")

        stats = StatsEngine(store).generate()
        assert stats.test_coverage == {"covered": 50.0, "cases-only": 100.0}

    def test_cancelled_context(self, store):
        store.create("One")
        context = RequestContext()
        context.cancel()
        with pytest.raises(OperationError, match="cancelled"):
            StatsEngine(store).generate(context=context)


class TestTemplateManager:
    """测试模板"""

    def test_missing_directory_lists_nothing(self, tmp_path):
        assert TemplateManager(tmp_path / "none").list_templates() == []

    def test_install_builtin(self, templates):
        assert sorted(templates.install_builtin_templates()) == sorted(BUILTIN_TEMPLATES)
        assert templates.list_templates() == ["bug", "feature", "prd", "research"]
        assert templates.install_builtin_templates() == []
        assert len(templates.install_builtin_templates(force=True)) == 4

    def test_load_front_matter(self, templates):
        templates.install_builtin_templates()
        template = templates.load("bug.md")
        assert template.name == "bug"
        assert template.variables == {"severity": "medium"}
        assert template.description.startswith("Bug fix")
        assert template.content.startswith("# Task: {{ task }}")

    def test_execute_defaults_and_overrides(self, templates):
        templates.install_builtin_templates()
        template = templates.load("bug")
        assert "Severity: medium" in templates.execute(template, {"task": "Crash"})
        rendered = templates.execute(template, {"task": "Crash", "severity": "high"})
        assert rendered.startswith("# Task: Crash\n")
        assert "Severity: high" in rendered

    def test_undeclared_variable_fails(self, paths, templates):
        paths.templates.mkdir(parents=True, exist_ok=True)
        (paths.templates / "custom.md").write_text("# Task: {{ task }}\n\n## Notes\n\n{{ secret }}\n")
        template = templates.load("custom")
        assert template.variables == {}
        with pytest.raises(OperationError):
            templates.execute(template, {"task": "x", "secret": "leaked"})

    def test_list_variables_are_required(self, paths, templates):
        paths.templates.mkdir(parents=True, exist_ok=True)
        (paths.templates / "component.md").write_text(
            "---\nvariables: [component]\n---\n# Task: {{ task }}\n\n## Notes\n\n{{ component }}\n"
        )
        template = templates.load("component")
        with pytest.raises(OperationError):
            templates.execute(template, {"task": "x"})
        assert "parser" in templates.execute(template, {"task": "x", "component": "parser"})

    def test_missing_and_invalid_names(self, templates):
        with pytest.raises(NotFoundError) as exc_info:
            templates.load("nope")
        assert exc_info.value.client_message() == "Template not found: nope"
        with pytest.raises(ValidationError):
            templates.load("../secrets")

    def test_create_from_template(self, store, templates):
        templates.install_builtin_templates()
        todo = templates.create_from_template("bug", "Crash on save", priority="medium", variables={"severity": "high"})

        assert todo.id == "crash-on-save"
        assert todo.priority == "medium"
        assert "steps_to_reproduce" in todo.sections
        assert todo.sections["checklist"].schema_.value == "checklist"

        _, contents = store.read_sections(todo.id)
        assert contents["findings"] == "Severity: high"
        assert contents["checklist"].startswith("- [ ] Root cause identified")
        assert store.read_content(todo.id).startswith("# Task: Crash on save\n")

    def test_template_without_headers_gets_default_sections(self, paths, store, templates):
        paths.templates.mkdir(parents=True, exist_ok=True)
        (paths.templates / "plain.md").write_text("# Task: {{ task }}\n\nJust notes\n")
        todo = templates.create_from_template("plain", "Plain task")
        assert set(todo.sections) == {
            "findings",
            "web_searches",
            "test_strategy",
            "test_list",
            "tests",
            "test_results",
            "checklist",
            "scratchpad",
        }
        assert "## Working Scratchpad" in store.read_content(todo.id)

    def test_create_without_store(self, tmp_path):
        with pytest.raises(OperationError):
            TemplateManager(tmp_path).create_from_template("bug", "x")


class TestTodoLinker:
    """测试父子链接"""

    def test_link(self, store):
        parent = store.create("Parent")
        child = store.create("Child")
        linked = TodoLinker(store).link_todos(parent.id, child.id)
        assert linked.parent_id == "parent"
        assert store.read(child.id).parent_id == "parent"

    def test_self_link(self, store):
        store.create("Solo")
        with pytest.raises(ValidationError) as exc_info:
            TodoLinker(store).link_todos("solo", "solo")
        assert exc_info.value.client_message() == "Invalid parameter: child_id (cannot link a todo to itself)"

    def test_unsupported_link_type(self, store):
        with pytest.raises(ValidationError) as exc_info:
            TodoLinker(store).link_todos("a", "b", link_type="blocks")
        assert exc_info.value.field == "link_type"

    def test_missing_ends(self, store):
        store.create("Parent")
        linker = TodoLinker(store)
        with pytest.raises(NotFoundError):
            linker.link_todos("parent", "ghost")
        with pytest.raises(NotFoundError):
            linker.link_todos("ghost", "parent")

    def test_cycle_rejected(self, store):
        a = store.create("A")
        b = store.create("B", parent_id=a.id)
        with pytest.raises(ValidationError, match="cycle"):
            TodoLinker(store).link_todos(b.id, a.id)
        assert store.read(a.id).parent_id == ""

    def test_unlink(self, store):
        parent = store.create("Parent")
        child = store.create("Child", parent_id=parent.id)
        assert TodoLinker(store).unlink(child.id).parent_id == ""


class TestSearchIndex:
    """测试全文索引"""

    def test_match_query_quotes_terms(self):
        assert build_match_query('auth "token" OR') == '"auth" "token" "OR"'
        assert build_match_query("  ") == ""

    def test_search_ranked_results(self, store, index):
        login = store.create("Implement authentication")
        store.update(login.id, "findings", "append", "OAuth authentication flow with refresh tokens")
        store.create("Write docs")
        assert index.reindex_all(store) == 2

        results = index.search_todos("authentication")
        assert [result.id for result in results] == ["implement-authentication"]
        assert results[0].score == 1.0
        assert "authentication" in results[0].snippet.lower()

    def test_terms_are_anded(self, store, index):
        store.create("Auth service")
        store.create("Auth docs")
        index.reindex_all(store)
        assert [r.id for r in index.search_todos("auth docs")] == ["auth-docs"]

    def test_empty_query_lists_recent(self, store, index):
        store.create("One")
        store.create("Two")
        index.reindex_all(store)
        results = index.search_todos("")
        assert {r.id for r in results} == {"one", "two"}
        assert all(r.score == 1.0 for r in results)
        assert len(index.search_todos("", limit=1)) == 1

    def test_filters(self, store, index):
        old = store.create("Old auth")
        store.update(old.id, metadata={"started": "2024-06-15 12:00:00", "status": "blocked"})
        store.create("New auth")
        index.reindex_all(store)

        assert [r.id for r in index.search_todos("auth", {"status": "blocked"})] == ["old-auth"]
        window = {"date_from": "2024-06-15", "date_to": "2024-06-15"}
        assert [r.id for r in index.search_todos("auth", window)] == ["old-auth"]
        assert index.search_todos("auth", {"date_to": "2024-06-14"}) == []

    def test_invalid_date_filter(self, index):
        with pytest.raises(ValidationError) as exc_info:
            index.search_todos("x", {"date_from": "19/01/2025"})
        assert exc_info.value.field == "filters.date_from"

    def test_reindex_and_delete(self, store, index):
        todo = store.create("Indexed")
        index.index_todo(store.read(todo.id), store.read_content(todo.id))
        index.index_todo(store.read(todo.id), store.read_content(todo.id))
        assert index.get_indexed_count() == 1

        index.delete_todo(todo.id)
        assert index.get_indexed_count() == 0
        assert index.search_todos("indexed") == []

    def test_closed_index(self, index):
        index.close()
        assert index.closed
        with pytest.raises(OperationError, match="closed"):
            index.search_todos("x")
