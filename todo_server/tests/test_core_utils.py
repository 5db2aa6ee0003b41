"""
核心工具测试：时间戳、请求上下文、路径解析、错误映射
"""

import time
from datetime import date, datetime, timezone

import pytest

from todo_server.core.context import RequestContext, check_context
from todo_server.core.errors import (
    ConflictError,
    ErrorKind,
    NotFoundError,
    OperationError,
    PermissionDeniedError,
    ValidationError,
    client_message,
    error_kind,
)
from todo_server.core.paths import resolve_paths
from todo_server.core.timeutil import (
    daily_path,
    format_duration,
    format_timestamp,
    parse_timestamp,
    to_local_naive,
)


class TestTimestamps:
    """测试时间戳解析与格式化"""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2025-01-19 10:30:00", datetime(2025, 1, 19, 10, 30, 0)),
            ("2025-01-19T10:30:00", datetime(2025, 1, 19, 10, 30, 0)),
            ("2025-01-19", datetime(2025, 1, 19)),
            (date(2025, 1, 19), datetime(2025, 1, 19)),
            (datetime(2025, 1, 19, 8, 0), datetime(2025, 1, 19, 8, 0)),
        ],
    )
    def test_parse_local_formats(self, value, expected):
        assert parse_timestamp(value) == expected

    def test_parse_rfc3339_converts_to_local(self):
        expected = to_local_naive(datetime(2025, 1, 19, 10, 0, tzinfo=timezone.utc))
        assert parse_timestamp("2025-01-19T10:00:00Z") == expected
        assert parse_timestamp("2025-01-19T10:00:00+00:00") == expected

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_empty_values(self, value):
        assert parse_timestamp(value) is None

    def test_unrecognized(self):
        with pytest.raises(ValueError, match="unrecognized timestamp"):
            parse_timestamp("next tuesday")

    def test_format(self):
        assert format_timestamp(datetime(2025, 1, 19, 9, 5, 7)) == "2025-01-19 09:05:07"
        assert format_timestamp(None) == ""
        assert daily_path(datetime(2025, 1, 9)) == "2025/01/09"

    @pytest.mark.parametrize(
        "seconds,text",
        [(0, "0s"), (59, "59s"), (60, "1m"), (3723, "1h2m3s"), (7200, "2h")],
    )
    def test_format_duration(self, seconds, text):
        assert format_duration(seconds) == text


class TestRequestContext:
    """测试请求上下文"""

    def test_no_deadline(self):
        context = RequestContext()
        assert context.remaining() is None
        context.check()
        check_context(None)

    def test_cancel(self):
        context = RequestContext.with_timeout("/tmp/x", timeout=30, operation="list")
        assert context.working_directory == "/tmp/x"
        assert 0 < context.remaining() <= 30
        context.cancel()
        assert context.cancelled
        with pytest.raises(OperationError) as exc_info:
            check_context(context)
        assert exc_info.value.client_message() == "list failed: cancelled"

    def test_deadline_expires(self):
        context = RequestContext.with_timeout(timeout=0.01)
        time.sleep(0.05)
        assert context.remaining() == 0.0
        with pytest.raises(OperationError):
            context.check()


class TestResolvePaths:
    """测试工作目录解析"""

    def test_layout(self, tmp_path):
        paths = resolve_paths(tmp_path)
        assert paths.root == tmp_path
        assert paths.todos == tmp_path / ".claude" / "todos"
        assert paths.templates == tmp_path / ".claude" / "templates"
        assert paths.index == tmp_path / ".claude" / "index"
        assert paths.archive == tmp_path / ".claude" / "archive"
        assert not paths.todos.exists()

    def test_default_used_when_empty(self, tmp_path):
        assert resolve_paths("  ", default=tmp_path).root == tmp_path

    def test_template_override(self, tmp_path):
        override = tmp_path / "shared-templates"
        assert resolve_paths(tmp_path, template_override=override).templates == override

    def test_ensure_creates_directories(self, tmp_path):
        paths = resolve_paths(tmp_path / "new")
        paths.ensure()
        assert paths.todos.is_dir()
        assert paths.templates.is_dir()
        assert paths.index.is_dir()

    def test_invalid(self, tmp_path):
        file_path = tmp_path / "file.txt"
        file_path.write_text("x")
        with pytest.raises(ValidationError):
            resolve_paths("")
        with pytest.raises(ValidationError):
            resolve_paths("bad\x00dir")
        with pytest.raises(ValidationError, match="not a directory"):
            resolve_paths(file_path)


class TestErrors:
    """测试错误分类与客户端文本"""

    def test_client_messages(self):
        assert NotFoundError("todo", "abc").client_message() == "Todo not found: abc"
        assert NotFoundError("template", "bug").client_message() == "Template not found: bug"
        assert ValidationError("task", "is required").client_message() == "Invalid parameter: task (is required)"
        assert OperationError("search", "boom").client_message() == "search failed: boom"
        assert ConflictError("section", "exists").client_message() == "Resource conflict: exists"
        assert PermissionDeniedError().client_message() == "Permission denied"

    def test_foreign_exceptions_do_not_leak(self):
        assert client_message(RuntimeError("secret detail")) == "Internal error"
        assert error_kind(RuntimeError("x")) == ErrorKind.INTERNAL
        assert error_kind(PermissionError("x")) == ErrorKind.PERMISSION
        assert error_kind(FileNotFoundError("x")) == ErrorKind.NOT_FOUND
        assert error_kind(ConflictError("todo", "x")) == ErrorKind.CONFLICT
