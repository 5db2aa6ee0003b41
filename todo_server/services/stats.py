"""
Stats Engine - todo 统计

统计范围为活跃 todo，period 按 started 过滤：
- all: 全部
- week / month / quarter / year: 最近 7 / 30 / 90 / 365 天
"""

import logging
from collections import Counter
from datetime import timedelta
from typing import Optional

from todo_server.core.context import RequestContext, check_context
from todo_server.core.errors import TodoError, ValidationError
from todo_server.core.section_schema import parse_checklist
from todo_server.core.timeutil import format_duration, now
from todo_server.models.todo import ChecklistStatus, Todo, TodoStats, TodoStatus
from todo_server.services.todo_store import TodoStore

logger = logging.getLogger(__name__)

PERIOD_DAYS: dict[str, Optional[int]] = {
    "all": None,
    "week": 7,
    "month": 30,
    "quarter": 90,
    "year": 365,
}

# 覆盖率优先取 Test List，其次 Test Cases
_COVERAGE_SECTIONS = ("test_list", "tests")


def _rate(completed: int, total: int) -> float:
    if total == 0:
        return 0.0
    return round(completed / total * 100.0, 1)


class StatsEngine:
    """统计引擎"""

    def __init__(self, store: TodoStore):
        self.store = store

    def _todos_for_period(self, period: str, context: Optional[RequestContext]) -> list[Todo]:
        if period not in PERIOD_DAYS:
            raise ValidationError("period", f"unknown period: {period}")
        todos = self.store.list_todos(context=context)
        days = PERIOD_DAYS[period]
        if days is None:
            return todos
        cutoff = now() - timedelta(days=days)
        return [todo for todo in todos if todo.started >= cutoff]

    def completion_rates_by(self, todos: list[Todo], attribute: str, empty_label: str) -> dict[str, float]:
        totals: Counter = Counter()
        completed: Counter = Counter()
        for todo in todos:
            label = getattr(todo, attribute) or empty_label
            totals[label] += 1
            if todo.is_completed:
                completed[label] += 1
        return {label: _rate(completed[label], total) for label, total in sorted(totals.items())}

    @staticmethod
    def average_completion_seconds(todos: list[Todo]) -> float:
        """已完成 todo 的平均耗时（completed - started，忽略非正值）"""
        durations = [
            (todo.completed - todo.started).total_seconds()
            for todo in todos
            if todo.is_completed and todo.completed is not None
        ]
        durations = [seconds for seconds in durations if seconds > 0]
        if not durations:
            return 0.0
        return sum(durations) / len(durations)

    def test_coverage(self, todo_id: str) -> Optional[float]:
        """
        清单中已勾选项的百分比

        Returns:
            一位小数的百分比；没有任何清单项时返回 None
        """
        _, contents = self.store.read_sections(todo_id)
        for key in _COVERAGE_SECTIONS:
            items = parse_checklist(contents.get(key, ""))
            if items:
                done = sum(1 for item in items if item.status == ChecklistStatus.COMPLETED)
                return _rate(done, len(items))
        return None

    def generate(self, period: str = "all", context: Optional[RequestContext] = None) -> TodoStats:
        """
        生成统计

        Raises:
            ValidationError: 未知 period
        """
        todos = self._todos_for_period(period, context)

        status_counts = Counter(todo.status for todo in todos)
        average = self.average_completion_seconds(todos)

        coverage: dict[str, float] = {}
        for todo in todos:
            check_context(context)
            try:
                value = self.test_coverage(todo.id)
            except TodoError as e:
                logger.warning(f"Failed to compute test coverage for {todo.id}: {e}")
                continue
            if value is not None:
                coverage[todo.id] = value

        return TodoStats(
            period=period,
            total_todos=len(todos),
            completed_todos=status_counts[TodoStatus.COMPLETED.value],
            in_progress_todos=status_counts[TodoStatus.IN_PROGRESS.value],
            blocked_todos=status_counts[TodoStatus.BLOCKED.value],
            todos_by_type=dict(sorted(Counter(todo.type or "unknown" for todo in todos).items())),
            todos_by_priority=dict(sorted(Counter(todo.priority or "medium" for todo in todos).items())),
            completion_rates_by_type=self.completion_rates_by(todos, "type", "unknown"),
            completion_rates_by_priority=self.completion_rates_by(todos, "priority", "medium"),
            average_completion_seconds=round(average, 1),
            average_completion_time=format_duration(average),
            test_coverage=coverage,
        )


__all__ = ["PERIOD_DAYS", "StatsEngine"]
