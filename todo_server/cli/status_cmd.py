"""
todo-server status - 查看 todo 状态

显示工作目录、按状态 / 类型 / 优先级的统计，以及层级视图。
"""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()


def status_command(
    working_dir: Optional[Path] = typer.Option(
        None,
        "--working-dir", "-w",
        help="工作目录（默认使用配置的工作目录）",
    ),
    period: str = typer.Option(
        "all",
        "--period",
        help="统计周期: all / week / month / quarter / year",
    ),
):
    """
    查看 Todo Server 状态

    只读取文件，不创建索引。
    """
    from todo_server.config import get_config
    from todo_server.core.errors import TodoError
    from todo_server.core.hierarchy import build_hierarchy
    from todo_server.core.paths import resolve_paths
    from todo_server.services.stats import StatsEngine
    from todo_server.services.todo_store import TodoStore
    from todo_server.tools.formatters import format_hierarchy

    config = get_config()
    paths = resolve_paths(working_dir, default=config.working_dir)
    store = TodoStore(paths)

    console.print(Panel.fit(
        "[bold blue]Todo Server[/bold blue] - 状态",
        border_style="blue",
    ))
    console.print()

    # 1. 路径
    paths_table = Table(title="📁 路径", show_header=False, box=None)
    paths_table.add_column("Key", style="cyan")
    paths_table.add_column("Value")
    paths_table.add_row("工作目录", str(paths.root))
    paths_table.add_row("Todo 目录", str(paths.todos))
    paths_table.add_row("模板目录", str(paths.templates))
    paths_table.add_row("自动归档", "✓" if config.auto_archive else "✗")
    console.print(paths_table)
    console.print()

    # 2. 统计
    try:
        stats = StatsEngine(store).generate(period)
    except TodoError as e:
        console.print(f"[red]✗ {e.client_message()}[/red]")
        raise typer.Exit(1)

    count_table = Table(title=f"📊 统计（{stats.period}）", show_header=True)
    count_table.add_column("状态", style="cyan")
    count_table.add_column("数量", justify="right")
    count_table.add_row("total", str(stats.total_todos))
    count_table.add_row("in_progress", str(stats.in_progress_todos))
    count_table.add_row("blocked", str(stats.blocked_todos))
    count_table.add_row("completed", str(stats.completed_todos))
    console.print(count_table)
    console.print(f"[dim]平均完成时间: {stats.average_completion_time}[/dim]")
    console.print()

    if stats.completion_rates_by_type:
        rate_table = Table(title="完成率（按类型）", show_header=True)
        rate_table.add_column("类型", style="cyan")
        rate_table.add_column("数量", justify="right")
        rate_table.add_column("完成率", justify="right")
        for todo_type, rate in sorted(stats.completion_rates_by_type.items()):
            rate_table.add_row(todo_type, str(stats.todos_by_type.get(todo_type, 0)), f"{rate:.1f}%")
        console.print(rate_table)
        console.print()

    # 3. 层级
    todos = store.list_todos()
    if any(todo.parent_id for todo in todos):
        roots, orphans = build_hierarchy(todos)
        console.print("\n".join(format_hierarchy(roots, orphans)), markup=False)
    elif not todos:
        console.print("[dim]暂无活跃 todo[/dim]")


if __name__ == "__main__":
    typer.run(status_command)
