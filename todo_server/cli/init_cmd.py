"""
todo-server init - 初始化工作目录

创建 .claude/{todos,templates,index,archive} 并写入内置模板。
"""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

console = Console()


def init_command(
    working_dir: Optional[Path] = typer.Option(
        None,
        "--working-dir", "-w",
        help="工作目录（默认当前目录）",
    ),
    force: bool = typer.Option(
        False,
        "--force", "-f",
        help="覆盖已存在的模板",
    ),
):
    """
    初始化 Todo Server 工作目录
    """
    from todo_server.core.errors import TodoError
    from todo_server.core.paths import resolve_paths
    from todo_server.services.templates import TemplateManager

    try:
        paths = resolve_paths(working_dir, default=Path.cwd())
        paths.ensure()
        paths.archive.mkdir(parents=True, exist_ok=True)
    except TodoError as e:
        console.print(f"[red]✗ {e.client_message()}[/red]")
        raise typer.Exit(1)
    except OSError as e:
        console.print(f"[red]✗ 无法创建目录: {e}[/red]")
        raise typer.Exit(1)

    written = TemplateManager(paths.templates).install_builtin_templates(force=force)

    console.print(Panel(
        f"""[green]✓ 初始化成功！[/green]

[bold]工作目录:[/bold] {paths.root}
[bold]Todo 目录:[/bold] {paths.todos}
[bold]模板:[/bold] {', '.join(written) if written else '（已存在，未覆盖）'}

[bold yellow]下一步:[/bold yellow]
1. 运行 [cyan]todo-server serve --working-dir {paths.root}[/cyan] 启动服务
2. 在 MCP 客户端中配置 todo-server""",
        title="[bold green]初始化完成[/bold green]",
        border_style="green",
    ))


if __name__ == "__main__":
    typer.run(init_command)
