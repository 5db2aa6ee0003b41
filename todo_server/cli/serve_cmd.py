"""
todo-server serve - 启动 MCP Server

支持两种传输：
1. stdio（默认，供 MCP 客户端以子进程方式启动）
2. http（FastAPI + MCP streamable HTTP，端点 /mcp）
"""

import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel

console_stdout = Console()
console_stderr = Console(stderr=True)


def serve_command(
    transport: str = typer.Option(
        "stdio",
        "--transport", "-t",
        help="传输方式: stdio / http",
    ),
    host: Optional[str] = typer.Option(
        None,
        "--host",
        help="HTTP 监听地址（默认 TODO_SERVER_HOST 或 localhost）",
    ),
    port: Optional[int] = typer.Option(
        None,
        "--port", "-p",
        help="HTTP 监听端口（默认 TODO_SERVER_PORT 或 8080）",
    ),
    working_dir: Optional[Path] = typer.Option(
        None,
        "--working-dir", "-w",
        help="默认工作目录（默认 TODO_SERVER_WORKING_DIR 或当前目录）",
    ),
):
    """
    启动 Todo Server

    stdio 模式用于 MCP 客户端集成，HTTP 模式通过 X-Working-Directory 请求头支持多个项目。
    """
    normalized = transport.strip().lower()
    if normalized not in ("stdio", "http"):
        console_stderr.print(f"[red]未知传输方式: {transport}[/red]")
        raise typer.Exit(1)

    # 注意：stdio 模式下 stdout 属于 MCP 协议通道（JSON-RPC），严禁输出任何人类可读文本
    console = console_stderr if normalized == "stdio" else console_stdout

    if working_dir is not None:
        os.environ["TODO_SERVER_WORKING_DIR"] = str(working_dir.expanduser().resolve())

    from todo_server.config import ConfigLoadError, configure_logging, get_config, reset_config

    reset_config()
    try:
        config = get_config()
    except ConfigLoadError as e:
        console_stderr.print(f"[red]✗ 配置加载失败: {e}[/red]")
        raise typer.Exit(1)

    _check_bootstrap(config)
    configure_logging(config.log_level)

    if normalized == "http":
        console.print(
            Panel.fit(
                f"[bold blue]Todo Server[/bold blue] - 启动服务\n\n"
                f"[bold]工作目录:[/bold] {config.working_dir}\n"
                f"[bold]传输:[/bold] {normalized}",
                border_style="blue",
            )
        )
        _serve_http(console, host or config.http_host, port or config.http_port)
    else:
        _serve_stdio(console)


def _check_bootstrap(config) -> None:
    """默认工作目录必须存在；已存在的模板目录必须可读"""
    if not config.working_dir.is_dir():
        console_stderr.print(f"[red]✗ 默认工作目录不存在: {config.working_dir}[/red]")
        raise typer.Exit(1)

    templates = config.templates_path
    if templates.exists() and (not templates.is_dir() or not os.access(templates, os.R_OK | os.X_OK)):
        console_stderr.print(f"[red]✗ 模板目录不可读: {templates}[/red]")
        raise typer.Exit(1)


def _serve_http(console: Console, host: str, port: int):
    """启动 HTTP Server"""
    import uvicorn

    console.print()
    console.print(f"[green]✓ 启动 HTTP Server: http://{host}:{port}[/green]")
    console.print(f"[dim]MCP 端点: http://{host}:{port}/mcp/[/dim]")
    console.print("[dim]按 Ctrl+C 停止服务[/dim]")
    console.print()

    uvicorn.run("todo_server.main:app", host=host, port=port)


def _serve_stdio(console: Console):
    """启动 MCP stdio Server"""
    # 注意：stdout 是 MCP 协议通道；日志仅允许写到 stderr
    console.print("[dim]Todo Server MCP stdio server starting...[/dim]")

    import asyncio

    from todo_server.mcp_todo import main as mcp_main

    asyncio.run(mcp_main())


if __name__ == "__main__":
    typer.run(serve_command)
