"""
Todo Server CLI - 命令行工具

提供主要命令：
- todo-server serve: 启动 MCP Server（stdio / http）
- todo-server status: 查看 todo 统计和层级
- todo-server init: 初始化 .claude 目录和内置模板
"""

import typer

from todo_server.cli.init_cmd import init_command
from todo_server.cli.serve_cmd import serve_command
from todo_server.cli.status_cmd import status_command

app = typer.Typer(
    name="todo-server",
    help="Todo Server - 基于 markdown 文件的 MCP todo 工具服务",
    add_completion=False,
    rich_markup_mode="rich",
)

# 注册子命令
app.command(name="serve", help="启动 MCP Server")(serve_command)
app.command(name="status", help="查看 todo 统计")(status_command)
app.command(name="init", help="初始化 todo 目录和模板")(init_command)


def main():
    """CLI 入口点"""
    app()


if __name__ == "__main__":
    main()


__all__ = ["app", "main"]
