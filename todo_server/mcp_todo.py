"""
Todo Server MCP Server - 供 AI 助手使用的 todo 工具接口

每个 todo 是 <W>/.claude/todos/<id>.md 中的一个 markdown 文件
（YAML front-matter + "## " 分节的正文）。

MCP 工具：
- todo_create / todo_create_multi - 创建 todo（可带父任务、模板）
- todo_read - 读取单个 todo 或列出 todo（summary / list / full）
- todo_update - 更新 section 内容或元数据（完成时自动归档）
- todo_search - 全文搜索
- todo_archive - 归档
- todo_link - 建立父子关系
- todo_stats - 统计
- todo_clean - 归档旧 todo / 查找重复
- todo_template - 列出模板或从模板创建
- todo_sections / todo_add_section / todo_reorder_sections - section 管理

工作目录：
- HTTP 传输：请求头 X-Working-Directory
- stdio 传输：工具参数 working_directory
- 都没有时使用配置的默认工作目录

使用方式：
1. 在 MCP 客户端配置中添加此服务器（todo-server serve）
2. 客户端通过 mcp__todo-server__* 工具访问 todo
"""

import asyncio
import logging
from typing import Any, Sequence

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Resource, TextContent, Tool
from pydantic import AnyUrl

from todo_server.tools.definitions import get_tool_definitions
from todo_server.tools.dispatcher import get_dispatcher
from todo_server.tools.formatters import format_summary

logger = logging.getLogger(__name__)

WORKING_DIRECTORY_HEADER = "x-working-directory"

# 创建 MCP Server
server = Server("todo-server")


class ToolCallError(Exception):
    """工具调用失败；MCP 运行时把它转换为 isError=true 的结果"""


def _header_working_directory() -> str:
    """HTTP 请求头中的工作目录；stdio 或不在请求中时返回空字符串"""
    try:
        request = server.request_context.request
    except LookupError:
        return ""
    headers = getattr(request, "headers", None)
    if headers is None:
        return ""
    return (headers.get(WORKING_DIRECTORY_HEADER) or "").strip()


# === Tools ===


@server.list_tools()
async def list_tools() -> list[Tool]:
    """列出可用工具"""
    return get_tool_definitions()


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> Sequence[TextContent]:
    """执行工具调用（文件读写在工作线程中进行）"""
    working_directory = _header_working_directory()
    result = await asyncio.to_thread(get_dispatcher().handle, name, arguments or {}, working_directory)
    if result.is_error:
        raise ToolCallError(result.text)
    return [TextContent(type="text", text=result.text)]


# === Resources ===


@server.list_resources()
async def list_resources() -> list[Resource]:
    """列出可用资源"""
    return [
        Resource(
            uri=AnyUrl("todo://active"),
            name="活跃 todo",
            description="默认工作目录下全部活跃 todo 的状态分组视图",
            mimeType="text/plain",
        ),
    ]


def _active_summary() -> str:
    """默认工作目录的活跃 todo 视图（首次调用可能创建索引，需在工作线程中执行）"""
    managers = get_dispatcher().factory.base_managers()
    return format_summary(managers.store.list_todos())


@server.read_resource()
async def read_resource(uri: AnyUrl) -> str:
    """读取资源内容"""
    if str(uri) == "todo://active":
        return await asyncio.to_thread(_active_summary)

    return f"Unknown resource: {uri}"


# === Main ===


async def main():
    """启动 MCP Server（stdio 传输）"""
    # 重置单例以确保使用最新的环境变量
    from todo_server.config import reset_config
    from todo_server.services.manager_factory import get_manager_factory, reset_manager_factory
    from todo_server.tools.dispatcher import reset_dispatcher

    reset_config()
    reset_manager_factory()
    reset_dispatcher()

    factory = get_manager_factory()
    factory.start_sweeper()
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        reset_manager_factory()


if __name__ == "__main__":
    asyncio.run(main())
