"""
Todo Server HTTP - MCP streamable HTTP 传输 + 健康检查

启动命令: todo-server serve --transport http
或: uvicorn todo_server.main:app --host localhost --port 8080

端点：
- GET /health   健康检查
- /mcp          MCP streamable HTTP（请求头 X-Working-Directory 选择工作目录）
"""

import contextlib
import logging
import time
from datetime import datetime, timezone
from typing import AsyncIterator

from fastapi import FastAPI
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from starlette.types import Receive, Scope, Send

from todo_server import __version__
from todo_server.services.manager_factory import get_manager_factory, reset_manager_factory

logger = logging.getLogger(__name__)

MCP_PATH = "/mcp"


def create_app() -> FastAPI:
    """
    创建 HTTP 应用

    每次调用创建新的 session manager（session manager 只能运行一次）。
    """
    from todo_server.mcp_todo import server

    session_manager = StreamableHTTPSessionManager(app=server, json_response=False, stateless=True)
    started_at = time.monotonic()

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        factory = get_manager_factory()
        factory.start_sweeper()
        logger.info("Todo server HTTP transport started")
        try:
            async with session_manager.run():
                yield
        finally:
            reset_manager_factory()
            logger.info("Todo server HTTP transport stopped")

    app = FastAPI(
        title="Todo Server",
        description="MCP todo 工具服务",
        version=__version__,
        lifespan=lifespan,
    )

    async def handle_mcp(scope: Scope, receive: Receive, send: Send) -> None:
        await session_manager.handle_request(scope, receive, send)

    app.mount(MCP_PATH, app=handle_mcp)

    @app.get("/health")
    async def health_check():
        """健康检查"""
        uptime = time.monotonic() - started_at
        return {
            "status": "healthy",
            "uptime": f"{uptime:.0f}s",
            "uptimeMs": int(uptime * 1000),
            "serverTime": datetime.now(timezone.utc).isoformat(),
            "transport": "http",
            "version": __version__,
            "manager_sets": get_manager_factory().get_active_count(),
        }

    return app


app = create_app()
