"""Todo Server - 基于 markdown 文件的 MCP todo 工具服务"""

__version__ = "0.1.0"

__all__ = ["__version__"]
