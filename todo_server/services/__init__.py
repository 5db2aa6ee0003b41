"""Business logic services for Todo Server"""

from todo_server.services.linker import TodoLinker
from todo_server.services.manager_factory import (
    ManagerFactory,
    ManagerSet,
    get_manager_factory,
    reset_manager_factory,
)
from todo_server.services.search_index import SearchIndex
from todo_server.services.stats import StatsEngine
from todo_server.services.templates import TemplateManager
from todo_server.services.todo_store import TodoStore

__all__ = [
    # 存储
    "TodoStore",
    "TodoLinker",
    # 搜索 / 统计 / 模板
    "SearchIndex",
    "StatsEngine",
    "TemplateManager",
    # Manager 工厂
    "ManagerFactory",
    "ManagerSet",
    "get_manager_factory",
    "reset_manager_factory",
]
