"""
Pytest configuration and fixtures for todo_server tests.

隔离策略：
1. 每个测试使用 tmp_path 下的独立工作目录
2. 测试前后重置全局单例（配置、manager 工厂、分发器）
3. 清除 TODO_SERVER_* 环境变量，避免开发机配置影响结果
"""

import os
from pathlib import Path

import pytest

from todo_server.config import TodoServerConfig, set_config
from todo_server.core.paths import resolve_paths
from todo_server.services.manager_factory import ManagerFactory
from todo_server.services.todo_store import TodoStore
from todo_server.tools.dispatcher import TodoDispatcher


def _reset_all_singletons():
    """Reset all global singleton instances."""
    from todo_server.config import reset_config
    from todo_server.services.manager_factory import reset_manager_factory
    from todo_server.tools.dispatcher import reset_dispatcher

    reset_config()
    reset_manager_factory()
    reset_dispatcher()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """清除 TODO_SERVER_* 环境变量"""
    for key in list(os.environ):
        if key.startswith("TODO_SERVER_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset all global singletons before and after each test."""
    _reset_all_singletons()
    yield
    _reset_all_singletons()


@pytest.fixture
def project_dir(tmp_path) -> Path:
    """默认工作目录"""
    directory = tmp_path / "project"
    directory.mkdir()
    return directory


@pytest.fixture
def config(project_dir) -> TodoServerConfig:
    """测试配置（已设置为全局单例）"""
    cfg = TodoServerConfig(working_dir=project_dir, index_timeout=10.0)
    set_config(cfg)
    return cfg


@pytest.fixture
def paths(project_dir):
    todo_paths = resolve_paths(project_dir)
    todo_paths.ensure()
    return todo_paths


@pytest.fixture
def store(paths) -> TodoStore:
    return TodoStore(paths)


@pytest.fixture
def factory(config):
    manager_factory = ManagerFactory(config)
    yield manager_factory
    manager_factory.close()


@pytest.fixture
def dispatcher(factory, config) -> TodoDispatcher:
    return TodoDispatcher(factory, config)


def write_todo_file(todo_dir: Path, todo_id: str, front: str, body: str) -> Path:
    """直接写入 todo 文件（模拟手写或旧格式文件）"""
    todo_dir.mkdir(parents=True, exist_ok=True)
    path = todo_dir / f"{todo_id}.md"
    path.write_text(f"---\n{front.strip()}\n---\n{body}", encoding="utf-8")
    return path
