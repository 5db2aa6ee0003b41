"""
Todo Server Configuration - 配置管理模块

支持以下配置来源（优先级从高到低）：
1. 环境变量（TODO_SERVER_ 前缀，覆盖所有配置）
2. 项目配置文件（<working_dir>/.claude/todo-server.yaml）
3. 全局配置文件（~/.todo-server/config.yaml）
4. 默认值

用法：
    from todo_server.config import get_config
    config = get_config()
    print(config.working_dir)
    print(config.auto_archive)
"""

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

logger = logging.getLogger(__name__)

# 默认全局配置目录
DEFAULT_GLOBAL_CONFIG_DIR = Path.home() / ".todo-server"
PROJECT_CONFIG_NAME = Path(".claude") / "todo-server.yaml"


class ConfigLoadError(Exception):
    """配置加载错误"""

    pass


@dataclass
class TodoServerConfig:
    """Todo Server 配置"""

    # === 路径 ===
    working_dir: Path = field(default_factory=Path.cwd)
    template_dir: Optional[Path] = None  # None 表示 <working_dir>/.claude/templates

    # === 行为 ===
    auto_archive: bool = True  # status=completed 时自动归档
    log_level: str = "INFO"

    # === Manager 工厂 ===
    index_timeout: float = 30.0  # 索引器创建时限（秒）
    sweep_interval: float = 600.0  # 清理线程唤醒间隔（10 分钟）
    idle_threshold: float = 900.0  # 空闲超过该时长的 manager set 被驱逐（15 分钟）
    max_creation_attempts: int = 3  # 熔断阈值
    breaker_backoff: float = 30.0  # 熔断退避（秒）
    request_timeout: float = 30.0  # 单次请求默认时限

    # === 工具默认值 ===
    search_limit: int = 10
    search_limit_max: int = 100
    clean_days: int = 90

    # === HTTP 传输 ===
    http_host: str = "localhost"
    http_port: int = 8080

    @property
    def templates_path(self) -> Path:
        """基础 manager set 使用的模板目录"""
        if self.template_dir is not None:
            return self.template_dir
        return self.working_dir / ".claude" / "templates"


def _load_yaml_config(path: Path) -> dict:
    """
    加载 YAML 配置文件。

    Args:
        path: 配置文件路径

    Returns:
        配置字典，如果文件不存在则返回空字典

    Raises:
        ConfigLoadError: YAML 解析失败或其他错误
    """
    if not path.exists():
        logger.debug(f"Config file not found: {path}")
        return {}

    try:
        with open(path, "r", encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        # 文件在 exists() 检查后被删除（罕见情况）
        logger.debug(f"Config file disappeared: {path}")
        return {}
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in {path}: {e}")
        raise ConfigLoadError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        logger.error(f"Failed to load config from {path}: {e}")
        raise ConfigLoadError(f"Failed to load config from {path}: {e}") from e

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigLoadError(f"Config file {path} must contain a mapping")
    return content


def _parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def _coerce(merged: dict[str, Any], key: str, caster: Callable[[Any], Any], default: Any) -> Any:
    """按类型转换配置值；失败时抛出 ConfigLoadError"""
    value = merged.get(key, default)
    try:
        return caster(value)
    except (TypeError, ValueError) as e:
        logger.error(f"Invalid value for config key {key}: {value!r}")
        raise ConfigLoadError(f"Invalid value for config key {key}: {value!r}") from e


def load_config(
    working_dir: Optional[Path] = None,
    config_dir: Optional[Path] = None,
) -> TodoServerConfig:
    """
    加载配置

    Args:
        working_dir: 默认工作目录（默认取 TODO_SERVER_WORKING_DIR 或当前目录）
        config_dir: 全局配置目录（默认 ~/.todo-server）

    Returns:
        配置对象
    """
    # 1. 确定默认工作目录（参数 > 环境变量 > cwd）
    env_working_dir = os.getenv("TODO_SERVER_WORKING_DIR")
    base_dir = Path(working_dir or env_working_dir or Path.cwd()).expanduser()

    # 2. 加载全局配置与项目配置（项目覆盖全局）
    global_cfg = _load_yaml_config((config_dir or DEFAULT_GLOBAL_CONFIG_DIR) / "config.yaml")
    project_cfg = _load_yaml_config(base_dir / PROJECT_CONFIG_NAME)
    merged = {**global_cfg, **project_cfg}

    # 3. 环境变量覆盖（字符串）
    env_overrides = {
        "template_dir": os.getenv("TODO_SERVER_TEMPLATE_DIR"),
        "log_level": os.getenv("TODO_SERVER_LOG_LEVEL"),
        "http_host": os.getenv("TODO_SERVER_HOST"),
    }
    for key, value in env_overrides.items():
        if value:
            merged[key] = value

    auto_archive_env = os.getenv("TODO_SERVER_AUTO_ARCHIVE")
    if auto_archive_env is not None:
        merged["auto_archive"] = auto_archive_env

    # 数值型环境变量覆盖
    numeric_env_mapping = {
        "index_timeout": ("TODO_SERVER_INDEX_TIMEOUT", float),
        "sweep_interval": ("TODO_SERVER_SWEEP_INTERVAL", float),
        "idle_threshold": ("TODO_SERVER_IDLE_THRESHOLD", float),
        "http_port": ("TODO_SERVER_PORT", int),
    }
    for config_key, (env_key, caster) in numeric_env_mapping.items():
        env_value = os.getenv(env_key)
        if env_value is not None:
            try:
                merged[config_key] = caster(env_value)
            except ValueError:
                logger.warning(f"Invalid numeric value for {env_key}: {env_value}")

    template_dir = merged.get("template_dir")

    # 4. 构建配置对象
    return TodoServerConfig(
        working_dir=base_dir,
        template_dir=Path(str(template_dir)).expanduser() if template_dir else None,
        auto_archive=_parse_bool(merged.get("auto_archive", True)),
        log_level=str(merged.get("log_level", "INFO")).upper(),
        index_timeout=_coerce(merged, "index_timeout", float, 30.0),
        sweep_interval=_coerce(merged, "sweep_interval", float, 600.0),
        idle_threshold=_coerce(merged, "idle_threshold", float, 900.0),
        max_creation_attempts=_coerce(merged, "max_creation_attempts", int, 3),
        breaker_backoff=_coerce(merged, "breaker_backoff", float, 30.0),
        request_timeout=_coerce(merged, "request_timeout", float, 30.0),
        search_limit=_coerce(merged, "search_limit", int, 10),
        search_limit_max=_coerce(merged, "search_limit_max", int, 100),
        clean_days=_coerce(merged, "clean_days", int, 90),
        http_host=str(merged.get("http_host", "localhost")),
        http_port=_coerce(merged, "http_port", int, 8080),
    )


def configure_logging(level: str = "INFO") -> None:
    """
    配置根日志

    只写 stderr：stdio 模式下 stdout 是 MCP 协议通道（JSON-RPC）。
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_todo_server", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler._todo_server = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


# === 全局单例 ===
_config: Optional[TodoServerConfig] = None


def get_config(force_reload: bool = False) -> TodoServerConfig:
    """
    获取配置单例

    Args:
        force_reload: 强制重新加载

    Returns:
        配置对象
    """
    global _config

    if _config is None or force_reload:
        _config = load_config()

    return _config


def set_config(config: TodoServerConfig) -> None:
    """替换配置单例（CLI 参数覆盖与测试使用）"""
    global _config
    _config = config


def reset_config():
    """重置配置单例（用于测试）"""
    global _config
    _config = None


__all__ = [
    "ConfigLoadError",
    "DEFAULT_GLOBAL_CONFIG_DIR",
    "TodoServerConfig",
    "configure_logging",
    "get_config",
    "load_config",
    "reset_config",
    "set_config",
]
