"""
Manager Factory - 按工作目录缓存 manager set

一个 manager set = (TodoStore, SearchIndex, StatsEngine, TemplateManager, TodoLinker)，
服务于一个工作目录。工厂负责：
1. 并发缓存：读写锁 + double-checked locking，每个工作目录至多创建一次
2. 熔断：同一工作目录连续创建失败达到阈值后，退避期内直接返回基础 manager set
3. 限时创建索引：超时则该 set 不带索引（搜索不可用），其余功能正常
4. 后台清理：定期驱逐空闲的 set 并关闭其索引（每个索引只关闭一次）

用法：
    factory = get_manager_factory()
    managers = factory.get_managers("/path/to/project")
    managers.store.create("Build API")
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Optional

from todo_server.config import TodoServerConfig, get_config
from todo_server.core.context import RequestContext
from todo_server.core.errors import OperationError
from todo_server.core.paths import TodoPaths, resolve_paths
from todo_server.services.linker import TodoLinker
from todo_server.services.search_index import SearchIndex
from todo_server.services.stats import StatsEngine
from todo_server.services.templates import TemplateManager
from todo_server.services.todo_store import TodoStore

logger = logging.getLogger(__name__)

IndexFactory = Callable[[TodoPaths, TodoStore], Any]


def open_search_index(paths: TodoPaths, store: TodoStore) -> SearchIndex:
    """打开索引并重建全部活跃 todo 的索引"""
    index = SearchIndex(paths.index)
    index.reindex_all(store)
    return index


class ReadWriteLock:
    """多读单写锁（不支持读锁升级为写锁）"""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            while self._writer or self._readers > 0:
                self._cond.wait()
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


@dataclass
class ManagerSet:
    """一个工作目录的全部 manager"""

    paths: TodoPaths
    store: TodoStore
    stats: StatsEngine
    templates: TemplateManager
    linker: TodoLinker
    index: Optional[Any] = None  # None 表示搜索不可用
    created_at: float = 0.0
    last_accessed: float = 0.0
    _close_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _closed: bool = field(default=False, repr=False)

    @property
    def working_dir(self) -> str:
        return str(self.paths.root)

    def touch(self, timestamp: float) -> None:
        self.last_accessed = timestamp

    def close(self) -> None:
        """关闭索引（重复调用无副作用）"""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        if self.index is not None and hasattr(self.index, "close"):
            try:
                self.index.close()
            except Exception as e:
                logger.warning(f"Failed to close index for {self.working_dir}: {e}")


@dataclass
class BreakerState:
    """熔断状态"""

    attempts: int = 0
    last_failure_at: float = 0.0


class ManagerFactory:
    """
    Manager set 工厂

    并发语义：
    - 缓存映射是唯一的共享可变结构，由读写锁保护
    - 熔断状态只在写锁内修改
    - 索引由移除其 set 的一方（驱逐或关闭）关闭
    """

    def __init__(
        self,
        config: Optional[TodoServerConfig] = None,
        index_factory: Optional[IndexFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        初始化工厂

        Args:
            config: 配置（默认取全局配置）
            index_factory: 索引构造函数 (paths, store) -> index
            clock: 单调时钟（测试中可替换）
        """
        self.config = config or get_config()
        self._index_factory = index_factory or open_search_index
        self._clock = clock

        self._sets: dict[str, ManagerSet] = {}
        self._breakers: dict[str, BreakerState] = {}
        self._lock = ReadWriteLock()

        self._base: Optional[ManagerSet] = None
        self._base_lock = threading.Lock()

        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="todo-index")
        self._stop = threading.Event()
        self._done = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

        # 创建次数（包括基础 set），用于观测
        self.creation_count = 0

    # === 创建 ===

    def _create_index(self, paths: TodoPaths, store: TodoStore, context: Optional[RequestContext]) -> Optional[Any]:
        """在限时内创建索引；超时或失败返回 None"""
        timeout = self.config.index_timeout
        if context is not None and context.remaining() is not None:
            timeout = min(timeout, context.remaining())

        future: Future = self._executor.submit(self._index_factory, paths, store)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            logger.warning(
                f"Index creation for {paths.root} timed out after {timeout:.1f}s, search disabled for this directory"
            )
            future.add_done_callback(_close_late_index)
            return None
        except Exception as e:
            logger.warning(f"Index creation for {paths.root} failed, search disabled: {e}")
            return None

    def _build(self, paths: TodoPaths, context: Optional[RequestContext]) -> ManagerSet:
        store = TodoStore(paths)
        index = self._create_index(paths, store, context)
        timestamp = self._clock()
        self.creation_count += 1
        logger.info(f"Created manager set for {paths.root} (search {'enabled' if index is not None else 'disabled'})")
        return ManagerSet(
            paths=paths,
            store=store,
            stats=StatsEngine(store),
            templates=TemplateManager(paths.templates, store),
            linker=TodoLinker(store),
            index=index,
            created_at=timestamp,
            last_accessed=timestamp,
        )

    def base_managers(self, context: Optional[RequestContext] = None) -> ManagerSet:
        """
        基础 manager set（默认工作目录，可带模板目录覆盖）

        Raises:
            OperationError: 默认工作目录无法创建
        """
        if self._base is not None:
            return self._base

        with self._base_lock:
            if self._base is None:
                paths = resolve_paths(self.config.working_dir, template_override=self.config.template_dir)
                try:
                    paths.ensure()
                except OSError as e:
                    raise OperationError(
                        "initialize", f"failed to create directories for {paths.root}: {e}"
                    ) from e
                self._base = self._build(paths, context)
            self._base.touch(self._clock())
            return self._base

    def _record_failure(self, key: str, timestamp: float) -> None:
        breaker = self._breakers.setdefault(key, BreakerState())
        breaker.attempts += 1
        breaker.last_failure_at = timestamp
        if breaker.attempts >= self.config.max_creation_attempts:
            logger.warning(f"Circuit breaker open for {key} after {breaker.attempts} failed attempts")

    def get_managers(self, working_directory: str = "", context: Optional[RequestContext] = None) -> ManagerSet:
        """
        取得工作目录对应的 manager set

        Args:
            working_directory: 工作目录（空字符串表示默认工作目录）
            context: 请求上下文（截止时间约束索引创建）

        Raises:
            ValidationError: 工作目录不合法
            OperationError: 目录创建失败
        """
        working_directory = (working_directory or "").strip()
        if not working_directory:
            return self.base_managers(context)

        paths = resolve_paths(working_directory)
        key = str(paths.root)
        if key == str(resolve_paths(self.config.working_dir).root):
            return self.base_managers(context)

        # 快速路径：读锁
        with self._lock.read_locked():
            managers = self._sets.get(key)
            if managers is not None:
                managers.touch(self._clock())
                return managers

        with self._lock.write_locked():
            # 再次检查：其他调用方可能已经创建
            managers = self._sets.get(key)
            if managers is not None:
                managers.touch(self._clock())
                return managers

            timestamp = self._clock()
            breaker = self._breakers.get(key)
            if breaker is not None and breaker.attempts >= self.config.max_creation_attempts:
                if timestamp - breaker.last_failure_at < self.config.breaker_backoff:
                    logger.warning(f"Circuit breaker open for {key}, using base managers")
                    return self.base_managers(context)
                breaker.attempts = 0

            try:
                paths.ensure()
            except OSError as e:
                self._record_failure(key, timestamp)
                raise OperationError("create manager set", f"failed to create directories for {key}: {e}") from e

            managers = self._build(paths, context)
            self._sets[key] = managers
            self._breakers.pop(key, None)
            return managers

    # === 观测 ===

    def get_active_count(self) -> int:
        with self._lock.read_locked():
            return len(self._sets)

    def working_directories(self) -> list[str]:
        with self._lock.read_locked():
            return sorted(self._sets)

    def breaker_state(self, working_directory: str) -> Optional[BreakerState]:
        key = str(resolve_paths(working_directory).root)
        with self._lock.read_locked():
            return self._breakers.get(key)

    # === 清理 ===

    def cleanup_stale(self, max_age: Optional[float] = None) -> int:
        """
        驱逐空闲超过 max_age 秒的 set 并关闭其索引

        Returns:
            驱逐数量
        """
        threshold = self.config.idle_threshold if max_age is None else max_age
        timestamp = self._clock()
        with self._lock.write_locked():
            stale = [key for key, managers in self._sets.items() if timestamp - managers.last_accessed > threshold]
            removed = [self._sets.pop(key) for key in stale]

        for managers in removed:
            managers.close()
        if removed:
            logger.info(f"Evicted {len(removed)} idle manager sets")
        return len(removed)

    def _sweep_loop(self) -> None:
        try:
            while not self._stop.wait(self.config.sweep_interval):
                try:
                    self.cleanup_stale()
                except Exception:
                    logger.exception("Manager sweeper iteration failed")
        finally:
            self._done.set()

    def start_sweeper(self) -> None:
        """启动后台清理线程（重复调用无副作用）"""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._done.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="todo-manager-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self, timeout: float = 5.0) -> bool:
        """发出停止信号并等待确认；返回是否已确认"""
        if self._sweeper is None:
            return True
        self._stop.set()
        acknowledged = self._done.wait(timeout)
        self._sweeper = None
        return acknowledged

    def close(self) -> None:
        """停止清理线程并关闭全部 manager set"""
        self.stop_sweeper()
        with self._lock.write_locked():
            removed = list(self._sets.values())
            self._sets.clear()
        for managers in removed:
            managers.close()
        with self._base_lock:
            if self._base is not None:
                self._base.close()
                self._base = None
        self._executor.shutdown(wait=False)


def _close_late_index(future: Future) -> None:
    """超时后才完成的索引无人持有，直接关闭"""
    if future.cancelled() or future.exception() is not None:
        return
    index = future.result()
    if index is not None and hasattr(index, "close"):
        index.close()


# 全局单例 + 线程安全锁
_factory: Optional[ManagerFactory] = None
_factory_lock = threading.Lock()


def get_manager_factory() -> ManagerFactory:
    """获取 ManagerFactory 单例（double-checked locking）"""
    global _factory

    if _factory is not None:
        return _factory

    with _factory_lock:
        if _factory is None:
            _factory = ManagerFactory()
        return _factory


def reset_manager_factory() -> None:
    """关闭并重置单例（用于测试和关闭流程）"""
    global _factory

    with _factory_lock:
        if _factory is not None:
            _factory.close()
        _factory = None


__all__ = [
    "BreakerState",
    "ManagerFactory",
    "ManagerSet",
    "ReadWriteLock",
    "get_manager_factory",
    "open_search_index",
    "reset_manager_factory",
]
