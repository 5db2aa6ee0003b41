"""
Search Index - SQLite FTS5 全文索引

索引文件：<W>/.claude/index/todos.db
- 每次调用打开一个连接（row_factory = sqlite3.Row）
- 写操作由锁串行化
- 打开时重建全部活跃 todo 的索引（耗时步骤，由 manager 工厂限时）

索引是尽力而为的：文件存储才是权威数据，搜索结果可能滞后。
"""

import logging
import re
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Mapping, Optional

from todo_server.core.context import RequestContext, check_context
from todo_server.core.errors import OperationError, TodoError, ValidationError
from todo_server.models.todo import SearchResult, Todo

logger = logging.getLogger(__name__)

INDEX_FILENAME = "todos.db"

_TERM_RE = re.compile(r"\w+", re.UNICODE)
_ISO_FORMAT = "%Y-%m-%dT%H:%M:%S"
_SNIPPET_COLUMN = 6  # content 列下标
_PLAIN_SNIPPET_LENGTH = 150
_MIN_SCORE = 0.01


def _parse_filter_date(field: str, value: Any) -> Optional[datetime]:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return datetime.strptime(text, "%Y-%m-%d")
    except ValueError:
        raise ValidationError(f"filters.{field}", f"invalid date '{text}', expected YYYY-MM-DD") from None


def build_match_query(query: str) -> str:
    """把用户输入转为 FTS5 查询：每个词加引号，隐式 AND"""
    return " ".join(f'"{term}"' for term in _TERM_RE.findall(query))


class SearchIndex:
    """SQLite FTS5 索引"""

    def __init__(self, index_dir: Path):
        """
        初始化索引

        Args:
            index_dir: 索引目录（<W>/.claude/index）

        Raises:
            OperationError: SQLite 不可用或不支持 FTS5
        """
        self.db_path = Path(index_dir) / INDEX_FILENAME
        self._lock = threading.Lock()
        self._closed = False
        self._init_db()

    def _init_db(self) -> None:
        """创建 FTS5 虚拟表"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(str(self.db_path))
            try:
                conn.execute(
                    """
                    CREATE VIRTUAL TABLE IF NOT EXISTS todos_fts USING fts5(
                        id UNINDEXED,
                        task,
                        status UNINDEXED,
                        priority UNINDEXED,
                        type UNINDEXED,
                        started UNINDEXED,
                        content,
                        tokenize = 'unicode61'
                    )
                    """
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise OperationError("index", f"failed to open search index: {e}") from e

    def _get_conn(self) -> sqlite3.Connection:
        """获取数据库连接；打开失败同样转换为 OperationError"""
        if self._closed:
            raise OperationError("search", "index is closed")
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        except sqlite3.Error as e:
            raise OperationError("index", f"failed to open search index: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    @property
    def closed(self) -> bool:
        return self._closed

    # === 写入 ===

    def index_todo(self, todo: Todo, body: str) -> None:
        """索引（或重新索引）一个 todo"""
        with self._lock:
            conn = self._get_conn()
            try:
                conn.execute("DELETE FROM todos_fts WHERE id = ?", (todo.id,))
                conn.execute(
                    """
                    INSERT INTO todos_fts (id, task, status, priority, type, started, content)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        todo.id,
                        todo.task,
                        todo.status,
                        todo.priority,
                        todo.type,
                        todo.started.strftime(_ISO_FORMAT),
                        body,
                    ),
                )
                conn.commit()
            except sqlite3.Error as e:
                raise OperationError("index", str(e)) from e
            finally:
                conn.close()

    def delete_todo(self, todo_id: str) -> None:
        with self._lock:
            conn = self._get_conn()
            try:
                conn.execute("DELETE FROM todos_fts WHERE id = ?", (todo_id,))
                conn.commit()
            except sqlite3.Error as e:
                raise OperationError("index", str(e)) from e
            finally:
                conn.close()

    def reindex_all(self, store, context: Optional[RequestContext] = None) -> int:
        """清空后重建全部活跃 todo 的索引，返回索引数量"""
        with self._lock:
            conn = self._get_conn()
            try:
                conn.execute("DELETE FROM todos_fts")
                conn.commit()
            except sqlite3.Error as e:
                raise OperationError("index", str(e)) from e
            finally:
                conn.close()

        count = 0
        for todo in store.list_todos(context=context):
            check_context(context)
            try:
                self.index_todo(todo, store.read_content(todo.id))
            except TodoError as e:
                logger.warning(f"Failed to index todo {todo.id}: {e}")
                continue
            count += 1
        logger.debug(f"Indexed {count} todos into {self.db_path}")
        return count

    # === 查询 ===

    def search_todos(
        self,
        query: str,
        filters: Optional[Mapping[str, Any]] = None,
        limit: int = 10,
        context: Optional[RequestContext] = None,
    ) -> list[SearchResult]:
        """
        全文搜索

        Args:
            query: 查询文本（空字符串匹配全部，按 started 倒序）
            filters: status / date_from / date_to（YYYY-MM-DD，date_to 含当天）
            limit: 最大返回数量
            context: 请求上下文

        Returns:
            搜索结果，score 归一化到 (0, 1]
        """
        filters = filters or {}
        conditions: list[str] = []
        params: list[Any] = []

        status = str(filters.get("status") or "").strip()
        if status:
            conditions.append("status = ?")
            params.append(status)
        date_from = _parse_filter_date("date_from", filters.get("date_from"))
        if date_from is not None:
            conditions.append("started >= ?")
            params.append(date_from.strftime(_ISO_FORMAT))
        date_to = _parse_filter_date("date_to", filters.get("date_to"))
        if date_to is not None:
            conditions.append("started < ?")
            params.append((date_to + timedelta(days=1)).strftime(_ISO_FORMAT))

        match_query = build_match_query(query)
        if match_query:
            sql = f"""
                SELECT id, task, bm25(todos_fts) AS rank,
                       snippet(todos_fts, {_SNIPPET_COLUMN}, '', '', '...', 16) AS snippet
                FROM todos_fts
                WHERE todos_fts MATCH ?{''.join(' AND ' + c for c in conditions)}
                ORDER BY rank
                LIMIT ?
            """
            params = [match_query, *params, limit]
        else:
            where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            sql = f"""
                SELECT id, task, 0.0 AS rank, substr(content, 1, {_PLAIN_SNIPPET_LENGTH}) AS snippet
                FROM todos_fts
                {where}
                ORDER BY started DESC
                LIMIT ?
            """
            params = [*params, limit]

        check_context(context)
        conn = self._get_conn()
        try:
            rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise OperationError("search", str(e)) from e
        finally:
            conn.close()

        best = min((row["rank"] for row in rows), default=0.0)
        results = []
        for row in rows:
            check_context(context)
            if best < 0:
                score = max(row["rank"] / best, _MIN_SCORE)
            else:
                score = 1.0
            results.append(
                SearchResult(
                    id=row["id"],
                    task=row["task"],
                    score=round(score, 4),
                    snippet=" ".join((row["snippet"] or "").split()),
                )
            )
        return results

    def get_indexed_count(self) -> int:
        conn = self._get_conn()
        try:
            row = conn.execute("SELECT COUNT(*) AS total FROM todos_fts").fetchone()
        except sqlite3.Error as e:
            raise OperationError("index", str(e)) from e
        finally:
            conn.close()
        return int(row["total"])

    def close(self) -> None:
        """关闭索引；之后的调用抛出 OperationError"""
        self._closed = True


__all__ = ["INDEX_FILENAME", "SearchIndex", "build_match_query"]
