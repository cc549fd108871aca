"""
知识库仓库模块

提供知识库条目的数据库操作，包括新增、导入、停用、检索和使用次数统计。
使用SQLite作为存储引擎，向量检索委托给 EmbeddingIndex。
"""

from __future__ import annotations

import functools
import json
import logging
import sqlite3
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, TypeVar

from autoreply.models import KnowledgeEntry

if TYPE_CHECKING:
    from autoreply.qa.vector_index import EmbeddingIndex

logger = logging.getLogger(__name__)

T = TypeVar('T')


def retry_on_locked(max_retries: int = 5, base_delay: float = 0.1):
    """
    装饰器：在数据库锁定时自动重试

    使用指数退避策略重试数据库操作。

    Args:
        max_retries: 最大重试次数
        base_delay: 基础延迟时间（秒）
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            last_exception = None
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    if "database is locked" not in str(e):
                        raise
                    last_exception = e
                    if attempt < max_retries:
                        delay = base_delay * (2 ** attempt)
                        logger.warning(
                            f"Database locked, retrying in {delay:.2f}s "
                            f"(attempt {attempt + 1}/{max_retries})"
                        )
                        time.sleep(delay)
            raise last_exception
        return wrapper
    return decorator


class KnowledgeRepository:
    """
    知识库仓库：数据库操作

    保存知识条目的文本、分类、关键词、启用状态和使用统计。
    停用条目不会被 find_active / get_active_by_ids / find_by_embedding 返回。

    Attributes:
        db_path: SQLite数据库文件路径
        index: 向量索引（可选，未设置时视为没有任何向量）
    """

    def __init__(
        self,
        db_path: str,
        index: EmbeddingIndex | None = None,
        timeout: float = 30.0
    ):
        """
        初始化仓库

        Args:
            db_path: SQLite数据库文件路径，使用':memory:'创建内存数据库
            index: 向量索引（可选）
            timeout: 数据库锁等待超时时间（秒），默认30秒
        """
        self.db_path = db_path
        self.index = index
        self.timeout = timeout
        self._connection: sqlite3.Connection | None = None

    def _get_connection(self) -> sqlite3.Connection:
        """
        获取数据库连接

        使用WAL模式提高并发性能，设置超时时间避免锁定错误。
        """
        if self._connection is None:
            self._connection = sqlite3.connect(
                self.db_path,
                timeout=self.timeout,
                check_same_thread=False
            )
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA journal_mode=WAL")
            self._connection.execute(f"PRAGMA busy_timeout={int(self.timeout * 1000)}")
        return self._connection

    def close(self):
        """关闭数据库连接"""
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    @retry_on_locked(max_retries=5, base_delay=0.1)
    def init_db(self):
        """
        初始化数据库表结构

        创建knowledge_entries表和相关索引。如果表已存在则不会重复创建。
        """
        conn = self._get_connection()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS knowledge_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                question TEXT NOT NULL,
                answer TEXT NOT NULL,
                category TEXT,
                keywords TEXT DEFAULT '[]',
                is_active INTEGER DEFAULT 1,
                usage_count INTEGER DEFAULT 0,
                last_used_at TEXT,
                is_synced INTEGER DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_knowledge_question ON knowledge_entries(question);
            CREATE INDEX IF NOT EXISTS idx_knowledge_active ON knowledge_entries(is_active);
            CREATE INDEX IF NOT EXISTS idx_knowledge_category ON knowledge_entries(category);
        """)
        conn.commit()

    # =========================================================================
    # 写操作
    # =========================================================================

    @retry_on_locked(max_retries=5, base_delay=0.1)
    def add_entry(
        self,
        question: str,
        answer: str,
        category: str | None = None,
        keywords: list[str] | None = None,
        is_active: bool = True
    ) -> KnowledgeEntry:
        """
        新增知识条目

        Args:
            question: 标准问题
            answer: 标准答案
            category: 分类（可选）
            keywords: 关键词列表（可选）
            is_active: 是否启用

        Returns:
            新建的条目

        Raises:
            ValueError: 问题或答案为空
        """
        if not question or not question.strip():
            raise ValueError("question cannot be empty")
        if not answer or not answer.strip():
            raise ValueError("answer cannot be empty")

        now = datetime.now().isoformat()
        conn = self._get_connection()
        cursor = conn.execute("""
            INSERT INTO knowledge_entries (
                question, answer, category, keywords, is_active,
                is_synced, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, 0, ?, ?)
        """, (
            question.strip(),
            answer.strip(),
            category or None,
            json.dumps(keywords or [], ensure_ascii=False),
            1 if is_active else 0,
            now,
            now,
        ))
        conn.commit()
        return self.get(cursor.lastrowid)

    @retry_on_locked(max_retries=5, base_delay=0.1)
    def update_entry(
        self,
        entry_id: int,
        answer: str | None = None,
        category: str | None = None,
        keywords: list[str] | None = None
    ) -> KnowledgeEntry | None:
        """
        更新知识条目内容，并标记为未同步向量

        Returns:
            更新后的条目，不存在返回 None
        """
        existing = self.get(entry_id)
        if existing is None:
            return None

        conn = self._get_connection()
        conn.execute("""
            UPDATE knowledge_entries
            SET answer = ?, category = ?, keywords = ?, is_synced = 0, updated_at = ?
            WHERE id = ?
        """, (
            answer.strip() if answer else existing.answer,
            category if category is not None else existing.category,
            json.dumps(
                keywords if keywords is not None else existing.keywords,
                ensure_ascii=False
            ),
            datetime.now().isoformat(),
            entry_id,
        ))
        conn.commit()
        return self.get(entry_id)

    def import_entries(self, items: list[dict[str, Any]]) -> dict[str, Any]:
        """
        批量导入知识条目

        问题已存在时更新答案、分类和关键词，否则新建。

        Args:
            items: 条目字典列表，包含 question, answer, category（可选）, keywords（可选）

        Returns:
            {'created': int, 'updated': int, 'errors': list[str]}
        """
        created = 0
        updated = 0
        errors: list[str] = []

        for i, item in enumerate(items):
            question = (item.get('question') or '').strip()
            answer = (item.get('answer') or '').strip()
            if not question or not answer:
                errors.append(f"第 {i + 1} 筆: question 與 answer 為必填")
                continue

            keywords = item.get('keywords') or []
            if isinstance(keywords, str):
                keywords = [k.strip() for k in keywords.split(',') if k.strip()]

            try:
                existing = self.find_by_question(question)
                if existing:
                    self.update_entry(
                        existing.id,
                        answer=answer,
                        category=item.get('category'),
                        keywords=keywords,
                    )
                    updated += 1
                else:
                    self.add_entry(
                        question,
                        answer,
                        category=item.get('category'),
                        keywords=keywords,
                    )
                    created += 1
            except (sqlite3.Error, ValueError) as e:
                logger.error(f"Failed to import entry {i + 1}: {e}")
                errors.append(f"第 {i + 1} 筆: {e}")

        logger.info(
            f"Imported knowledge entries: created={created}, "
            f"updated={updated}, errors={len(errors)}"
        )
        return {'created': created, 'updated': updated, 'errors': errors}

    @retry_on_locked(max_retries=5, base_delay=0.1)
    def deactivate(self, entry_id: int) -> bool:
        """
        停用知识条目，同时从向量索引移除

        Returns:
            条目存在且已停用返回 True
        """
        conn = self._get_connection()
        cursor = conn.execute("""
            UPDATE knowledge_entries
            SET is_active = 0, is_synced = 0, updated_at = ?
            WHERE id = ?
        """, (datetime.now().isoformat(), entry_id))
        conn.commit()

        if cursor.rowcount == 0:
            return False

        if self.index is not None:
            self.index.remove(entry_id)
        return True

    @retry_on_locked(max_retries=5, base_delay=0.1)
    def increment_usage(self, entry_id: int) -> None:
        """
        使用次数加一并记录最后使用时间

        在 SQL 层做原子自增，多个请求并发引用同一条目时不会丢失计数。
        """
        conn = self._get_connection()
        conn.execute("""
            UPDATE knowledge_entries
            SET usage_count = usage_count + 1, last_used_at = ?
            WHERE id = ?
        """, (datetime.now().isoformat(), entry_id))
        conn.commit()

    @retry_on_locked(max_retries=5, base_delay=0.1)
    def mark_synced(self, entry_ids: list[int]) -> None:
        """标记条目向量已同步"""
        if not entry_ids:
            return

        conn = self._get_connection()
        placeholders = ','.join('?' * len(entry_ids))
        conn.execute(
            f"UPDATE knowledge_entries SET is_synced = 1 WHERE id IN ({placeholders})",
            list(entry_ids)
        )
        conn.commit()

    # =========================================================================
    # 读操作
    # =========================================================================

    def get(self, entry_id: int) -> KnowledgeEntry | None:
        """根据ID获取条目（含停用条目）"""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM knowledge_entries WHERE id = ?", (entry_id,)
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def find_by_question(self, question: str) -> KnowledgeEntry | None:
        """根据问题文本精确查找条目"""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM knowledge_entries WHERE question = ? ORDER BY id LIMIT 1",
            (question.strip(),)
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def find_active(self, categories: list[str] | None = None) -> list[KnowledgeEntry]:
        """
        获取启用中的条目

        Args:
            categories: 分类过滤，None 或空列表表示全部

        Returns:
            条目列表（按 ID 升序）
        """
        query = "SELECT * FROM knowledge_entries WHERE is_active = 1"
        params: list[Any] = []

        if categories:
            placeholders = ','.join('?' * len(categories))
            query += f" AND category IN ({placeholders})"
            params.extend(categories)

        query += " ORDER BY id"

        conn = self._get_connection()
        rows = conn.execute(query, params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_active_by_ids(self, entry_ids: list[int]) -> list[KnowledgeEntry]:
        """
        按给定 ID 顺序获取启用中的条目，停用或不存在的条目被忽略
        """
        if not entry_ids:
            return []

        conn = self._get_connection()
        placeholders = ','.join('?' * len(entry_ids))
        rows = conn.execute(
            f"SELECT * FROM knowledge_entries WHERE is_active = 1 AND id IN ({placeholders})",
            list(entry_ids)
        ).fetchall()

        by_id = {row['id']: self._row_to_entry(row) for row in rows}
        return [by_id[i] for i in entry_ids if i in by_id]

    def find_unsynced(self) -> list[KnowledgeEntry]:
        """获取向量未同步的启用条目"""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM knowledge_entries WHERE is_active = 1 AND is_synced = 0 ORDER BY id"
        ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def has_embeddings(self) -> bool:
        """向量索引中是否至少有一个向量"""
        return self.index is not None and self.index.count() > 0

    def find_by_embedding(
        self,
        vector: list[float],
        k: int,
        threshold: float,
        categories: list[str] | None = None
    ) -> list[tuple[KnowledgeEntry, float]]:
        """
        向量相似度检索

        Args:
            vector: 查询向量
            k: 最大返回数
            threshold: 余弦相似度阈值
            categories: 分类过滤

        Returns:
            (条目, 相似度) 列表，按相似度降序，只含启用条目
        """
        if self.index is None:
            return []

        hits = self.index.query(vector, k=k, threshold=threshold, categories=categories)
        if not hits:
            return []

        entries = {e.id: e for e in self.get_active_by_ids([entry_id for entry_id, _ in hits])}
        return [
            (entries[entry_id], similarity)
            for entry_id, similarity in hits
            if entry_id in entries
        ]

    def count(self, active_only: bool = True) -> int:
        """条目数量"""
        query = "SELECT COUNT(*) FROM knowledge_entries"
        if active_only:
            query += " WHERE is_active = 1"
        conn = self._get_connection()
        return conn.execute(query).fetchone()[0]

    def _row_to_entry(self, row: sqlite3.Row) -> KnowledgeEntry:
        """将数据库行转换为 KnowledgeEntry"""
        try:
            keywords = json.loads(row['keywords'] or '[]')
        except json.JSONDecodeError:
            logger.warning(f"Invalid keywords JSON for entry {row['id']}")
            keywords = []

        return KnowledgeEntry(
            id=row['id'],
            question=row['question'],
            answer=row['answer'],
            category=row['category'],
            keywords=keywords,
            is_active=bool(row['is_active']),
            usage_count=row['usage_count'],
            last_used_at=(
                datetime.fromisoformat(row['last_used_at']) if row['last_used_at'] else None
            ),
            is_synced=bool(row['is_synced']),
            created_at=datetime.fromisoformat(row['created_at']),
            updated_at=datetime.fromisoformat(row['updated_at']),
        )
