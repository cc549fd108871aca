"""
问题与自动回复日志存储
Issue and Auto-Reply Log Store

使用 SQLite 作为后端存储待处理问题和自动回复日志。
Uses SQLite as backend for storing issues and auto-reply logs.

自动回复日志只追加不修改；问题状态更新会校验状态转换是否合法。
"""

import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from functools import wraps
from typing import Callable, Generator, TypeVar

from autoreply.models import (
    AutoReplyLog,
    Issue,
    IssueStatus,
    Sentiment,
    can_transition,
)
from autoreply.qa.exceptions import PersistenceError
from autoreply.repository import retry_on_locked

logger = logging.getLogger(__name__)

T = TypeVar('T')


# 数据库 Schema
SCHEMA = """
-- 待处理问题表
CREATE TABLE IF NOT EXISTS issues (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id TEXT NOT NULL,
    question_summary TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    sentiment TEXT DEFAULT 'neutral',
    confidence INTEGER DEFAULT 0,
    suggested_reply TEXT,
    timeout_at DATETIME,
    replied_at DATETIME,
    trigger_message_id TEXT,
    customer_id TEXT,
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_issues_group_id ON issues(group_id);
CREATE INDEX IF NOT EXISTS idx_issues_status ON issues(status);
CREATE INDEX IF NOT EXISTS idx_issues_timeout_at ON issues(timeout_at);

-- 自动回复日志表
CREATE TABLE IF NOT EXISTS auto_reply_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id TEXT NOT NULL,
    message_id TEXT,
    member_id TEXT,
    question TEXT NOT NULL,
    answer TEXT,
    knowledge_id INTEGER,
    matched INTEGER DEFAULT 0,
    confidence INTEGER DEFAULT 0,
    created_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_auto_reply_logs_group_id ON auto_reply_logs(group_id);
CREATE INDEX IF NOT EXISTS idx_auto_reply_logs_created_at ON auto_reply_logs(created_at);
"""


def persistence_errors(func: Callable[..., T]) -> Callable[..., T]:
    """把 sqlite3 错误转换为 PersistenceError（在锁重试之外）"""
    @wraps(func)
    def wrapper(*args, **kwargs) -> T:
        try:
            return func(*args, **kwargs)
        except sqlite3.Error as e:
            raise PersistenceError(f"{func.__name__} failed: {e}") from e
    return wrapper


def _to_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class ReplyStore:
    """
    问题与自动回复日志存储
    Issue and Auto-Reply Log Store

    Attributes:
        db_path: 数据库文件路径
                 Database file path

    Examples:
        >>> store = ReplyStore('data/autoreply.db')
        >>> store.insert_log(AutoReplyLog(group_id='G1', question='怎麼建立課程'))
        >>> logs = store.recent_logs('G1')
    """

    def __init__(self, db_path: str = 'data/autoreply.db'):
        """
        初始化存储
        Initialize store

        Args:
            db_path: 数据库文件路径
                     Database file path
        """
        self.db_path = db_path
        self._ensure_directory()
        self._init_database()

    def _ensure_directory(self) -> None:
        """确保数据库目录存在"""
        dir_path = os.path.dirname(self.db_path)
        if dir_path and not os.path.exists(dir_path):
            os.makedirs(dir_path, exist_ok=True)

    def _init_database(self) -> None:
        """初始化数据库 schema"""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()
        logger.info(f"Reply database initialized: {self.db_path}")

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        获取数据库连接
        Get database connection
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # =========================================================================
    # Issue Operations
    # =========================================================================

    @persistence_errors
    @retry_on_locked(max_retries=5, base_delay=0.1)
    def insert_issue(self, issue: Issue) -> Issue:
        """
        插入问题
        Insert issue

        Returns:
            带有数据库 ID 的问题
            Issue with its database ID
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO issues (
                    group_id, question_summary, status, sentiment, confidence,
                    suggested_reply, timeout_at, replied_at, trigger_message_id,
                    customer_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    issue.group_id,
                    issue.question_summary,
                    issue.status.value,
                    issue.sentiment.value,
                    issue.confidence,
                    issue.suggested_reply,
                    issue.timeout_at.isoformat() if issue.timeout_at else None,
                    issue.replied_at.isoformat() if issue.replied_at else None,
                    issue.trigger_message_id,
                    issue.customer_id,
                    issue.created_at.isoformat(),
                )
            )
            conn.commit()
            issue.id = cursor.lastrowid
        return issue

    def get_issue(self, issue_id: int) -> Issue | None:
        """根据 ID 获取问题"""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM issues WHERE id = ?", (issue_id,)).fetchone()
        return self._row_to_issue(row) if row else None

    def list_issues(
        self,
        group_id: str | None = None,
        status: IssueStatus | None = None,
        limit: int = 100
    ) -> list[Issue]:
        """
        查询问题
        Query issues

        Returns:
            按创建时间倒序的问题列表
        """
        query = "SELECT * FROM issues WHERE 1=1"
        params: list = []

        if group_id:
            query += " AND group_id = ?"
            params.append(group_id)

        if status:
            query += " AND status = ?"
            params.append(status.value)

        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_issue(row) for row in rows]

    @persistence_errors
    @retry_on_locked(max_retries=5, base_delay=0.1)
    def update_issue_status(
        self,
        issue_id: int,
        status: IssueStatus,
        now: datetime | None = None
    ) -> Issue:
        """
        更新问题状态
        Update issue status

        转为 REPLIED 时记录回复时间。

        Raises:
            KeyError: 问题不存在
            ValueError: 状态转换不合法
        """
        issue = self.get_issue(issue_id)
        if issue is None:
            raise KeyError(f"Issue {issue_id} not found")

        if not can_transition(issue.status, status):
            raise ValueError(
                f"Invalid issue transition {issue.status.value} -> {status.value}"
            )

        now = now or datetime.now()
        replied_at = issue.replied_at
        if status == IssueStatus.REPLIED:
            replied_at = now

        with self._get_connection() as conn:
            conn.execute(
                "UPDATE issues SET status = ?, replied_at = ? WHERE id = ?",
                (status.value, replied_at.isoformat() if replied_at else None, issue_id)
            )
            conn.commit()

        issue.status = status
        issue.replied_at = replied_at
        return issue

    @persistence_errors
    def find_expired_issues(self, now: datetime | None = None) -> list[Issue]:
        """
        查询已超时但仍为 PENDING 的问题
        Query PENDING issues past their timeout

        WAITING_CUSTOMER 由客服人工设定，不参与超时巡检。
        """
        now = now or datetime.now()
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM issues
                WHERE status = ? AND timeout_at IS NOT NULL AND timeout_at <= ?
                ORDER BY timeout_at
                """,
                (IssueStatus.PENDING.value, now.isoformat())
            ).fetchall()
        return [self._row_to_issue(row) for row in rows]

    def _row_to_issue(self, row: sqlite3.Row) -> Issue:
        return Issue(
            id=row['id'],
            group_id=row['group_id'],
            question_summary=row['question_summary'],
            status=IssueStatus(row['status']),
            sentiment=Sentiment.parse(row['sentiment']),
            confidence=row['confidence'],
            suggested_reply=row['suggested_reply'],
            timeout_at=_to_datetime(row['timeout_at']),
            replied_at=_to_datetime(row['replied_at']),
            trigger_message_id=row['trigger_message_id'],
            customer_id=row['customer_id'],
            created_at=datetime.fromisoformat(row['created_at']),
        )

    # =========================================================================
    # Auto-Reply Log Operations
    # =========================================================================

    @persistence_errors
    @retry_on_locked(max_retries=5, base_delay=0.1)
    def insert_log(self, log: AutoReplyLog) -> int:
        """
        追加自动回复日志
        Append auto-reply log

        Returns:
            插入的记录 ID
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO auto_reply_logs (
                    group_id, message_id, member_id, question, answer,
                    knowledge_id, matched, confidence, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log.group_id,
                    log.message_id,
                    log.member_id,
                    log.question,
                    log.answer,
                    log.knowledge_id,
                    1 if log.matched else 0,
                    log.confidence,
                    log.created_at.isoformat(),
                )
            )
            conn.commit()
            log.id = cursor.lastrowid
            return cursor.lastrowid or 0

    @persistence_errors
    def recent_logs(
        self,
        group_id: str,
        since: datetime | None = None,
        limit: int = 20
    ) -> list[AutoReplyLog]:
        """
        查询群组最近的自动回复日志
        Query recent auto-reply logs of a group

        Returns:
            由旧到新的日志列表
        """
        query = "SELECT * FROM auto_reply_logs WHERE group_id = ?"
        params: list = [group_id]

        if since:
            query += " AND created_at >= ?"
            params.append(since.isoformat())

        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        logs = [
            AutoReplyLog(
                id=row['id'],
                group_id=row['group_id'],
                message_id=row['message_id'],
                member_id=row['member_id'],
                question=row['question'],
                answer=row['answer'],
                knowledge_id=row['knowledge_id'],
                matched=bool(row['matched']),
                confidence=row['confidence'],
                created_at=datetime.fromisoformat(row['created_at']),
            )
            for row in rows
        ]
        logs.reverse()
        return logs
