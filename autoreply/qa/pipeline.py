"""
自动回复流水线模块

把决策引擎输出的 ReplyDecision 付诸执行：发送回复、追加自动回复日志、建立问题。
持久化失败只记录日志，不影响已经做出的回复。

使用示例:
    >>> pipeline = build_pipeline(load_autoreply_config(config), reply_sender=send)
    >>> decision = pipeline.handle(InboundMessage(group_id='G1', text='怎麼建立課程？'))
"""

import logging
from datetime import datetime
from typing import Callable

from autoreply.analyzers.answer_generator import create_answer_generator
from autoreply.models import AutoReplyLog, IssueStatus
from autoreply.qa.answer_service import AnswerService
from autoreply.qa.config import AutoReplyConfig, GroupConfigProvider
from autoreply.qa.conversation_analyzer import ConversationAnalyzer
from autoreply.qa.decision_engine import ReplyDecisionEngine
from autoreply.qa.embedding_service import create_embedding_service
from autoreply.qa.exceptions import PersistenceError
from autoreply.qa.issue_tracker import IssueTracker
from autoreply.qa.models import ChatMessage, InboundMessage, ReplyDecision
from autoreply.qa.retriever import RetrievalOrchestrator
from autoreply.qa.vector_index import EmbeddingIndex
from autoreply.repository import KnowledgeRepository
from autoreply.store import ReplyStore

logger = logging.getLogger(__name__)

ReplySender = Callable[[str, str], None]

# 读取机器人回复日志的条数上限
BOT_LOG_LIMIT = 20


class AutoReplyPipeline:
    """
    自动回复流水线

    Attributes:
        engine: 回复决策引擎
        store: 问题与日志存储
        groups: 群组设定来源
        reply_sender: 发送回复的回调 (group_id, text)，可选
    """

    def __init__(
        self,
        engine: ReplyDecisionEngine,
        store: ReplyStore,
        groups: GroupConfigProvider,
        reply_sender: ReplySender | None = None
    ):
        self.engine = engine
        self.store = store
        self.groups = groups
        self.reply_sender = reply_sender

    def handle(
        self,
        message: InboundMessage,
        history: list[ChatMessage] | None = None,
        now: datetime | None = None
    ) -> ReplyDecision:
        """
        处理一条入站消息

        Args:
            message: 入站消息
            history: 最近的成员消息（可含当前消息）
            now: 处理时间（默认当前时间）

        Returns:
            已执行的 ReplyDecision
        """
        now = now or datetime.now()
        group = self.groups.get(message.group_id)

        bot_logs: list[AutoReplyLog] = []
        if history:
            bot_logs = self._recent_bot_logs(message.group_id, min(m.time for m in history))

        decision = self.engine.decide(message, group, history, bot_logs, now=now)

        if decision.reply is not None:
            self._send(message.group_id, decision.reply)

        if decision.log_payload is not None:
            try:
                self.store.insert_log(decision.log_payload)
            except PersistenceError as e:
                logger.warning(f"Failed to write auto-reply log: {e}", exc_info=True)

        if decision.create_issue and decision.issue_payload is not None:
            try:
                issue = self.store.insert_issue(decision.issue_payload)
                logger.info(
                    f"Created issue {issue.id} for group {issue.group_id} "
                    f"({issue.status.value})"
                )
            except PersistenceError as e:
                logger.error(f"Failed to create issue: {e}", exc_info=True)

        return decision

    def _recent_bot_logs(self, group_id: str, since: datetime) -> list[AutoReplyLog]:
        try:
            return self.store.recent_logs(group_id, since=since, limit=BOT_LOG_LIMIT)
        except PersistenceError as e:
            logger.warning(f"Failed to load recent auto-replies: {e}")
            return []

    def _send(self, group_id: str, text: str) -> None:
        if self.reply_sender is None:
            return
        try:
            self.reply_sender(group_id, text)
        except Exception as e:
            logger.error(f"Failed to send reply to {group_id}: {e}", exc_info=True)

    def expire_issues(self, now: datetime | None = None) -> int:
        return expire_issues(self.store, now)


def expire_issues(store: ReplyStore, now: datetime | None = None) -> int:
    """
    把超时仍为 PENDING 的问题转为 TIMEOUT，WAITING_CUSTOMER 保持不变

    Returns:
        转换的问题数量
    """
    now = now or datetime.now()
    expired = 0
    for issue in store.find_expired_issues(now):
        try:
            store.update_issue_status(issue.id, IssueStatus.TIMEOUT, now)
            expired += 1
        except ValueError as e:
            logger.warning(f"Skipped issue {issue.id}: {e}")
    if expired:
        logger.info(f"Marked {expired} issues as timed out")
    return expired


# =============================================================================
# 组装
# =============================================================================

def create_repository(config: AutoReplyConfig) -> KnowledgeRepository:
    """
    创建知识库仓库，并在 ChromaDB 可用时挂上向量索引

    向量索引初始化失败时只做关键词检索。
    """
    try:
        index = EmbeddingIndex(config.chroma)
    except RuntimeError as e:
        logger.warning(f"Vector index unavailable, using keyword retrieval only: {e}")
        index = None

    repository = KnowledgeRepository(config.storage.knowledge_db, index=index)
    repository.init_db()
    return repository


def build_pipeline(
    config: AutoReplyConfig,
    reply_sender: ReplySender | None = None,
    repository: KnowledgeRepository | None = None
) -> AutoReplyPipeline:
    """
    按配置组装完整的自动回复流水线

    Args:
        config: 自动回复配置
        reply_sender: 发送回复的回调（可选）
        repository: 已创建的知识库仓库（可选）

    Returns:
        AutoReplyPipeline 实例
    """
    repository = repository or create_repository(config)
    embedding_service = (
        create_embedding_service(config) if repository.index is not None else None
    )
    generator = create_answer_generator(config.generator)

    retriever = RetrievalOrchestrator(repository, embedding_service, config.retrieval)
    engine = ReplyDecisionEngine(
        analyzer=ConversationAnalyzer(generator, window_size=config.decision.window_size),
        answer_service=AnswerService(retriever, generator),
        issue_tracker=IssueTracker(config.issue),
        config=config.decision,
    )

    logger.info(
        f"Auto-reply pipeline ready: provider={config.generator.provider}, "
        f"model={config.generator.model}, vector={embedding_service is not None}"
    )

    return AutoReplyPipeline(
        engine=engine,
        store=ReplyStore(config.storage.reply_db),
        groups=GroupConfigProvider(config),
        reply_sender=reply_sender,
    )
