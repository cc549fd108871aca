"""
问题追踪模块

根据决策结果构建待处理问题（Issue）：已自动回复的问题以 REPLIED 创建并记录回复时间，
否则以 PENDING 创建，均设置超时时间供外部巡检把逾期问题转为 TIMEOUT。
"""

import logging
from datetime import datetime, timedelta

from autoreply.models import Issue, IssueStatus, Sentiment
from autoreply.qa.config import IssueConfig

logger = logging.getLogger(__name__)


class IssueTracker:
    """
    问题构建器

    Attributes:
        config: 问题追踪配置
    """

    def __init__(self, config: IssueConfig | None = None):
        self.config = config or IssueConfig()

    def build_issue(
        self,
        group_id: str,
        question_summary: str,
        confidence: int,
        reply: str | None,
        sentiment: Sentiment = Sentiment.NEUTRAL,
        trigger_message_id: str | None = None,
        customer_id: str | None = None,
        now: datetime | None = None
    ) -> Issue:
        """
        构建新问题

        Args:
            group_id: 群组 ID
            question_summary: 问题摘要
            confidence: 问题检测信心度
            reply: 已发送的回复，None 表示未回复
            sentiment: 客户情绪
            trigger_message_id: 触发消息 ID
            customer_id: 提问成员 ID
            now: 创建时间（默认当前时间）

        Returns:
            尚未入库的 Issue
        """
        created_at = now or datetime.now()
        replied = reply is not None

        issue = Issue(
            group_id=group_id,
            question_summary=question_summary,
            status=IssueStatus.REPLIED if replied else IssueStatus.PENDING,
            sentiment=sentiment,
            confidence=confidence,
            suggested_reply=reply,
            timeout_at=created_at + timedelta(minutes=self.config.timeout_minutes),
            replied_at=created_at if replied else None,
            trigger_message_id=trigger_message_id,
            customer_id=customer_id,
            created_at=created_at,
        )
        logger.debug(f"Built issue for group {group_id}: status={issue.status.value}")
        return issue
