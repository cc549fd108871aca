"""
持久化数据模型模块

定义知识库条目、群组设定、待处理问题（Issue）和自动回复日志的数据模型。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class IssueStatus(Enum):
    """问题状态"""
    PENDING = "PENDING"                      # 等待人工处理
    REPLIED = "REPLIED"                      # 已回复
    WAITING_CUSTOMER = "WAITING_CUSTOMER"    # 等待客户回应
    TIMEOUT = "TIMEOUT"                      # 超时未处理
    RESOLVED = "RESOLVED"                    # 已解决
    IGNORED = "IGNORED"                      # 已忽略


class Sentiment(Enum):
    """客户情绪"""
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"

    @classmethod
    def parse(cls, value: Any) -> "Sentiment":
        """宽松解析，未知值视为 neutral"""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.NEUTRAL


# 允许的状态转换，RESOLVED / IGNORED 为终态
ISSUE_TRANSITIONS: dict[IssueStatus, frozenset[IssueStatus]] = {
    IssueStatus.PENDING: frozenset({
        IssueStatus.REPLIED,
        IssueStatus.WAITING_CUSTOMER,
        IssueStatus.TIMEOUT,
        IssueStatus.RESOLVED,
        IssueStatus.IGNORED,
    }),
    IssueStatus.REPLIED: frozenset({
        IssueStatus.WAITING_CUSTOMER,
        IssueStatus.RESOLVED,
        IssueStatus.IGNORED,
    }),
    IssueStatus.WAITING_CUSTOMER: frozenset({
        IssueStatus.REPLIED,
        IssueStatus.TIMEOUT,
        IssueStatus.RESOLVED,
        IssueStatus.IGNORED,
    }),
    IssueStatus.TIMEOUT: frozenset({
        IssueStatus.REPLIED,
        IssueStatus.RESOLVED,
        IssueStatus.IGNORED,
    }),
    IssueStatus.RESOLVED: frozenset(),
    IssueStatus.IGNORED: frozenset(),
}


def can_transition(current: IssueStatus, target: IssueStatus) -> bool:
    """判断状态转换是否合法"""
    return target in ISSUE_TRANSITIONS.get(current, frozenset())


def parse_bot_names(value: str | list[str] | None) -> list[str]:
    """
    解析机器人名称设定

    支持逗号分隔字符串或字符串列表，去除空白和空项。

    Examples:
        >>> parse_bot_names("小幫手, Helper,")
        ['小幫手', 'Helper']
    """
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(',')
    return [name.strip() for name in value if name and name.strip()]


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class KnowledgeEntry:
    """
    知识库条目

    Attributes:
        id: 条目 ID
        question: 标准问题
        answer: 标准答案
        category: 分类（可选）
        keywords: 关键词列表
        is_active: 是否启用，停用条目不会被任何检索返回
        usage_count: 被自动回复引用的次数
        last_used_at: 最后一次被引用的时间
        is_synced: 向量索引是否与当前内容同步
        created_at: 创建时间
        updated_at: 更新时间
    """
    id: int
    question: str
    answer: str
    category: str | None = None
    keywords: list[str] = field(default_factory=list)
    is_active: bool = True
    usage_count: int = 0
    last_used_at: datetime | None = None
    is_synced: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def embedding_text(self) -> str:
        """用于向量化的文本（问题 + 答案）"""
        return f"{self.question}\n{self.answer}"

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {
            "id": self.id,
            "question": self.question,
            "answer": self.answer,
            "category": self.category,
            "keywords": list(self.keywords),
            "is_active": self.is_active,
            "usage_count": self.usage_count,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "is_synced": self.is_synced,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KnowledgeEntry":
        """从字典创建对象"""
        return cls(
            id=int(data.get("id", 0)),
            question=data.get("question", ""),
            answer=data.get("answer", ""),
            category=data.get("category") or None,
            keywords=list(data.get("keywords") or []),
            is_active=bool(data.get("is_active", True)),
            usage_count=int(data.get("usage_count", 0)),
            last_used_at=_parse_datetime(data.get("last_used_at")),
            is_synced=bool(data.get("is_synced", False)),
            created_at=_parse_datetime(data.get("created_at")) or datetime.now(),
            updated_at=_parse_datetime(data.get("updated_at")) or datetime.now(),
        )


@dataclass
class GroupConfig:
    """
    群组自动回复设定

    Attributes:
        group_id: 群组 ID
        auto_reply_enabled: 是否启用自动回复
        knowledge_categories: 可检索的知识分类，空列表表示全部
        bot_names: 机器人名称列表，消息包含任一名称即视为点名
        confidence_threshold: 信心度阈值 [0, 100]
    """
    group_id: str = ""
    auto_reply_enabled: bool = True
    knowledge_categories: list[str] = field(default_factory=list)
    bot_names: list[str] = field(default_factory=list)
    confidence_threshold: int = 50

    def mentions_bot(self, text: str) -> bool:
        """消息是否点名机器人（不区分大小写的子串匹配）"""
        lowered = text.lower()
        return any(name.lower() in lowered for name in self.bot_names if name)

    @property
    def allowed_categories(self) -> list[str] | None:
        """检索用分类过滤，None 表示不过滤"""
        return list(self.knowledge_categories) or None

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {
            "group_id": self.group_id,
            "auto_reply_enabled": self.auto_reply_enabled,
            "knowledge_categories": list(self.knowledge_categories),
            "bot_names": list(self.bot_names),
            "confidence_threshold": self.confidence_threshold,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GroupConfig":
        """从字典创建对象"""
        return cls(
            group_id=str(data.get("group_id", "")),
            auto_reply_enabled=bool(data.get("auto_reply_enabled", True)),
            knowledge_categories=list(data.get("knowledge_categories") or []),
            bot_names=parse_bot_names(data.get("bot_names")),
            confidence_threshold=int(data.get("confidence_threshold", 50)),
        )


@dataclass
class Issue:
    """
    待处理问题

    Attributes:
        id: 问题 ID（入库后分配）
        group_id: 群组 ID
        question_summary: 问题摘要
        status: 状态
        sentiment: 客户情绪
        confidence: 问题检测信心度
        suggested_reply: 建议回复（若已自动回复则为回复内容）
        timeout_at: 超时时间
        replied_at: 回复时间
        trigger_message_id: 触发消息 ID
        customer_id: 提问成员 ID
        created_at: 创建时间
    """
    group_id: str
    question_summary: str
    status: IssueStatus = IssueStatus.PENDING
    sentiment: Sentiment = Sentiment.NEUTRAL
    confidence: int = 0
    suggested_reply: str | None = None
    timeout_at: datetime | None = None
    replied_at: datetime | None = None
    trigger_message_id: str | None = None
    customer_id: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {
            "id": self.id,
            "group_id": self.group_id,
            "question_summary": self.question_summary,
            "status": self.status.value,
            "sentiment": self.sentiment.value,
            "confidence": self.confidence,
            "suggested_reply": self.suggested_reply,
            "timeout_at": self.timeout_at.isoformat() if self.timeout_at else None,
            "replied_at": self.replied_at.isoformat() if self.replied_at else None,
            "trigger_message_id": self.trigger_message_id,
            "customer_id": self.customer_id,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Issue":
        """从字典创建对象"""
        return cls(
            id=data.get("id"),
            group_id=data.get("group_id", ""),
            question_summary=data.get("question_summary", ""),
            status=IssueStatus(data.get("status", IssueStatus.PENDING.value)),
            sentiment=Sentiment.parse(data.get("sentiment")),
            confidence=int(data.get("confidence", 0)),
            suggested_reply=data.get("suggested_reply"),
            timeout_at=_parse_datetime(data.get("timeout_at")),
            replied_at=_parse_datetime(data.get("replied_at")),
            trigger_message_id=data.get("trigger_message_id"),
            customer_id=data.get("customer_id"),
            created_at=_parse_datetime(data.get("created_at")) or datetime.now(),
        )


@dataclass
class AutoReplyLog:
    """
    自动回复日志（只追加）

    记录每次决策结果，同时用于重建对话上下文中的机器人发言。
    """
    group_id: str
    question: str
    answer: str | None = None
    knowledge_id: int | None = None
    matched: bool = False
    confidence: int = 0
    message_id: str | None = None
    member_id: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {
            "id": self.id,
            "group_id": self.group_id,
            "question": self.question,
            "answer": self.answer,
            "knowledge_id": self.knowledge_id,
            "matched": self.matched,
            "confidence": self.confidence,
            "message_id": self.message_id,
            "member_id": self.member_id,
            "created_at": self.created_at.isoformat(),
        }
