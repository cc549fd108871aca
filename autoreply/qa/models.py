"""
自动回复引擎数据模型模块

定义检索结果、答案结果、对话分析结果和回复决策等瞬时数据模型。
这些对象在每条消息的处理过程中创建，不做缓存。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from autoreply.models import AutoReplyLog, Issue, KnowledgeEntry, Sentiment


class RetrievalMethod(Enum):
    """检索方式（仅用于观测）"""
    VECTOR = "vector"     # 向量语义检索
    KEYWORD = "keyword"   # 关键词检索
    NONE = "none"         # 无结果


class QuestionStatus(Enum):
    """对话中问题的状态"""
    UNANSWERED = "unanswered"
    ANSWERED = "answered"
    ABANDONED = "abandoned"

    @classmethod
    def parse(cls, value: Any) -> "QuestionStatus":
        """宽松解析，未知值视为 unanswered"""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNANSWERED


class ResolutionKind(Enum):
    """单个问题的解答分类"""
    ANSWERED = "answered"   # 可回答且信心度达标
    PARTIAL = "partial"     # 可回答但信心度不足
    NONE = "none"           # 无法回答


@dataclass
class RetrievalCandidate:
    """
    检索候选条目

    Attributes:
        entry: 知识库条目
        relevance_score: 相关度分数 [0, 100]
    """
    entry: KnowledgeEntry
    relevance_score: int

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {
            "entry_id": self.entry.id,
            "question": self.entry.question,
            "relevance_score": self.relevance_score,
        }


@dataclass
class RetrievalOutcome:
    """
    检索结果

    Attributes:
        candidates: 按相关度降序排列的候选条目
        method: 实际使用的检索方式
    """
    candidates: list[RetrievalCandidate] = field(default_factory=list)
    method: RetrievalMethod = RetrievalMethod.NONE

    @property
    def entries(self) -> list[KnowledgeEntry]:
        """候选条目对应的知识库条目"""
        return [c.entry for c in self.candidates]

    @property
    def top_entry_id(self) -> int | None:
        """最高相关度条目 ID"""
        return self.candidates[0].entry.id if self.candidates else None

    def __bool__(self) -> bool:
        return bool(self.candidates)


@dataclass
class AnswerResult:
    """
    答案生成结果

    Attributes:
        answer: 答案文本
        confidence: 信心度 [0, 100]
        sources: 引用的知识库条目 ID
        can_answer: 是否能够回答
    """
    answer: str = ""
    confidence: int = 0
    sources: list[int] = field(default_factory=list)
    can_answer: bool = False

    @classmethod
    def cannot_answer(cls) -> "AnswerResult":
        """无法回答的结果"""
        return cls(answer="", confidence=0, sources=[], can_answer=False)

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {
            "answer": self.answer,
            "confidence": self.confidence,
            "sources": list(self.sources),
            "can_answer": self.can_answer,
        }


@dataclass
class ConversationQuestion:
    """
    对话中识别出的问题

    Attributes:
        text: 问题内容
        status: 问题状态
        answered_by: 回答者（若已回答）
    """
    text: str
    status: QuestionStatus = QuestionStatus.UNANSWERED
    answered_by: str | None = None


@dataclass
class ConversationAnalysis:
    """
    对话分析结果（生成器原始输出经归一化后）

    Attributes:
        has_unanswered_question: 是否存在未回答问题
        question: 最新的未回答问题
        all_questions: 所有识别出的问题（由旧到新）
        confidence: 信心度 [0, 100]
        summary: 对话摘要
        sentiment: 情绪
    """
    has_unanswered_question: bool = False
    question: str = ""
    all_questions: list[ConversationQuestion] = field(default_factory=list)
    confidence: int = 0
    summary: str = ""
    sentiment: Sentiment = Sentiment.NEUTRAL

    @property
    def unanswered_questions(self) -> list[str]:
        """未回答问题文本（由旧到新）"""
        return [
            q.text for q in self.all_questions
            if q.status == QuestionStatus.UNANSWERED and q.text
        ]


@dataclass
class QuestionAnalysis:
    """
    单条消息分析结果

    Attributes:
        is_question: 是否为提问
        confidence: 信心度 [0, 100]
        summary: 问题摘要
        sentiment: 情绪
        suggested_reply: 建议回复
    """
    is_question: bool = False
    confidence: int = 0
    summary: str = ""
    sentiment: Sentiment = Sentiment.NEUTRAL
    suggested_reply: str = ""


@dataclass
class ChatMessage:
    """
    对话窗口中的一条消息

    Attributes:
        sender: 发送者显示名称
        content: 消息内容
        time: 发送时间
        is_bot: 是否为机器人自动回复
    """
    sender: str
    content: str
    time: datetime = field(default_factory=datetime.now)
    is_bot: bool = False

    def format_line(self) -> str:
        """格式化为 `[时间] 发送者: 内容`"""
        return f"[{self.time.strftime('%Y-%m-%d %H:%M:%S')}] {self.sender}: {self.content}"


@dataclass
class InboundMessage:
    """
    入站消息

    Attributes:
        group_id: 群组 ID（私聊时为对方 ID）
        text: 消息文本
        sender_id: 发送成员 ID
        sender_name: 发送成员名称
        message_id: 消息 ID
        is_direct: 是否为一对一私聊
        received_at: 接收时间
    """
    group_id: str
    text: str
    sender_id: str | None = None
    sender_name: str = "用戶"
    message_id: str | None = None
    is_direct: bool = False
    received_at: datetime = field(default_factory=datetime.now)


@dataclass
class QuestionDetection:
    """
    问题检测结果（决策引擎输入）

    Attributes:
        is_question: 是否检测到问题
        confidence: 信心度 [0, 100]
        questions: 待解答问题（由旧到新）
        sentiment: 情绪
        summary: 摘要
    """
    is_question: bool
    confidence: int
    questions: list[str] = field(default_factory=list)
    sentiment: Sentiment = Sentiment.NEUTRAL
    summary: str = ""


@dataclass
class QuestionResolution:
    """
    单个问题的解答过程

    Attributes:
        question: 问题文本
        result: 经安全过滤后的答案结果
        outcome: 检索结果
        kind: 解答分类
    """
    question: str
    result: AnswerResult
    outcome: RetrievalOutcome
    kind: ResolutionKind = ResolutionKind.NONE

    @property
    def knowledge_id(self) -> int | None:
        """引用的知识条目 ID：优先答案来源，其次最高相关候选"""
        if self.result.sources:
            return self.result.sources[0]
        return self.outcome.top_entry_id


@dataclass
class ReplyDecision:
    """
    回复决策

    Attributes:
        reply: 回复文本，None 表示不回复
        create_issue: 是否创建问题
        issue_payload: 待创建的问题
        log_payload: 待追加的自动回复日志
        resolutions: 各问题的解答过程
    """
    reply: str | None = None
    create_issue: bool = False
    issue_payload: Issue | None = None
    log_payload: AutoReplyLog | None = None
    resolutions: list[QuestionResolution] = field(default_factory=list)

    @classmethod
    def no_action(cls) -> "ReplyDecision":
        """不做任何处理"""
        return cls()

    @property
    def should_reply(self) -> bool:
        return self.reply is not None

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {
            "reply": self.reply,
            "create_issue": self.create_issue,
            "issue": self.issue_payload.to_dict() if self.issue_payload else None,
            "log": self.log_payload.to_dict() if self.log_payload else None,
            "resolutions": [
                {
                    "question": r.question,
                    "kind": r.kind.value,
                    "method": r.outcome.method.value,
                    "result": r.result.to_dict(),
                }
                for r in self.resolutions
            ],
        }
