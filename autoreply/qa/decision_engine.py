"""
回复决策引擎模块

把问题检测结果与每个问题的解答结果组合成最终动作：是否回复、回复内容、
自动回复日志和待处理问题。

决策规则：
1. 群组停用自动回复：检测到问题（信心度达标）时只建立问题，从不回复
2. 信心度低于阈值，且未点名机器人、非私聊：不处理
3. 最多解答最近 3 个未回答问题（由旧到新），或当前消息本身
4. 可回答且信心度达标的视为已回答
5. 至少一个已回答、或点名、或私聊时回复；全部未回答时使用预设回复
6. 单个问题直接回复答案；多个问题按编号逐一回复
7. 始终记录自动回复日志
8. 检测信心度达标时建立问题，反映是否已回复

可回答但信心度不足的答案只在点名机器人时展示，否则仅记录其知识条目 ID。
"""

import logging
from datetime import datetime

from autoreply.models import AutoReplyLog, GroupConfig, Issue
from autoreply.qa.answer_service import AnswerService
from autoreply.qa.config import DecisionConfig
from autoreply.qa.conversation_analyzer import ConversationAnalyzer, direct_detection
from autoreply.qa.issue_tracker import IssueTracker
from autoreply.qa.models import (
    ChatMessage,
    InboundMessage,
    QuestionDetection,
    QuestionResolution,
    ReplyDecision,
    ResolutionKind,
)

logger = logging.getLogger(__name__)


def classify(resolution: QuestionResolution, threshold: int) -> ResolutionKind:
    """按可回答与信心度把解答分为 answered / partial / none"""
    result = resolution.result
    if not result.can_answer:
        return ResolutionKind.NONE
    if result.confidence >= threshold:
        return ResolutionKind.ANSWERED
    return ResolutionKind.PARTIAL


def compose_reply(
    resolutions: list[QuestionResolution],
    fallback_reply: str,
    show_partial: bool
) -> str:
    """
    组合回复文本

    单个问题直接返回答案或预设回复；多个问题输出 `n. 问题` 加答案的编号区块。
    """
    def text_for(resolution: QuestionResolution) -> str:
        if resolution.kind == ResolutionKind.ANSWERED:
            return resolution.result.answer
        if resolution.kind == ResolutionKind.PARTIAL and show_partial:
            return resolution.result.answer
        return fallback_reply

    if len(resolutions) == 1:
        return text_for(resolutions[0])

    return '\n\n'.join(
        f"{i}. {r.question}\n{text_for(r)}"
        for i, r in enumerate(resolutions, start=1)
    )


def _cited_knowledge_id(resolutions: list[QuestionResolution]) -> int | None:
    """日志引用的知识条目：已回答优先，其次部分匹配，最后任一检索候选"""
    for kind in (ResolutionKind.ANSWERED, ResolutionKind.PARTIAL, ResolutionKind.NONE):
        for r in resolutions:
            if r.kind == kind and r.knowledge_id is not None:
                return r.knowledge_id
    return None


class ReplyDecisionEngine:
    """
    回复决策引擎

    Attributes:
        analyzer: 对话分析器
        answer_service: 单问题解答服务
        issue_tracker: 问题构建器
        config: 决策默认配置（提供最大问题数和预设回复）
    """

    def __init__(
        self,
        analyzer: ConversationAnalyzer,
        answer_service: AnswerService,
        issue_tracker: IssueTracker | None = None,
        config: DecisionConfig | None = None
    ):
        self.analyzer = analyzer
        self.answer_service = answer_service
        self.issue_tracker = issue_tracker or IssueTracker()
        self.config = config or DecisionConfig()

    def decide(
        self,
        message: InboundMessage,
        group: GroupConfig,
        history: list[ChatMessage] | None = None,
        bot_logs: list[AutoReplyLog] | None = None,
        now: datetime | None = None
    ) -> ReplyDecision:
        """
        对一条入站消息做出决策

        Args:
            message: 入站消息
            group: 群组设定
            history: 最近的成员消息（用于对话分析）
            bot_logs: 最近的自动回复日志（用于对话分析）
            now: 决策时间（默认当前时间）

        Returns:
            ReplyDecision，由调用方负责执行
        """
        now = now or datetime.now()
        text = message.text.strip()
        if not text:
            return ReplyDecision.no_action()

        named = group.mentions_bot(text)
        direct = message.is_direct
        threshold = group.confidence_threshold

        if named or direct:
            detection = direct_detection(text)
        else:
            detection = self.analyzer.detect(
                text, history, bot_logs, sender=message.sender_name, now=now
            )

        detected = detection.is_question and detection.confidence >= threshold

        if not group.auto_reply_enabled:
            if not detected:
                return ReplyDecision.no_action()
            logger.info(f"Auto-reply disabled for group {group.group_id}, tracking issue only")
            return ReplyDecision(
                create_issue=True,
                issue_payload=self._build_issue(message, detection, None, now),
            )

        if not detected and not named and not direct:
            logger.debug(
                f"Not actionable: is_question={detection.is_question}, "
                f"confidence={detection.confidence} < {threshold}"
            )
            return ReplyDecision.no_action()

        questions = detection.questions[-self.config.max_questions:] or [text]

        resolutions = []
        for question in questions:
            result, outcome = self.answer_service.answer(question, group.allowed_categories)
            resolution = QuestionResolution(question=question, result=result, outcome=outcome)
            resolution.kind = classify(resolution, threshold)
            resolutions.append(resolution)

        any_answered = any(r.kind == ResolutionKind.ANSWERED for r in resolutions)
        should_reply = any_answered or named or direct

        reply = None
        if should_reply:
            reply = compose_reply(resolutions, self.config.fallback_reply, show_partial=named)

        log = AutoReplyLog(
            group_id=message.group_id,
            question='\n'.join(questions),
            answer=reply,
            knowledge_id=_cited_knowledge_id(resolutions),
            matched=any_answered,
            confidence=max(r.result.confidence for r in resolutions),
            message_id=message.message_id,
            member_id=message.sender_id,
            created_at=now,
        )

        issue = self._build_issue(message, detection, reply, now) if detected else None

        logger.info(
            f"Decision for group {message.group_id}: reply={reply is not None}, "
            f"questions={len(questions)}, answered={any_answered}, "
            f"named={named}, direct={direct}"
        )

        return ReplyDecision(
            reply=reply,
            create_issue=issue is not None,
            issue_payload=issue,
            log_payload=log,
            resolutions=resolutions,
        )

    def _build_issue(
        self,
        message: InboundMessage,
        detection: QuestionDetection,
        reply: str | None,
        now: datetime
    ) -> Issue:
        summary = detection.summary or '\n'.join(detection.questions) or message.text
        return self.issue_tracker.build_issue(
            group_id=message.group_id,
            question_summary=summary,
            confidence=detection.confidence,
            reply=reply,
            sentiment=detection.sentiment,
            trigger_message_id=message.message_id,
            customer_id=message.sender_id,
            now=now,
        )
