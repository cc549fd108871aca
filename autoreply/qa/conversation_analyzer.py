"""
对话分析模块

把最近的群组消息与机器人之前的自动回复按时间合并成对话窗口，
交给答案生成器判断哪些问题仍未被回答。

生成器调用失败时不放过可能的问题：按“是提问、信心度 50”处理当前消息。
"""

import logging
from datetime import datetime

from autoreply.analyzers.answer_generator import AnswerGenerator
from autoreply.models import AutoReplyLog, Sentiment
from autoreply.qa.exceptions import GeneratorError
from autoreply.qa.models import ChatMessage, QuestionDetection

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 10
FALLBACK_CONFIDENCE = 50
BOT_SENDER = "客服機器人"


def build_window(
    history: list[ChatMessage],
    bot_logs: list[AutoReplyLog],
    window_size: int = DEFAULT_WINDOW_SIZE,
    bot_sender: str = BOT_SENDER
) -> list[ChatMessage]:
    """
    构建对话窗口

    取最近 window_size 条成员消息，再并入发生在窗口时间范围内的机器人回复，
    按时间由旧到新排序。

    Args:
        history: 成员消息（含当前消息，顺序不限）
        bot_logs: 自动回复日志
        window_size: 成员消息条数上限
        bot_sender: 机器人在对话中的显示名称

    Returns:
        由旧到新的消息列表
    """
    recent = sorted(history, key=lambda m: m.time)[-window_size:]
    if not recent:
        return []

    earliest = recent[0].time
    bot_messages = [
        ChatMessage(sender=bot_sender, content=log.answer, time=log.created_at, is_bot=True)
        for log in bot_logs
        if log.answer and log.created_at >= earliest
    ]

    return sorted(recent + bot_messages, key=lambda m: m.time)


def direct_detection(text: str) -> QuestionDetection:
    """点名或私聊时跳过检测：视为提问，信心度 100"""
    return QuestionDetection(is_question=True, confidence=100, questions=[text])


class ConversationAnalyzer:
    """
    对话分析器

    Attributes:
        generator: 答案生成器
        window_size: 对话窗口成员消息条数
    """

    def __init__(self, generator: AnswerGenerator, window_size: int = DEFAULT_WINDOW_SIZE):
        self.generator = generator
        self.window_size = window_size

    def detect(
        self,
        text: str,
        history: list[ChatMessage] | None = None,
        bot_logs: list[AutoReplyLog] | None = None,
        sender: str = "用戶",
        now: datetime | None = None
    ) -> QuestionDetection:
        """
        检测待解答的问题

        history 不含当前消息时，按 sender / now 补入窗口末尾。

        Args:
            text: 当前消息文本
            history: 最近的成员消息（可含当前消息）
            bot_logs: 最近的自动回复日志
            sender: 当前消息的发送者名称
            now: 当前消息的时间（默认当前时间）

        Returns:
            QuestionDetection，questions 由旧到新
        """
        history = list(history or [])
        current = text.strip()
        if history and not any(m.content.strip() == current and not m.is_bot for m in history):
            latest = max(m.time for m in history)
            time = max(now or datetime.now(), latest)
            history.append(ChatMessage(sender=sender, content=text, time=time))

        window = build_window(history, bot_logs or [], self.window_size)

        if len(window) <= 1:
            return self._analyze_single(text)

        try:
            analysis = self.generator.analyze_conversation(window)
        except GeneratorError as e:
            logger.warning(f"Conversation analysis failed, assuming question: {e}")
            return self._fallback(text)

        questions = analysis.unanswered_questions
        if not questions and analysis.has_unanswered_question and analysis.question:
            questions = [analysis.question]

        is_question = analysis.has_unanswered_question or bool(questions)
        logger.debug(
            f"Conversation analysis: is_question={is_question}, "
            f"confidence={analysis.confidence}, questions={len(questions)}"
        )

        return QuestionDetection(
            is_question=is_question,
            confidence=analysis.confidence,
            questions=questions if is_question else [],
            sentiment=analysis.sentiment,
            summary=analysis.summary,
        )

    def _analyze_single(self, text: str) -> QuestionDetection:
        """没有对话上下文时只分析当前消息"""
        try:
            analysis = self.generator.analyze_question(text)
        except GeneratorError as e:
            logger.warning(f"Question analysis failed, assuming question: {e}")
            return self._fallback(text)

        return QuestionDetection(
            is_question=analysis.is_question,
            confidence=analysis.confidence,
            questions=[text] if analysis.is_question else [],
            sentiment=analysis.sentiment,
            summary=analysis.summary,
        )

    def _fallback(self, text: str) -> QuestionDetection:
        return QuestionDetection(
            is_question=True,
            confidence=FALLBACK_CONFIDENCE,
            questions=[text],
            sentiment=Sentiment.NEUTRAL,
        )

