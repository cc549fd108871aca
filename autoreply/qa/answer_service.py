"""
单问题解答模块

检索 → 生成 → 安全过滤 → 记录使用次数。
"""

import logging

from autoreply.analyzers.answer_generator import AnswerGenerator
from autoreply.qa.models import AnswerResult, RetrievalOutcome
from autoreply.qa.retriever import RetrievalOrchestrator
from autoreply.qa.safety_filter import apply_safety_filter

logger = logging.getLogger(__name__)


class AnswerService:
    """
    针对单个问题检索知识并生成答案

    Attributes:
        retriever: 检索编排器
        generator: 答案生成器
    """

    def __init__(self, retriever: RetrievalOrchestrator, generator: AnswerGenerator):
        self.retriever = retriever
        self.generator = generator

    def answer(
        self,
        question: str,
        allowed_categories: list[str] | None = None
    ) -> tuple[AnswerResult, RetrievalOutcome]:
        """
        解答单个问题

        没有检索到任何候选时不调用生成器，直接返回无法回答。
        可回答且有引用来源时，对来源条目记录一次使用。

        Returns:
            (经安全过滤的答案结果, 检索结果)
        """
        outcome = self.retriever.retrieve(question, allowed_categories)
        if not outcome:
            return AnswerResult.cannot_answer(), outcome

        result = apply_safety_filter(
            self.generator.generate_answer(question, outcome.entries)
        )

        if result.can_answer and result.sources:
            self.retriever.record_usage(result.sources)

        logger.info(
            f"Answered via {outcome.method.value}: can_answer={result.can_answer}, "
            f"confidence={result.confidence}, sources={result.sources}"
        )
        return result, outcome
