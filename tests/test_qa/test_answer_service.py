"""
AnswerService 单元测试

测试检索、生成、安全过滤和使用次数记录的串联。
"""

from unittest.mock import Mock

import pytest

from autoreply.analyzers.answer_generator import AnswerGenerator
from autoreply.models import KnowledgeEntry
from autoreply.qa.answer_service import AnswerService
from autoreply.qa.models import (
    AnswerResult,
    RetrievalCandidate,
    RetrievalMethod,
    RetrievalOutcome,
)
from autoreply.qa.retriever import RetrievalOrchestrator


ENTRY = KnowledgeEntry(id=7, question="如何退款", answer="請聯繫客服")


@pytest.fixture
def retriever():
    mock_retriever = Mock(spec=RetrievalOrchestrator)
    mock_retriever.retrieve.return_value = RetrievalOutcome(
        candidates=[RetrievalCandidate(ENTRY, 82)],
        method=RetrievalMethod.VECTOR,
    )
    return mock_retriever


@pytest.fixture
def generator():
    return Mock(spec=AnswerGenerator)


class TestAnswer:
    """测试单问题解答"""

    def test_no_candidates_skips_generator(self, retriever, generator):
        retriever.retrieve.return_value = RetrievalOutcome()

        result, outcome = AnswerService(retriever, generator).answer("發票")

        assert result.can_answer is False
        assert outcome.method == RetrievalMethod.NONE
        generator.generate_answer.assert_not_called()
        retriever.record_usage.assert_not_called()

    def test_answer_records_usage(self, retriever, generator):
        generator.generate_answer.return_value = AnswerResult("請聯繫客服", 90, [7], True)

        result, outcome = AnswerService(retriever, generator).answer("如何退款？", ["帳務"])

        assert result.answer == "請聯繫客服"
        assert outcome.top_entry_id == 7
        retriever.retrieve.assert_called_once_with("如何退款？", ["帳務"])
        generator.generate_answer.assert_called_once_with("如何退款？", [ENTRY])
        retriever.record_usage.assert_called_once_with([7])

    def test_cannot_answer_does_not_record_usage(self, retriever, generator):
        generator.generate_answer.return_value = AnswerResult("", 0, [7], False)

        AnswerService(retriever, generator).answer("如何退款？")

        retriever.record_usage.assert_not_called()

    def test_safety_filter_applied(self, retriever, generator):
        generator.generate_answer.return_value = AnswerResult("要退款嗎？哪一筆？什麼時候？", 95, [7], True)

        result, _ = AnswerService(retriever, generator).answer("如何退款？")

        assert result.can_answer is False
        assert result.confidence == 0
        assert result.answer == "要退款嗎？哪一筆？什麼時候？"
        retriever.record_usage.assert_not_called()
