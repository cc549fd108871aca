"""
ReplyDecisionEngine 单元测试

测试信心度阈值、点名/私聊、停用自动回复、多问题编号回复，
以及接入真实检索的端到端场景。
"""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from autoreply.analyzers.answer_generator import AnswerGenerator
from autoreply.models import GroupConfig, IssueStatus, KnowledgeEntry, Sentiment
from autoreply.qa.answer_service import AnswerService
from autoreply.qa.config import DEFAULT_FALLBACK_REPLY, DecisionConfig
from autoreply.qa.conversation_analyzer import ConversationAnalyzer
from autoreply.qa.decision_engine import ReplyDecisionEngine, compose_reply
from autoreply.qa.models import (
    AnswerResult,
    InboundMessage,
    QuestionDetection,
    QuestionResolution,
    ResolutionKind,
    RetrievalCandidate,
    RetrievalMethod,
    RetrievalOutcome,
)
from autoreply.qa.retriever import RetrievalOrchestrator
from autoreply.repository import KnowledgeRepository


NOW = datetime(2024, 5, 1, 10, 0, 0)

GROUP = GroupConfig(group_id="G1", bot_names=["小幫手"], confidence_threshold=50)


def message(text: str, is_direct: bool = False) -> InboundMessage:
    return InboundMessage(
        group_id="G1", text=text, sender_id="u1", message_id="m1",
        is_direct=is_direct, received_at=NOW,
    )


def answered(answer: str, confidence: int, entry_id: int):
    entry = KnowledgeEntry(id=entry_id, question=f"問題{entry_id}", answer=answer)
    return (
        AnswerResult(answer, confidence, [entry_id], True),
        RetrievalOutcome([RetrievalCandidate(entry, 80)], RetrievalMethod.VECTOR),
    )


def unanswerable():
    return AnswerResult.cannot_answer(), RetrievalOutcome()


@pytest.fixture
def analyzer():
    mock_analyzer = Mock(spec=ConversationAnalyzer)
    mock_analyzer.detect.return_value = QuestionDetection(
        is_question=True, confidence=80, questions=["如何退款？"], summary="退款"
    )
    return mock_analyzer


@pytest.fixture
def answer_service():
    service = Mock(spec=AnswerService)
    service.answer.return_value = answered("請聯繫客服辦理退款", 90, 7)
    return service


@pytest.fixture
def engine(analyzer, answer_service):
    return ReplyDecisionEngine(analyzer, answer_service)


class TestThreshold:
    """测试信心度阈值（含边界）"""

    def test_detection_below_threshold_no_action(self, engine, analyzer, answer_service):
        analyzer.detect.return_value = QuestionDetection(is_question=True, confidence=49, questions=["如何退款？"])

        decision = engine.decide(message("如何退款？"), GROUP, now=NOW)

        assert decision.reply is None
        assert decision.create_issue is False
        assert decision.log_payload is None
        answer_service.answer.assert_not_called()

    def test_detection_at_threshold_acts(self, engine, analyzer):
        analyzer.detect.return_value = QuestionDetection(is_question=True, confidence=50, questions=["如何退款？"])

        decision = engine.decide(message("如何退款？"), GROUP, now=NOW)

        assert decision.reply == "請聯繫客服辦理退款"
        assert decision.create_issue is True

    def test_not_question_no_action(self, engine, analyzer):
        analyzer.detect.return_value = QuestionDetection(is_question=False, confidence=95)

        assert engine.decide(message("大家早安"), GROUP, now=NOW).should_reply is False

    def test_answer_confidence_at_threshold_is_answered(self, engine, answer_service):
        answer_service.answer.return_value = answered("請聯繫客服", 50, 7)

        decision = engine.decide(message("如何退款？"), GROUP, now=NOW)

        assert decision.reply == "請聯繫客服"
        assert decision.log_payload.matched is True

    def test_partial_answer_not_shown_unnamed(self, engine, answer_service):
        answer_service.answer.return_value = answered("可能是請聯繫客服", 49, 7)

        decision = engine.decide(message("如何退款？"), GROUP, now=NOW)

        assert decision.reply is None
        assert decision.resolutions[0].kind == ResolutionKind.PARTIAL
        assert decision.log_payload.matched is False
        assert decision.log_payload.knowledge_id == 7
        assert decision.log_payload.answer is None
        assert decision.issue_payload.status == IssueStatus.PENDING

    def test_empty_text_no_action(self, engine, analyzer):
        decision = engine.decide(message("   "), GROUP, now=NOW)

        assert decision.should_reply is False
        analyzer.detect.assert_not_called()


class TestNamedAndDirect:
    """测试点名机器人与私聊"""

    def test_named_skips_detection(self, engine, analyzer, answer_service):
        decision = engine.decide(message("小幫手 如何退款？"), GROUP, now=NOW)

        analyzer.detect.assert_not_called()
        answer_service.answer.assert_called_once_with("小幫手 如何退款？", None)
        assert decision.reply == "請聯繫客服辦理退款"
        assert decision.issue_payload.confidence == 100

    def test_named_case_insensitive(self, engine, analyzer):
        group = GroupConfig(group_id="G1", bot_names=["Helper"])

        decision = engine.decide(message("hey HELPER, refund?"), group, now=NOW)

        analyzer.detect.assert_not_called()
        assert decision.should_reply is True

    def test_named_without_match_uses_fallback(self, engine, answer_service):
        answer_service.answer.return_value = unanswerable()

        decision = engine.decide(message("小幫手 發票怎麼開"), GROUP, now=NOW)

        assert decision.reply == DEFAULT_FALLBACK_REPLY
        assert decision.log_payload.matched is False
        assert decision.log_payload.knowledge_id is None

    def test_named_shows_partial(self, engine, answer_service):
        answer_service.answer.return_value = answered("可能是請聯繫客服", 30, 7)

        decision = engine.decide(message("小幫手 如何退款？"), GROUP, now=NOW)

        assert decision.reply == "可能是請聯繫客服"

    def test_direct_partial_uses_fallback(self, engine, analyzer, answer_service):
        answer_service.answer.return_value = answered("可能是請聯繫客服", 30, 7)

        decision = engine.decide(message("如何退款？", is_direct=True), GROUP, now=NOW)

        analyzer.detect.assert_not_called()
        assert decision.reply == DEFAULT_FALLBACK_REPLY

    def test_custom_fallback(self, analyzer, answer_service):
        answer_service.answer.return_value = unanswerable()
        engine = ReplyDecisionEngine(analyzer, answer_service, config=DecisionConfig(fallback_reply="稍等"))

        decision = engine.decide(message("如何退款？", is_direct=True), GROUP, now=NOW)

        assert decision.reply == "稍等"


class TestAutoReplyDisabled:
    """测试停用自动回复的群组"""

    def test_issue_only(self, engine, answer_service):
        group = GroupConfig(group_id="G1", auto_reply_enabled=False, bot_names=["小幫手"])

        decision = engine.decide(message("小幫手 如何退款？"), group, now=NOW)

        assert decision.reply is None
        assert decision.log_payload is None
        assert decision.create_issue is True
        assert decision.issue_payload.status == IssueStatus.PENDING
        answer_service.answer.assert_not_called()

    def test_not_detected_no_action(self, engine, analyzer):
        analyzer.detect.return_value = QuestionDetection(is_question=False, confidence=90)
        group = GroupConfig(group_id="G1", auto_reply_enabled=False)

        decision = engine.decide(message("大家好"), group, now=NOW)

        assert decision.create_issue is False
        assert decision.issue_payload is None


class TestMultipleQuestions:
    """测试多问题回复"""

    def test_latest_three_numbered(self, engine, analyzer, answer_service):
        analyzer.detect.return_value = QuestionDetection(
            is_question=True, confidence=85,
            questions=["問題一", "問題二", "問題三", "問題四"],
        )
        answers = {
            "問題二": answered("答案二", 90, 2),
            "問題三": unanswerable(),
            "問題四": answered("答案四", 70, 4),
        }
        answer_service.answer.side_effect = lambda question, categories: answers[question]

        decision = engine.decide(message("問題四"), GROUP, now=NOW)

        assert decision.reply == (
            "1. 問題二\n答案二\n\n"
            f"2. 問題三\n{DEFAULT_FALLBACK_REPLY}\n\n"
            "3. 問題四\n答案四"
        )
        assert [c.args[0] for c in answer_service.answer.call_args_list] == ["問題二", "問題三", "問題四"]
        assert decision.log_payload.question == "問題二\n問題三\n問題四"
        assert decision.log_payload.confidence == 90
        assert decision.log_payload.knowledge_id == 2

    def test_empty_questions_use_message(self, engine, analyzer, answer_service):
        analyzer.detect.return_value = QuestionDetection(is_question=True, confidence=85, questions=[])

        engine.decide(message("如何退款？"), GROUP, now=NOW)

        answer_service.answer.assert_called_once_with("如何退款？", None)

    def test_categories_passed(self, engine, answer_service):
        group = GroupConfig(group_id="G1", knowledge_categories=["帳務"])

        engine.decide(message("如何退款？"), group, now=NOW)

        answer_service.answer.assert_called_once_with("如何退款？", ["帳務"])


class TestDecisionPayloads:
    """测试日志与问题内容"""

    def test_log_and_issue(self, engine, analyzer):
        analyzer.detect.return_value = QuestionDetection(
            is_question=True, confidence=80, questions=["如何退款？"],
            summary="客戶詢問退款", sentiment=Sentiment.NEGATIVE,
        )

        decision = engine.decide(message("如何退款？"), GROUP, now=NOW)

        log = decision.log_payload
        assert log.group_id == "G1"
        assert log.message_id == "m1"
        assert log.member_id == "u1"
        assert log.answer == "請聯繫客服辦理退款"
        assert log.created_at == NOW

        issue = decision.issue_payload
        assert issue.status == IssueStatus.REPLIED
        assert issue.question_summary == "客戶詢問退款"
        assert issue.sentiment == Sentiment.NEGATIVE
        assert issue.replied_at == NOW
        assert issue.timeout_at == NOW + timedelta(minutes=15)

    def test_named_detection_always_meets_threshold(self, engine):
        group = GroupConfig(group_id="G1", bot_names=["小幫手"], confidence_threshold=100)
        decision = engine.decide(message("小幫手 你好"), group, now=NOW)

        assert decision.should_reply is True
        assert decision.create_issue is True

    def test_to_dict(self, engine):
        data = engine.decide(message("如何退款？"), GROUP, now=NOW).to_dict()

        assert data['reply'] == "請聯繫客服辦理退款"
        assert data['resolutions'][0]['kind'] == 'answered'
        assert data['resolutions'][0]['method'] == 'vector'
        assert data['issue']['status'] == 'replied'


def test_compose_single_and_partial():
    resolution = QuestionResolution(
        question="如何退款？",
        result=AnswerResult("或許請聯繫客服", 30, [1], True),
        outcome=RetrievalOutcome(),
        kind=ResolutionKind.PARTIAL,
    )

    assert compose_reply([resolution], "預設", show_partial=False) == "預設"
    assert compose_reply([resolution], "預設", show_partial=True) == "或許請聯繫客服"


# =============================================================================
# 端到端场景（真实知识库与检索，Mock 生成器）
# =============================================================================

class TestEndToEnd:
    """接入真实 KnowledgeRepository 和 RetrievalOrchestrator 的场景"""

    @pytest.fixture
    def repo(self):
        repository = KnowledgeRepository(':memory:')
        repository.init_db()
        yield repository
        repository.close()

    @pytest.fixture
    def generator(self):
        return Mock(spec=AnswerGenerator)

    def make_engine(self, repo, generator, analyzer):
        service = AnswerService(RetrievalOrchestrator(repo), generator)
        return ReplyDecisionEngine(analyzer, service)

    def test_empty_knowledge_base(self, repo, generator, analyzer):
        """空知识库：无法回答、不回复，但建立问题"""
        analyzer.detect.return_value = QuestionDetection(
            is_question=True, confidence=80, questions=["怎麼建立課程"]
        )

        decision = self.make_engine(repo, generator, analyzer).decide(
            message("怎麼建立課程"), GROUP, now=NOW
        )

        generator.generate_answer.assert_not_called()
        assert decision.reply is None
        assert decision.resolutions[0].kind == ResolutionKind.NONE
        assert decision.create_issue is True
        assert decision.issue_payload.status == IssueStatus.PENDING
        assert decision.log_payload.matched is False

    def test_keyword_match_answers(self, repo, generator, analyzer):
        """关键词检索命中后回复答案并记录使用次数"""
        entry = repo.add_entry("如何建課", "前往後台點擊「建立課程」按鈕", keywords=["建課"])
        analyzer.detect.return_value = QuestionDetection(
            is_question=True, confidence=90, questions=["怎麼建立課程"]
        )
        generator.generate_answer.return_value = AnswerResult(
            "前往後台點擊「建立課程」按鈕", 88, [entry.id], True
        )

        decision = self.make_engine(repo, generator, analyzer).decide(
            message("怎麼建立課程"), GROUP, now=NOW
        )

        resolution = decision.resolutions[0]
        assert resolution.outcome.method == RetrievalMethod.KEYWORD
        assert resolution.outcome.top_entry_id == entry.id
        assert generator.generate_answer.call_args.args[1][0].id == entry.id
        assert decision.reply == "前往後台點擊「建立課程」按鈕"
        assert decision.log_payload.knowledge_id == entry.id
        assert decision.issue_payload.status == IssueStatus.REPLIED
        assert repo.get(entry.id).usage_count == 1
