"""
AutoReplyPipeline 单元测试

Mock 决策引擎，使用临时目录中的真实 ReplyStore，
测试回复发送、日志与问题写入、持久化失败降级和超时巡检。
"""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from autoreply.models import AutoReplyLog, Issue, IssueStatus
from autoreply.qa.config import AutoReplyConfig, GeneratorConfig, GroupConfigProvider, StorageConfig
from autoreply.qa.decision_engine import ReplyDecisionEngine
from autoreply.qa.exceptions import PersistenceError
from autoreply.qa.models import ChatMessage, InboundMessage, ReplyDecision
from autoreply.qa.pipeline import AutoReplyPipeline, build_pipeline, expire_issues
from autoreply.repository import KnowledgeRepository
from autoreply.store import ReplyStore


NOW = datetime(2024, 5, 1, 10, 0, 0)


def make_decision(reply="請聯繫客服", with_issue=True) -> ReplyDecision:
    issue = None
    if with_issue:
        issue = Issue(
            group_id="G1",
            question_summary="退款",
            status=IssueStatus.REPLIED if reply is not None else IssueStatus.PENDING,
            timeout_at=NOW + timedelta(minutes=15),
            created_at=NOW,
        )
    return ReplyDecision(
        reply=reply,
        create_issue=issue is not None,
        issue_payload=issue,
        log_payload=AutoReplyLog(group_id="G1", question="如何退款？", answer=reply, created_at=NOW),
    )


@pytest.fixture
def store(tmp_path):
    return ReplyStore(str(tmp_path / "autoreply.db"))


@pytest.fixture
def engine():
    mock_engine = Mock(spec=ReplyDecisionEngine)
    mock_engine.decide.return_value = make_decision()
    return mock_engine


@pytest.fixture
def groups():
    return GroupConfigProvider(AutoReplyConfig.from_dict({
        'groups': {'G1': {'confidence_threshold': 70}},
    }))


class TestHandle:
    """测试消息处理"""

    def test_reply_log_and_issue(self, engine, store, groups):
        sender = Mock()
        pipeline = AutoReplyPipeline(engine, store, groups, reply_sender=sender)

        decision = pipeline.handle(InboundMessage(group_id="G1", text="如何退款？"), now=NOW)

        sender.assert_called_once_with("G1", "請聯繫客服")
        assert decision.issue_payload.id is not None
        assert decision.log_payload.id is not None
        assert len(store.list_issues(group_id="G1")) == 1
        assert [log.answer for log in store.recent_logs("G1")] == ["請聯繫客服"]

        group = engine.decide.call_args.args[1]
        assert group.group_id == "G1"
        assert group.confidence_threshold == 70

    def test_no_reply_nothing_sent(self, engine, store, groups):
        engine.decide.return_value = make_decision(reply=None)
        sender = Mock()

        AutoReplyPipeline(engine, store, groups, reply_sender=sender).handle(
            InboundMessage(group_id="G1", text="如何退款？"), now=NOW
        )

        sender.assert_not_called()
        assert store.list_issues()[0].status == IssueStatus.PENDING

    def test_no_action(self, engine, store, groups):
        engine.decide.return_value = ReplyDecision.no_action()

        AutoReplyPipeline(engine, store, groups).handle(InboundMessage(group_id="G1", text="早安"), now=NOW)

        assert store.list_issues() == []
        assert store.recent_logs("G1") == []

    def test_history_loads_bot_logs_in_window(self, engine, store, groups):
        store.insert_log(AutoReplyLog(group_id="G1", question="舊", answer="舊回覆", created_at=NOW - timedelta(hours=1)))
        store.insert_log(AutoReplyLog(group_id="G1", question="新", answer="新回覆", created_at=NOW - timedelta(minutes=1)))
        store.insert_log(AutoReplyLog(group_id="G2", question="別群", answer="別群回覆", created_at=NOW - timedelta(minutes=1)))
        history = [
            ChatMessage("王小明", "怎麼建立課程？", NOW - timedelta(minutes=5)),
            ChatMessage("王小明", "如何退款？", NOW),
        ]
        message = InboundMessage(group_id="G1", text="如何退款？")

        AutoReplyPipeline(engine, store, groups).handle(message, history, now=NOW)

        args = engine.decide.call_args.args
        assert args[2] == history
        assert [log.answer for log in args[3]] == ["新回覆"]

    def test_without_history_no_bot_logs(self, engine, store, groups):
        AutoReplyPipeline(engine, store, groups).handle(InboundMessage(group_id="G1", text="如何退款？"), now=NOW)
        assert engine.decide.call_args.args[3] == []

    def test_sender_failure_still_persists(self, engine, store, groups):
        sender = Mock(side_effect=ConnectionError("network down"))

        AutoReplyPipeline(engine, store, groups, reply_sender=sender).handle(
            InboundMessage(group_id="G1", text="如何退款？"), now=NOW
        )

        assert len(store.recent_logs("G1")) == 1
        assert len(store.list_issues()) == 1

    def test_persistence_failure_swallowed(self, engine, groups):
        failing_store = Mock(spec=ReplyStore)
        failing_store.recent_logs.side_effect = PersistenceError("db locked")
        failing_store.insert_log.side_effect = PersistenceError("db locked")
        failing_store.insert_issue.side_effect = PersistenceError("db locked")
        sender = Mock()
        history = [ChatMessage("王小明", "如何退款？", NOW)]

        decision = AutoReplyPipeline(engine, failing_store, groups, reply_sender=sender).handle(
            InboundMessage(group_id="G1", text="如何退款？"), history, now=NOW
        )

        assert decision.reply == "請聯繫客服"
        sender.assert_called_once()
        assert engine.decide.call_args.args[3] == []
        failing_store.insert_issue.assert_called_once()


class TestExpireIssues:
    """测试超时巡检"""

    def test_expire(self, store):
        pending = store.insert_issue(Issue(
            group_id="G1", question_summary="退款", status=IssueStatus.PENDING,
            timeout_at=NOW - timedelta(minutes=1), created_at=NOW - timedelta(minutes=16),
        ))
        store.insert_issue(Issue(
            group_id="G1", question_summary="課程", status=IssueStatus.REPLIED,
            timeout_at=NOW - timedelta(minutes=1), created_at=NOW - timedelta(minutes=16),
        ))
        store.insert_issue(Issue(
            group_id="G1", question_summary="發票", status=IssueStatus.PENDING,
            timeout_at=NOW + timedelta(minutes=10), created_at=NOW,
        ))

        assert expire_issues(store, NOW) == 1
        assert store.get_issue(pending.id).status == IssueStatus.TIMEOUT
        assert expire_issues(store, NOW) == 0

    def test_waiting_customer_not_expired(self, store):
        t0 = NOW - timedelta(minutes=21)
        issue = store.insert_issue(Issue(
            group_id="G1", question_summary="退款", status=IssueStatus.PENDING,
            timeout_at=t0 + timedelta(minutes=15), created_at=t0,
        ))
        store.update_issue_status(issue.id, IssueStatus.WAITING_CUSTOMER, t0 + timedelta(minutes=20))

        assert expire_issues(store, NOW) == 0
        assert store.get_issue(issue.id).status == IssueStatus.WAITING_CUSTOMER

    def test_pipeline_delegates(self, engine, store, groups):
        store.insert_issue(Issue(
            group_id="G1", question_summary="退款",
            timeout_at=NOW - timedelta(minutes=1), created_at=NOW - timedelta(minutes=16),
        ))

        assert AutoReplyPipeline(engine, store, groups).expire_issues(NOW) == 1


class TestBuildPipeline:
    """测试流水线组装"""

    def test_keyword_only_repository(self, tmp_path):
        config = AutoReplyConfig(
            generator=GeneratorConfig(api_key='sk-test'),
            storage=StorageConfig(reply_db=str(tmp_path / "autoreply.db")),
        )
        repository = KnowledgeRepository(':memory:')
        repository.init_db()

        pipeline = build_pipeline(config, repository=repository)

        retriever = pipeline.engine.answer_service.retriever
        assert retriever.repository is repository
        assert retriever.embedding_service is None
        assert pipeline.engine.analyzer.window_size == 10
        assert pipeline.store.db_path == str(tmp_path / "autoreply.db")
        repository.close()
