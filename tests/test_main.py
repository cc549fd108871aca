"""
命令行入口单元测试
Unit tests for the command-line entry point
"""

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import openai
import pytest

import main
from autoreply.models import Issue, IssueStatus
from autoreply.qa.config import AutoReplyConfig, StorageConfig
from autoreply.repository import KnowledgeRepository
from autoreply.store import ReplyStore


logger = logging.getLogger("test_main")


@pytest.fixture
def config(tmp_path):
    return AutoReplyConfig(storage=StorageConfig(
        knowledge_db=str(tmp_path / "knowledge.db"),
        reply_db=str(tmp_path / "autoreply.db"),
    ))


class TestParseArgs:
    """测试命令行参数解析"""

    def test_ask_mode(self):
        args = main.parse_args(['--ask', '怎麼建立課程？', '--group', 'G1', '--direct'])

        assert args.ask == '怎麼建立課程？'
        assert args.group == 'G1'
        assert args.direct is True
        assert args.sender == '用戶'
        assert args.config == 'config.yaml'

    def test_ask_requires_group(self):
        with pytest.raises(SystemExit):
            main.parse_args(['--ask', '怎麼建立課程？'])

    def test_mode_required(self):
        with pytest.raises(SystemExit):
            main.parse_args([])

    def test_modes_exclusive(self):
        with pytest.raises(SystemExit):
            main.parse_args(['--sync-embeddings', '--expire-issues'])


class TestLoadKnowledgeFile:
    """测试知识文件读取"""

    def test_json_list(self, tmp_path):
        path = tmp_path / "knowledge.json"
        path.write_text(json.dumps([{'question': '如何退款', 'answer': '請聯繫客服'}]), encoding='utf-8')

        assert main.load_knowledge_file(path) == [{'question': '如何退款', 'answer': '請聯繫客服'}]

    def test_yaml_entries(self, tmp_path):
        path = tmp_path / "knowledge.yaml"
        path.write_text(
            "entries:\n"
            "  - question: 如何退款\n"
            "    answer: 請聯繫客服\n"
            "    keywords: 退款,退費\n",
            encoding='utf-8'
        )

        items = main.load_knowledge_file(path)

        assert items[0]['keywords'] == '退款,退費'

    def test_invalid_shape(self, tmp_path):
        path = tmp_path / "knowledge.json"
        path.write_text('"just a string"', encoding='utf-8')

        with pytest.raises(ValueError):
            main.load_knowledge_file(path)


class TestImportMode:
    """测试知识导入模式"""

    def test_import(self, tmp_path, config, capsys):
        path = tmp_path / "knowledge.yaml"
        path.write_text(
            "- question: 如何退款\n"
            "  answer: 請聯繫客服\n"
            "  category: 帳務\n"
            "  keywords: 退款,退費\n",
            encoding='utf-8'
        )

        assert main.run_import_mode(config, str(path), logger) == 0
        assert "新增 1 筆" in capsys.readouterr().out

        repo = KnowledgeRepository(config.storage.knowledge_db)
        repo.init_db()
        entry = repo.find_by_question("如何退款")
        assert entry.category == "帳務"
        assert entry.keywords == ["退款", "退費"]
        repo.close()

    def test_import_with_errors(self, tmp_path, config):
        path = tmp_path / "knowledge.json"
        path.write_text(json.dumps([{'question': '只有問題'}]), encoding='utf-8')

        assert main.run_import_mode(config, str(path), logger) == 1

    def test_missing_file(self, tmp_path, config):
        assert main.run_import_mode(config, str(tmp_path / "missing.json"), logger) == 1


class TestExpireMode:
    """测试超时巡检模式"""

    def test_expire(self, config, capsys):
        now = datetime.now()
        store = ReplyStore(config.storage.reply_db)
        issue = store.insert_issue(Issue(
            group_id="G1",
            question_summary="退款",
            timeout_at=now - timedelta(minutes=1),
            created_at=now - timedelta(minutes=16),
        ))

        assert main.run_expire_mode(config, logger) == 0
        assert "1" in capsys.readouterr().out
        assert store.get_issue(issue.id).status == IssueStatus.TIMEOUT


class TestAskMode:
    """测试问答模式"""

    @pytest.mark.parametrize("error", [
        openai.OpenAIError("The api_key client option must be set"),
        RuntimeError("chroma unavailable"),
    ])
    def test_pipeline_init_failure(self, config, capsys, error):
        args = main.parse_args(['--ask', '怎麼建立課程？', '--group', 'G1'])

        with patch('autoreply.qa.pipeline.build_pipeline', side_effect=error):
            assert main.run_ask_mode(config, args, logger) == 1

        assert "初始化自动回复流程失败" in capsys.readouterr().err


def test_project_root():
    assert main.project_root == Path(main.__file__).resolve().parent
