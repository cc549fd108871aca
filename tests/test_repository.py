"""
KnowledgeRepository单元测试

测试知识条目的新增、导入、停用、检索和使用统计。
"""

from unittest.mock import Mock

import pytest

from autoreply.qa.vector_index import EmbeddingIndex
from autoreply.repository import KnowledgeRepository


@pytest.fixture
def repo():
    repository = KnowledgeRepository(':memory:')
    repository.init_db()
    yield repository
    repository.close()


class TestKnowledgeRepositoryInit:
    """测试数据库初始化"""

    def test_init_db_creates_table(self, repo):
        """测试init_db创建knowledge_entries表"""
        conn = repo._get_connection()
        row = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='knowledge_entries'"
        ).fetchone()

        assert row is not None

    def test_init_db_creates_indexes(self, repo):
        """测试init_db创建索引"""
        conn = repo._get_connection()
        indexes = [
            row['name']
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")
        ]

        assert 'idx_knowledge_question' in indexes
        assert 'idx_knowledge_active' in indexes
        assert 'idx_knowledge_category' in indexes

    def test_init_db_idempotent(self, repo):
        """测试init_db可以多次调用"""
        repo.init_db()


class TestAddEntry:
    """测试新增条目"""

    def test_add_entry(self, repo):
        entry = repo.add_entry("怎麼建立課程", "前往後台點擊「建立課程」", "課程", ["建課"])

        assert entry.id is not None
        assert entry.question == "怎麼建立課程"
        assert entry.category == "課程"
        assert entry.keywords == ["建課"]
        assert entry.is_active is True
        assert entry.usage_count == 0
        assert entry.is_synced is False

    def test_add_entry_strips_text(self, repo):
        entry = repo.add_entry("  如何退款  ", "  請聯繫客服  ")

        assert entry.question == "如何退款"
        assert entry.answer == "請聯繫客服"

    @pytest.mark.parametrize("question, answer", [
        ("", "答案"),
        ("   ", "答案"),
        ("問題", ""),
    ])
    def test_add_entry_rejects_empty(self, repo, question, answer):
        with pytest.raises(ValueError):
            repo.add_entry(question, answer)


class TestImportEntries:
    """测试批量导入"""

    def test_import_creates_and_updates(self, repo):
        """测试问题已存在时更新，否则新建"""
        existing = repo.add_entry("如何退款", "舊答案")
        repo.mark_synced([existing.id])

        result = repo.import_entries([
            {"question": "如何退款", "answer": "新答案", "keywords": "退款, 退費"},
            {"question": "怎麼建立課程", "answer": "前往後台", "category": "課程"},
        ])

        assert result == {'created': 1, 'updated': 1, 'errors': []}

        updated = repo.get(existing.id)
        assert updated.answer == "新答案"
        assert updated.keywords == ["退款", "退費"]
        assert updated.is_synced is False
        assert repo.count() == 2

    def test_import_reports_missing_fields(self, repo):
        result = repo.import_entries([
            {"question": "只有問題"},
            {"answer": "只有答案"},
            {"question": "完整", "answer": "條目"},
        ])

        assert result['created'] == 1
        assert len(result['errors']) == 2
        assert result['errors'][0].startswith("第 1 筆")


class TestDeactivate:
    """测试停用条目"""

    def test_deactivated_entry_excluded_from_reads(self, repo):
        entry = repo.add_entry("如何退款", "請聯繫客服")

        assert repo.deactivate(entry.id) is True

        assert repo.find_active() == []
        assert repo.get_active_by_ids([entry.id]) == []
        assert repo.find_unsynced() == []
        assert repo.get(entry.id).is_active is False

    def test_deactivate_missing_entry(self, repo):
        assert repo.deactivate(999) is False

    def test_deactivate_removes_from_index(self):
        index = Mock(spec=EmbeddingIndex)
        repository = KnowledgeRepository(':memory:', index=index)
        repository.init_db()
        entry = repository.add_entry("如何退款", "請聯繫客服")

        repository.deactivate(entry.id)

        index.remove.assert_called_once_with(entry.id)
        repository.close()


class TestUsage:
    """测试使用统计"""

    def test_increment_usage(self, repo):
        entry = repo.add_entry("如何退款", "請聯繫客服")

        repo.increment_usage(entry.id)
        repo.increment_usage(entry.id)

        updated = repo.get(entry.id)
        assert updated.usage_count == 2
        assert updated.last_used_at is not None


class TestFindActive:
    """测试启用条目查询"""

    def test_category_filter(self, repo):
        repo.add_entry("怎麼建立課程", "前往後台", "課程")
        repo.add_entry("如何退款", "請聯繫客服", "帳務")
        repo.add_entry("其他問題", "其他答案")

        assert [e.category for e in repo.find_active(["課程"])] == ["課程"]
        assert len(repo.find_active()) == 3
        assert len(repo.find_active([])) == 3

    def test_get_active_by_ids_keeps_order(self, repo):
        a = repo.add_entry("問題一", "答案一")
        b = repo.add_entry("問題二", "答案二")

        entries = repo.get_active_by_ids([b.id, 999, a.id])

        assert [e.id for e in entries] == [b.id, a.id]


class TestFindByEmbedding:
    """测试向量检索"""

    def test_without_index_returns_empty(self, repo):
        assert repo.has_embeddings() is False
        assert repo.find_by_embedding([0.1, 0.2], k=5, threshold=0.4) == []

    def test_filters_inactive_hits(self):
        index = Mock(spec=EmbeddingIndex)
        repository = KnowledgeRepository(':memory:', index=index)
        repository.init_db()
        active = repository.add_entry("怎麼建立課程", "前往後台")
        inactive = repository.add_entry("如何退款", "請聯繫客服")
        repository.deactivate(inactive.id)

        index.query.return_value = [(inactive.id, 0.95), (active.id, 0.8)]

        results = repository.find_by_embedding([0.1], k=5, threshold=0.4, categories=["課程"])

        assert [(e.id, s) for e, s in results] == [(active.id, 0.8)]
        index.query.assert_called_once_with([0.1], k=5, threshold=0.4, categories=["課程"])
        repository.close()


class TestSync:
    """测试同步标记"""

    def test_mark_synced(self, repo):
        a = repo.add_entry("問題一", "答案一")
        b = repo.add_entry("問題二", "答案二")

        repo.mark_synced([a.id])

        assert [e.id for e in repo.find_unsynced()] == [b.id]

    def test_update_marks_unsynced(self, repo):
        entry = repo.add_entry("問題一", "答案一")
        repo.mark_synced([entry.id])

        repo.update_entry(entry.id, answer="新答案")

        assert repo.get(entry.id).is_synced is False
