"""
知识检索编排模块

先做向量语义检索，无结果（无向量、出错或全部低于阈值）时退回关键词检索。
两条路径只会返回其中之一的结果，检索中的任何异常都视为“无候选”。
"""

import logging

from autoreply.qa.config import RetrievalConfig
from autoreply.qa.embedding_service import EmbeddingService
from autoreply.qa.lexical_scorer import rescale_relevance, score_entry
from autoreply.qa.models import RetrievalCandidate, RetrievalMethod, RetrievalOutcome
from autoreply.qa.tokenizer import tokenize
from autoreply.repository import KnowledgeRepository

# 配置日志
logger = logging.getLogger(__name__)


class RetrievalOrchestrator:
    """
    知识检索编排器

    Attributes:
        repository: 知识库仓库
        embedding_service: 向量化服务（可选，未设置时只做关键词检索）
        config: 检索配置
    """

    def __init__(
        self,
        repository: KnowledgeRepository,
        embedding_service: EmbeddingService | None = None,
        config: RetrievalConfig | None = None
    ):
        self.repository = repository
        self.embedding_service = embedding_service
        self.config = config or RetrievalConfig()

    def retrieve(
        self,
        query: str,
        allowed_categories: list[str] | None = None
    ) -> RetrievalOutcome:
        """
        检索与问题相关的知识条目

        Args:
            query: 用户问题
            allowed_categories: 分类过滤，None 或空表示全部

        Returns:
            RetrievalOutcome，candidates 按相关度降序
        """
        if not query or not query.strip():
            return RetrievalOutcome()

        categories = allowed_categories or None

        candidates = self._vector_search(query, categories)
        if candidates:
            logger.info(f"Vector retrieval matched {len(candidates)} entries")
            return RetrievalOutcome(candidates, RetrievalMethod.VECTOR)

        candidates = self._lexical_search(query, categories)
        if candidates:
            logger.info(f"Keyword retrieval matched {len(candidates)} entries")
            return RetrievalOutcome(candidates, RetrievalMethod.KEYWORD)

        logger.info("No knowledge entries matched")
        return RetrievalOutcome()

    def _vector_search(
        self,
        query: str,
        categories: list[str] | None
    ) -> list[RetrievalCandidate]:
        """向量检索，任何失败都返回空列表"""
        if self.embedding_service is None:
            return []

        try:
            if not self.repository.has_embeddings():
                return []

            vector = self.embedding_service.embed_text(query)
            hits = self.repository.find_by_embedding(
                vector,
                k=self.config.vector_top_k,
                threshold=self.config.vector_similarity_threshold,
                categories=categories,
            )
        except Exception as e:
            logger.warning(f"Vector retrieval failed, falling back to keywords: {e}")
            return []

        return [
            RetrievalCandidate(entry=entry, relevance_score=round(similarity * 100))
            for entry, similarity in hits
        ]

    def _lexical_search(
        self,
        query: str,
        categories: list[str] | None
    ) -> list[RetrievalCandidate]:
        """关键词检索，任何失败都返回空列表"""
        try:
            entries = self.repository.find_active(categories)
        except Exception as e:
            logger.error(f"Keyword retrieval failed: {e}")
            return []

        tokens = tokenize(query)
        scored = []
        for entry in entries:
            score = score_entry(tokens, entry)
            if score.total > 0:
                scored.append((entry, score))

        scored.sort(key=lambda pair: pair[1].total, reverse=True)

        return [
            RetrievalCandidate(entry=entry, relevance_score=rescale_relevance(score))
            for entry, score in scored[:self.config.lexical_max_results]
        ]

    def record_usage(self, entry_ids: list[int]) -> None:
        """
        记录条目被引用，失败只记录日志
        """
        for entry_id in entry_ids:
            try:
                self.repository.increment_usage(entry_id)
            except Exception as e:
                logger.warning(f"Failed to record usage for entry {entry_id}: {e}")
