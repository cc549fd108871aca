"""
知识条目向量索引模块

使用 ChromaDB 存储知识条目的向量（余弦空间），提供写入、删除和相似度查询，
以及把未同步条目批量写入索引的同步函数。

条目的文本、启用状态等以 SQLite 为准，索引只保存 ID、分类和向量。
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any

import chromadb
from chromadb.config import Settings

from autoreply.models import KnowledgeEntry
from autoreply.qa.config import ChromaConfig
from autoreply.qa.exceptions import RetrievalError

if TYPE_CHECKING:
    from autoreply.qa.embedding_service import EmbeddingService
    from autoreply.repository import KnowledgeRepository

# 配置日志
logger = logging.getLogger(__name__)

# ChromaDB 集合配置
COLLECTION_METADATA = {
    "hnsw:space": "cosine",  # 使用余弦相似度
}


class EmbeddingIndex:
    """
    知识条目向量索引

    Attributes:
        chroma_client: ChromaDB 客户端实例
        collection: ChromaDB 集合
    """

    def __init__(self, config: ChromaConfig | None = None, client: Any = None):
        """
        初始化向量索引

        Args:
            config: ChromaDB 配置
            client: 已创建的 ChromaDB 客户端（可选，主要用于测试注入）

        Raises:
            RuntimeError: ChromaDB 初始化失败
        """
        self._config = config or ChromaConfig()

        try:
            if client is None:
                if not os.path.exists(self._config.path):
                    os.makedirs(self._config.path, exist_ok=True)
                    logger.info(f"Created ChromaDB directory: {self._config.path}")

                client = chromadb.PersistentClient(
                    path=self._config.path,
                    settings=Settings(anonymized_telemetry=False, allow_reset=True)
                )

            self.chroma_client = client
            self.collection = self.chroma_client.get_or_create_collection(
                name=self._config.collection_name,
                metadata=COLLECTION_METADATA
            )
        except Exception as e:
            error_msg = f"Failed to initialize ChromaDB: {e}"
            logger.error(error_msg)
            raise RuntimeError(error_msg) from e

        logger.info(
            f"EmbeddingIndex ready: collection={self._config.collection_name}, "
            f"vectors={self.collection.count()}"
        )

    def count(self) -> int:
        """索引中的向量数量"""
        return self.collection.count()

    def upsert(self, entry: KnowledgeEntry, embedding: list[float]) -> None:
        """
        写入或覆盖条目向量

        Raises:
            ValueError: 向量为空
        """
        if not embedding:
            raise ValueError(f"Empty embedding for entry {entry.id}")

        self.collection.upsert(
            ids=[str(entry.id)],
            embeddings=[embedding],
            documents=[entry.question],
            metadatas=[{
                'entry_id': entry.id,
                'category': entry.category or '',
            }]
        )

    def remove(self, entry_id: int) -> None:
        """从索引中删除条目，失败仅记录日志"""
        try:
            self.collection.delete(ids=[str(entry_id)])
        except Exception as e:
            logger.warning(f"Failed to remove entry {entry_id} from index: {e}")

    def query(
        self,
        vector: list[float],
        k: int = 5,
        threshold: float = 0.0,
        categories: list[str] | None = None
    ) -> list[tuple[int, float]]:
        """
        相似度查询

        ChromaDB 返回余弦距离，相似度 = 1 - 距离。

        Args:
            vector: 查询向量
            k: 最大返回数
            threshold: 相似度阈值，低于阈值的结果被过滤
            categories: 分类过滤

        Returns:
            (条目 ID, 相似度) 列表，按相似度降序

        Raises:
            RetrievalError: ChromaDB 查询失败
        """
        where = {'category': {'$in': list(categories)}} if categories else None

        try:
            total = self.collection.count()
            if total == 0:
                return []

            results = self.collection.query(
                query_embeddings=[vector],
                n_results=min(k, total),
                where=where,
                include=["distances"]
            )
        except Exception as e:
            raise RetrievalError(f"Vector query failed: {e}") from e

        hits: list[tuple[int, float]] = []
        if results and results['ids'] and results['ids'][0]:
            distances = results['distances'][0] if results['distances'] else []
            for i, doc_id in enumerate(results['ids'][0]):
                distance = distances[i] if i < len(distances) else 1.0
                similarity = max(0.0, min(1.0, 1 - distance))
                if similarity >= threshold:
                    hits.append((int(doc_id), similarity))

        hits.sort(key=lambda hit: hit[1], reverse=True)
        return hits

    def reset(self) -> None:
        """删除并重建集合"""
        self.chroma_client.delete_collection(name=self._config.collection_name)
        self.collection = self.chroma_client.create_collection(
            name=self._config.collection_name,
            metadata=COLLECTION_METADATA
        )
        logger.info(f"Recreated collection '{self._config.collection_name}'")


def sync_embeddings(
    repository: KnowledgeRepository,
    index: EmbeddingIndex,
    embedding_service: EmbeddingService,
    entry_ids: list[int] | None = None
) -> dict[str, int]:
    """
    将未同步的启用条目向量化并写入索引

    Args:
        repository: 知识库仓库
        index: 向量索引
        embedding_service: 向量化服务
        entry_ids: 仅同步指定条目（可选）

    Returns:
        {'synced': int, 'failed': int}
    """
    entries = repository.find_unsynced()
    if entry_ids is not None:
        wanted = set(entry_ids)
        entries = [e for e in entries if e.id in wanted]

    synced = 0
    failed = 0

    for entry in entries:
        try:
            embedding = embedding_service.embed_text(entry.embedding_text)
            index.upsert(entry, embedding)
            repository.mark_synced([entry.id])
            synced += 1
        except Exception as e:
            logger.error(f"Failed to sync entry {entry.id}: {e}")
            failed += 1

    logger.info(f"Embedding sync finished: synced={synced}, failed={failed}")
    return {'synced': synced, 'failed': failed}
