"""
知识检索与自动回复决策模块

对群组消息做混合检索（向量 + 关键词）、答案生成、安全过滤与回复决策。

公共接口:
    数据模型 (models.py):
        - RetrievalCandidate / RetrievalOutcome: 检索结果
        - AnswerResult: 答案结果
        - InboundMessage / ChatMessage: 消息
        - QuestionDetection / ReplyDecision: 决策输入与输出

    配置 (config.py):
        - AutoReplyConfig: 自动回复总配置
        - GroupConfigProvider: 群组设定来源
        - load_autoreply_config: 加载配置函数

    检索组件:
        - tokenize: 中英文分词
        - score_entry: 关键词评分
        - EmbeddingService / EmbeddingIndex: 向量化与向量索引
        - RetrievalOrchestrator: 检索编排

    依赖答案生成器的组件需从子模块直接导入:
        - autoreply.qa.answer_service.AnswerService
        - autoreply.qa.conversation_analyzer.ConversationAnalyzer
        - autoreply.qa.decision_engine.ReplyDecisionEngine
        - autoreply.qa.pipeline.AutoReplyPipeline / build_pipeline
"""

# =============================================================================
# 数据模型导出
# =============================================================================
from autoreply.qa.models import (
    RetrievalMethod,
    RetrievalCandidate,
    RetrievalOutcome,
    AnswerResult,
    ChatMessage,
    InboundMessage,
    QuestionDetection,
    ReplyDecision,
)

# =============================================================================
# 配置与异常导出
# =============================================================================
from autoreply.qa.config import (
    AutoReplyConfig,
    GroupConfigProvider,
    load_autoreply_config,
)

from autoreply.qa.exceptions import (
    AutoReplyError,
    RetrievalError,
    GeneratorError,
    DecodeError,
    PersistenceError,
)

# =============================================================================
# 检索组件导出
# =============================================================================
from autoreply.qa.tokenizer import tokenize
from autoreply.qa.lexical_scorer import score_entry
from autoreply.qa.safety_filter import apply_safety_filter
from autoreply.qa.embedding_service import (
    EmbeddingService,
    create_embedding_service,
)
from autoreply.qa.vector_index import (
    EmbeddingIndex,
    sync_embeddings,
)
from autoreply.qa.retriever import RetrievalOrchestrator
from autoreply.qa.issue_tracker import IssueTracker

# =============================================================================
# 公共接口列表
# =============================================================================
__all__ = [
    # 数据模型
    "RetrievalMethod",
    "RetrievalCandidate",
    "RetrievalOutcome",
    "AnswerResult",
    "ChatMessage",
    "InboundMessage",
    "QuestionDetection",
    "ReplyDecision",
    # 配置
    "AutoReplyConfig",
    "GroupConfigProvider",
    "load_autoreply_config",
    # 异常
    "AutoReplyError",
    "RetrievalError",
    "GeneratorError",
    "DecodeError",
    "PersistenceError",
    # 检索组件
    "tokenize",
    "score_entry",
    "apply_safety_filter",
    "EmbeddingService",
    "create_embedding_service",
    "EmbeddingIndex",
    "sync_embeddings",
    "RetrievalOrchestrator",
    "IssueTracker",
]
