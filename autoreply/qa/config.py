"""
自动回复引擎配置模块

定义检索、决策、问题追踪、向量库、Embedding 与答案生成器的配置数据类，
以及从 YAML 配置字典加载的函数。
"""

from dataclasses import dataclass, field
from typing import Any
import os

from autoreply.models import GroupConfig, parse_bot_names


DEFAULT_FALLBACK_REPLY = "抱歉，我目前無法回答這個問題。請稍候，會有專人為您服務。"

# 支持的答案生成后端
SUPPORTED_PROVIDERS = ("openai", "ollama", "anthropic", "gemini_oauth")


@dataclass
class RetrievalConfig:
    """
    知识检索配置

    Attributes:
        vector_top_k: 向量检索返回的最大条目数
        vector_similarity_threshold: 余弦相似度阈值 [0, 1]
        lexical_max_results: 关键词检索返回的最大条目数
    """
    vector_top_k: int = 5
    vector_similarity_threshold: float = 0.4
    lexical_max_results: int = 10

    def validate(self) -> None:
        """
        验证配置参数

        Raises:
            ValueError: 当参数值不在有效范围内时
        """
        if self.vector_top_k <= 0:
            raise ValueError(f"vector_top_k must be > 0, got {self.vector_top_k}")
        if not 0 <= self.vector_similarity_threshold <= 1:
            raise ValueError(
                "vector_similarity_threshold must be in [0, 1], "
                f"got {self.vector_similarity_threshold}"
            )
        if self.lexical_max_results <= 0:
            raise ValueError(
                f"lexical_max_results must be > 0, got {self.lexical_max_results}"
            )

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {
            "vector_top_k": self.vector_top_k,
            "vector_similarity_threshold": self.vector_similarity_threshold,
            "lexical_max_results": self.lexical_max_results,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetrievalConfig":
        """从字典创建配置"""
        return cls(
            vector_top_k=int(data.get("vector_top_k", 5)),
            vector_similarity_threshold=float(data.get("vector_similarity_threshold", 0.4)),
            lexical_max_results=int(data.get("lexical_max_results", 10)),
        )


@dataclass
class DecisionConfig:
    """
    回复决策默认配置（可被群组设定覆盖）

    Attributes:
        auto_reply_enabled: 是否启用自动回复
        confidence_threshold: 信心度阈值 [0, 100]
        max_questions: 单次最多处理的未回答问题数
        window_size: 对话分析窗口消息数
        fallback_reply: 无法回答时的回复文本
        bot_names: 机器人名称（列表或逗号分隔字符串）
        knowledge_categories: 可检索的知识分类，空表示全部
    """
    auto_reply_enabled: bool = True
    confidence_threshold: int = 50
    max_questions: int = 3
    window_size: int = 10
    fallback_reply: str = DEFAULT_FALLBACK_REPLY
    bot_names: list[str] = field(default_factory=list)
    knowledge_categories: list[str] = field(default_factory=list)

    def validate(self) -> None:
        """
        验证配置参数

        Raises:
            ValueError: 当参数值不在有效范围内时
        """
        if not 0 <= self.confidence_threshold <= 100:
            raise ValueError(
                f"confidence_threshold must be in [0, 100], got {self.confidence_threshold}"
            )
        if self.max_questions < 1:
            raise ValueError(f"max_questions must be >= 1, got {self.max_questions}")
        if self.window_size < 1:
            raise ValueError(f"window_size must be >= 1, got {self.window_size}")
        if not self.fallback_reply:
            raise ValueError("fallback_reply must not be empty")

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {
            "auto_reply_enabled": self.auto_reply_enabled,
            "confidence_threshold": self.confidence_threshold,
            "max_questions": self.max_questions,
            "window_size": self.window_size,
            "fallback_reply": self.fallback_reply,
            "bot_names": list(self.bot_names),
            "knowledge_categories": list(self.knowledge_categories),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DecisionConfig":
        """从字典创建配置"""
        return cls(
            auto_reply_enabled=bool(data.get("auto_reply_enabled", True)),
            confidence_threshold=int(data.get("confidence_threshold", 50)),
            max_questions=int(data.get("max_questions", 3)),
            window_size=int(data.get("window_size", 10)),
            fallback_reply=data.get("fallback_reply") or DEFAULT_FALLBACK_REPLY,
            bot_names=parse_bot_names(data.get("bot_names")),
            knowledge_categories=list(data.get("knowledge_categories") or []),
        )


@dataclass
class IssueConfig:
    """
    问题追踪配置

    Attributes:
        timeout_minutes: 问题超时分钟数
    """
    timeout_minutes: int = 15

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {"timeout_minutes": self.timeout_minutes}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IssueConfig":
        """从字典创建配置"""
        return cls(timeout_minutes=int(data.get("timeout_minutes", 15)))


@dataclass
class ChromaConfig:
    """
    ChromaDB 配置

    Attributes:
        path: ChromaDB 持久化路径
        collection_name: 集合名称
    """
    path: str = "data/chroma_db"
    collection_name: str = "knowledge_entries"

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {
            "path": self.path,
            "collection_name": self.collection_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChromaConfig":
        """从字典创建配置"""
        return cls(
            path=data.get("path", "data/chroma_db"),
            collection_name=data.get("collection_name", "knowledge_entries"),
        )


@dataclass
class EmbeddingConfig:
    """
    Embedding 配置

    Attributes:
        model: Embedding 模型名称
        api_base: API 地址（可选，默认复用生成器配置）
        api_key: API 密钥（可选，默认复用生成器配置）
        timeout: 超时时间（秒）
    """
    model: str = "text-embedding-3-small"
    api_base: str | None = None
    api_key: str | None = None
    timeout: float = 30.0

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        result: dict[str, Any] = {"model": self.model, "timeout": self.timeout}
        if self.api_base:
            result["api_base"] = self.api_base
        if self.api_key:
            result["api_key"] = self.api_key
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EmbeddingConfig":
        """从字典创建配置"""
        return cls(
            model=data.get("model", "text-embedding-3-small"),
            api_base=data.get("api_base") or None,
            api_key=data.get("api_key") or None,
            timeout=float(data.get("timeout", 30)),
        )


@dataclass
class GeneratorConfig:
    """
    答案生成器配置

    Attributes:
        provider: 后端类型（openai / ollama / anthropic / gemini_oauth）
        model: 模型名称
        api_base: API 地址（openai / ollama 使用）
        api_key: API 密钥
        timeout: 单次调用超时（秒）
        temperature: 生成温度
        max_tokens: 最大生成 Token 数，None 表示不限制
        credentials_path: Gemini CLI OAuth 凭证文件路径
        oauth_client_id: OAuth 客户端 ID（gemini_oauth 使用）
        oauth_client_secret: OAuth 客户端密钥（gemini_oauth 使用）
    """
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_base: str | None = None
    api_key: str = ""
    timeout: float = 30.0
    temperature: float = 0.3
    max_tokens: int | None = None
    credentials_path: str = "~/.gemini/oauth_creds.json"
    oauth_client_id: str = ""
    oauth_client_secret: str = ""

    def __post_init__(self):
        """初始化后处理，从环境变量读取敏感配置"""
        self.provider = (self.provider or "openai").lower()
        if not self.api_key:
            if self.provider == "anthropic":
                self.api_key = os.getenv("ANTHROPIC_API_KEY", "")
            elif self.provider in ("openai", "ollama"):
                self.api_key = os.getenv("OPENAI_API_KEY", "")
        if self.provider == "gemini_oauth":
            if not self.oauth_client_id:
                self.oauth_client_id = os.getenv("GEMINI_OAUTH_CLIENT_ID", "")
            if not self.oauth_client_secret:
                self.oauth_client_secret = os.getenv("GEMINI_OAUTH_CLIENT_SECRET", "")

    def validate(self) -> None:
        """
        验证配置参数

        Raises:
            ValueError: 当参数值不在有效范围内时
        """
        if self.provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"provider must be one of {SUPPORTED_PROVIDERS}, got {self.provider!r}"
            )
        if self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")

    def to_dict(self) -> dict[str, Any]:
        """转换为字典（不包含密钥）"""
        return {
            "provider": self.provider,
            "model": self.model,
            "api_base": self.api_base,
            "timeout": self.timeout,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "credentials_path": self.credentials_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GeneratorConfig":
        """从字典创建配置"""
        max_tokens = data.get("max_tokens")
        return cls(
            provider=data.get("provider", "openai"),
            model=data.get("model", "gpt-4o-mini"),
            api_base=data.get("api_base") or None,
            api_key=data.get("api_key", ""),
            timeout=float(data.get("timeout", 30)),
            temperature=float(data.get("temperature", 0.3)),
            max_tokens=int(max_tokens) if max_tokens else None,
            credentials_path=data.get("credentials_path", "~/.gemini/oauth_creds.json"),
            oauth_client_id=data.get("oauth_client_id", ""),
            oauth_client_secret=data.get("oauth_client_secret", ""),
        )


@dataclass
class StorageConfig:
    """
    SQLite 存储配置

    Attributes:
        knowledge_db: 知识库数据库路径
        reply_db: 问题与自动回复日志数据库路径
    """
    knowledge_db: str = "data/knowledge.db"
    reply_db: str = "data/autoreply.db"

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {
            "knowledge_db": self.knowledge_db,
            "reply_db": self.reply_db,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StorageConfig":
        """从字典创建配置"""
        return cls(
            knowledge_db=data.get("knowledge_db", "data/knowledge.db"),
            reply_db=data.get("reply_db", "data/autoreply.db"),
        )


@dataclass
class AutoReplyConfig:
    """
    自动回复系统总配置

    Attributes:
        retrieval: 检索配置
        decision: 决策默认配置
        issue: 问题追踪配置
        chroma: ChromaDB 配置
        embedding: Embedding 配置
        generator: 答案生成器配置
        storage: SQLite 存储配置
        groups: 群组覆盖设定，键为群组 ID
    """
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    decision: DecisionConfig = field(default_factory=DecisionConfig)
    issue: IssueConfig = field(default_factory=IssueConfig)
    chroma: ChromaConfig = field(default_factory=ChromaConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    generator: GeneratorConfig = field(default_factory=GeneratorConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    groups: dict[str, dict[str, Any]] = field(default_factory=dict)

    def validate(self) -> None:
        """验证所有子配置"""
        self.retrieval.validate()
        self.decision.validate()
        self.generator.validate()
        for group_id in self.groups:
            self.group_config(group_id)

    def group_config(self, group_id: str) -> GroupConfig:
        """
        合并全局决策设定与群组覆盖设定

        Args:
            group_id: 群组 ID

        Returns:
            群组设定

        Raises:
            ValueError: 群组覆盖的信心度阈值不在 [0, 100]
        """
        override = self.groups.get(group_id, {}) or {}
        merged = {
            "group_id": group_id,
            "auto_reply_enabled": override.get(
                "auto_reply_enabled", self.decision.auto_reply_enabled
            ),
            "knowledge_categories": override.get(
                "knowledge_categories", self.decision.knowledge_categories
            ),
            "bot_names": override.get("bot_names", self.decision.bot_names),
            "confidence_threshold": override.get(
                "confidence_threshold", self.decision.confidence_threshold
            ),
        }
        group = GroupConfig.from_dict(merged)
        if not 0 <= group.confidence_threshold <= 100:
            raise ValueError(
                f"confidence_threshold for group {group_id} must be in [0, 100], "
                f"got {group.confidence_threshold}"
            )
        return group

    def to_dict(self) -> dict[str, Any]:
        """转换为字典"""
        return {
            "retrieval": self.retrieval.to_dict(),
            "decision": self.decision.to_dict(),
            "issue": self.issue.to_dict(),
            "chroma": self.chroma.to_dict(),
            "embedding": self.embedding.to_dict(),
            "generator": self.generator.to_dict(),
            "storage": self.storage.to_dict(),
            "groups": dict(self.groups),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AutoReplyConfig":
        """从字典创建配置"""
        return cls(
            retrieval=RetrievalConfig.from_dict(data.get("retrieval", {}) or {}),
            decision=DecisionConfig.from_dict(data.get("decision", {}) or {}),
            issue=IssueConfig.from_dict(data.get("issue", {}) or {}),
            chroma=ChromaConfig.from_dict(data.get("chroma", {}) or {}),
            embedding=EmbeddingConfig.from_dict(data.get("embedding", {}) or {}),
            generator=GeneratorConfig.from_dict(data.get("generator", {}) or {}),
            storage=StorageConfig.from_dict(data.get("storage", {}) or {}),
            groups={str(k): v or {} for k, v in (data.get("groups") or {}).items()},
        )


class GroupConfigProvider:
    """按群组 ID 提供 GroupConfig 的设定来源"""

    def __init__(self, config: AutoReplyConfig):
        self._config = config

    def get(self, group_id: str) -> GroupConfig:
        return self._config.group_config(group_id)


def load_autoreply_config(
    config_dict: dict[str, Any] | None = None,
    validate: bool = True
) -> AutoReplyConfig:
    """
    加载自动回复系统配置

    Args:
        config_dict: 配置字典，如果为 None 则返回默认配置
        validate: 是否验证配置参数，默认为 True

    Returns:
        AutoReplyConfig 配置对象

    Raises:
        ValueError: 当 validate=True 且配置参数无效时

    Example:
        >>> config = load_autoreply_config({"auto_reply": {"issue": {"timeout_minutes": 30}}})
        >>> config.issue.timeout_minutes
        30
        >>> config.retrieval.vector_top_k
        5
    """
    if config_dict is None:
        config = AutoReplyConfig()
    else:
        if "auto_reply" in config_dict:
            config_dict = config_dict["auto_reply"] or {}
        config = AutoReplyConfig.from_dict(config_dict)

    if validate:
        config.validate()

    return config
