"""
文本向量化服务模块

把知识条目（问题 + 答案）和客户提问转换为向量，供 ChromaDB 语义检索使用。
通过 OpenAI 兼容的 embeddings 接口调用，Ollama 等本地服务同样适用；
未单独配置时复用答案生成器的 api_base / api_key。

超时、连接错误、限流和 5xx 会指数退避重试，4xx 立即失败。
"""

import logging
import time
from typing import Any

from openai import OpenAI, APIError, APITimeoutError, APIConnectionError, RateLimitError

from autoreply.qa.config import AutoReplyConfig

# 配置日志
logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"
DEFAULT_API_BASE = "https://api.openai.com/v1"
MAX_RETRIES = 3
INITIAL_RETRY_DELAY = 1.0       # 秒
DEFAULT_RATE_LIMIT_DELAY = 0.2  # 两次请求的最小间隔（秒）


def _normalize_whitespace(text: str) -> str:
    return ' '.join(text.split())


class EmbeddingService:
    """
    知识条目向量化服务

    Attributes:
        client: OpenAI 客户端实例
        model: Embedding 模型名称
        max_retries: 最大尝试次数
        timeout: 单次请求超时（秒）
        rate_limit_delay: 两次请求的最小间隔（秒）
    """

    def __init__(self, config: dict[str, Any]):
        """
        Args:
            config: api_base, api_key, model, timeout, max_retries, rate_limit_delay，均可省略
        """
        api_base = config.get('api_base') or DEFAULT_API_BASE
        api_key = config.get('api_key', '')
        if not api_key:
            logger.warning("EmbeddingService initialized without API key")

        self.client = OpenAI(base_url=api_base, api_key=api_key)
        self.model = config.get('model') or DEFAULT_EMBEDDING_MODEL
        self.timeout = float(config.get('timeout', 30))
        self.max_retries = int(config.get('max_retries', MAX_RETRIES))
        self.rate_limit_delay = float(config.get('rate_limit_delay', DEFAULT_RATE_LIMIT_DELAY))
        self._last_request_at = 0.0

        logger.info(f"EmbeddingService ready: model={self.model}, api_base={api_base}")

    def _throttle(self) -> None:
        if self.rate_limit_delay > 0:
            wait = self.rate_limit_delay - (time.time() - self._last_request_at)
            if wait > 0:
                time.sleep(wait)
        self._last_request_at = time.time()

    def _request(self, payload: str | list[str]) -> list[list[float]]:
        """
        请求 embeddings 接口，按输入顺序返回向量

        Raises:
            RuntimeError: 客户端错误、返回数量不符或重试耗尽
        """
        self._throttle()

        expected = 1 if isinstance(payload, str) else len(payload)
        delay = INITIAL_RETRY_DELAY
        last_error: Exception | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = self.client.embeddings.create(
                    model=self.model,
                    input=payload,
                    timeout=self.timeout
                )
            except RateLimitError as e:
                last_error = e
                retry_after = getattr(e, 'retry_after', None)
                wait = float(retry_after) if retry_after else delay
            except (APITimeoutError, APIConnectionError) as e:
                last_error = e
                wait = delay
            except APIError as e:
                status_code = getattr(e, 'status_code', None)
                if status_code and status_code < 500:
                    logger.error(f"Embedding request rejected: {e}")
                    raise RuntimeError(f"API error: {e}") from e
                last_error = e
                wait = delay
            else:
                data = response.data or []
                if len(data) != expected:
                    raise RuntimeError(
                        f"API response count mismatch: expected {expected}, got {len(data)}"
                    )
                return [item.embedding for item in sorted(data, key=lambda item: item.index)]

            logger.warning(
                f"Embedding request failed ({type(last_error).__name__}), "
                f"attempt {attempt}/{self.max_retries}, retrying in {wait}s"
            )
            time.sleep(wait)
            delay *= 2

        message = f"Failed to create embeddings after {self.max_retries} attempts"
        logger.error(f"{message}: {last_error}")
        raise RuntimeError(message) from last_error

    def embed_text(self, text: str) -> list[float]:
        """
        向量化单段文本（连续空白会被压缩）

        Raises:
            ValueError: 文本为空
            RuntimeError: 接口调用失败
        """
        if not text or not text.strip():
            raise ValueError("Input text cannot be empty")

        vector = self._request(_normalize_whitespace(text))[0]
        logger.debug(f"Embedded {len(text)} chars into {len(vector)} dims")
        return vector

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        一次请求向量化多段文本，空文本的位置得到空列表

        Raises:
            ValueError: 列表为空或全部为空文本
            RuntimeError: 接口调用失败
        """
        if not texts:
            raise ValueError("Input text list cannot be empty")

        positions = [i for i, text in enumerate(texts) if text and text.strip()]
        if not positions:
            raise ValueError("All input texts are empty")

        vectors = self._request([_normalize_whitespace(texts[i]) for i in positions])

        result: list[list[float]] = [[] for _ in texts]
        for position, vector in zip(positions, vectors):
            result[position] = vector

        logger.info(f"Embedded {len(vectors)} texts")
        return result


def create_embedding_service(config: AutoReplyConfig) -> EmbeddingService:
    """
    按自动回复配置创建 EmbeddingService

    embedding 段未指定 api_base / api_key 时，复用 OpenAI 兼容生成器（openai / ollama）的设置。
    """
    embedding = config.embedding
    generator = config.generator
    shares_endpoint = generator.provider in ("openai", "ollama")

    return EmbeddingService({
        'api_base': embedding.api_base or (generator.api_base if shares_endpoint else None),
        'api_key': embedding.api_key or (generator.api_key if shares_endpoint else ''),
        'model': embedding.model,
        'timeout': embedding.timeout,
    })
