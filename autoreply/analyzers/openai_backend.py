"""
OpenAI 兼容补全后端
OpenAI-compatible Completion Backend

通过 chat completions 接口调用 OpenAI 或兼容服务（如 Ollama 的 /v1 端点）。
"""

import logging
from typing import Any

from openai import OpenAI, APIError, APITimeoutError, APIConnectionError

from autoreply.analyzers.base import LLMBackend
from autoreply.qa.config import GeneratorConfig
from autoreply.qa.exceptions import GeneratorError

# 配置日志
logger = logging.getLogger(__name__)

DEFAULT_OPENAI_API_BASE = "https://api.openai.com/v1"
DEFAULT_OLLAMA_API_BASE = "http://localhost:11434/v1"


class OpenAIBackend(LLMBackend):
    """
    OpenAI 兼容后端

    Attributes:
        client: OpenAI客户端实例
        temperature: 生成温度参数
        max_tokens: 最大生成Token数，None 表示不限制
    """

    name = "openai"

    def __init__(self, config: GeneratorConfig):
        super().__init__(config.model, config.timeout)

        if config.provider == "ollama":
            api_base = config.api_base or DEFAULT_OLLAMA_API_BASE
            # Ollama 不校验密钥，但客户端要求非空
            api_key = config.api_key or "ollama"
            self.name = "ollama"
        else:
            api_base = config.api_base or DEFAULT_OPENAI_API_BASE
            api_key = config.api_key

        self.client = OpenAI(base_url=api_base, api_key=api_key)
        self.temperature = config.temperature
        self.max_tokens = config.max_tokens

        logger.info(f"OpenAIBackend initialized with model: {self.model}, api_base: {api_base}")

    def complete(self, prompt: str, system_prompt: str | None = None) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "timeout": self.timeout,
        }
        if self.max_tokens is not None:
            kwargs["max_tokens"] = self.max_tokens

        try:
            response = self.client.chat.completions.create(**kwargs)
        except APITimeoutError as e:
            raise GeneratorError(f"{self.name} API call timeout: {e}") from e
        except APIConnectionError as e:
            raise GeneratorError(f"{self.name} API connection error: {e}") from e
        except APIError as e:
            raise GeneratorError(f"{self.name} API error: {e}") from e

        if not response.choices:
            raise GeneratorError(f"{self.name} API response has no choices")

        content = response.choices[0].message.content
        if not content or not content.strip():
            raise GeneratorError(f"{self.name} API returned empty content")

        return content.strip()
