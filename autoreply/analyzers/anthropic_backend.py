"""
Anthropic 补全后端
Anthropic Completion Backend

通过 Messages API 调用 Claude 模型。
"""

import logging

import anthropic

from autoreply.analyzers.base import LLMBackend
from autoreply.qa.config import GeneratorConfig
from autoreply.qa.exceptions import GeneratorError

# 配置日志
logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 1024


class AnthropicBackend(LLMBackend):
    """
    Anthropic 后端

    Attributes:
        client: anthropic.Anthropic 客户端
        max_tokens: 最大生成Token数（Messages API 必填）
        temperature: 生成温度参数
    """

    name = "anthropic"

    def __init__(self, config: GeneratorConfig):
        super().__init__(config.model, config.timeout)

        if not config.api_key:
            logger.warning("AnthropicBackend initialized without API key")

        self.client = anthropic.Anthropic(api_key=config.api_key or None)
        self.max_tokens = config.max_tokens or DEFAULT_MAX_TOKENS
        self.temperature = config.temperature

        logger.info(f"AnthropicBackend initialized with model: {self.model}")

    def complete(self, prompt: str, system_prompt: str | None = None) -> str:
        kwargs = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [{"role": "user", "content": prompt}],
            "timeout": self.timeout,
        }
        if system_prompt:
            kwargs["system"] = system_prompt

        try:
            response = self.client.messages.create(**kwargs)
        except anthropic.APITimeoutError as e:
            raise GeneratorError(f"anthropic API call timeout: {e}") from e
        except anthropic.APIConnectionError as e:
            raise GeneratorError(f"anthropic API connection error: {e}") from e
        except anthropic.APIError as e:
            raise GeneratorError(f"anthropic API error: {e}") from e

        text = "".join(
            block.text for block in (response.content or [])
            if getattr(block, "type", None) == "text"
        )
        if not text.strip():
            raise GeneratorError("anthropic API returned empty content")

        return text.strip()
