"""
LLMBackend - 模型补全后端基类
LLMBackend - Base Class for Completion Backends

AnswerGenerator 通过该接口调用不同的模型服务（OpenAI 兼容、Anthropic、Gemini CLI OAuth）。
所有后端在失败时统一抛出 GeneratorError。
"""

from abc import ABC, abstractmethod


class LLMBackend(ABC):
    """
    模型补全后端基类

    Attributes:
        name: 后端名称，用于日志
        model: 模型名称
        timeout: 单次调用超时（秒）
    """

    name: str = "base"

    def __init__(self, model: str, timeout: float = 30.0):
        self.model = model
        self.timeout = timeout

    @abstractmethod
    def complete(self, prompt: str, system_prompt: str | None = None) -> str:
        """
        发送提示词并返回模型输出文本

        Args:
            prompt: 用户提示词
            system_prompt: 系统提示词（可选）

        Returns:
            模型输出文本（已去除首尾空白）

        Raises:
            GeneratorError: 调用失败、超时或返回为空
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(model={self.model!r})"
