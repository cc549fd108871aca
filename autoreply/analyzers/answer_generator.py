"""
答案生成器模块
Answer Generator Module

封装三项模型能力：根据知识条目生成答案、判断单条消息是否为提问、
分析一段对话中的未回答问题。提示词和结果解析在这里统一处理，
实际调用委托给可替换的 LLMBackend。

- generate_answer 永不抛出异常，任何失败都返回“无法回答”
- analyze_question / analyze_conversation 失败时抛出 GeneratorError，由调用方兜底
"""

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any

from autoreply.analyzers.base import LLMBackend
from autoreply.models import KnowledgeEntry, Sentiment
from autoreply.qa.config import GeneratorConfig
from autoreply.qa.exceptions import DecodeError, GeneratorError
from autoreply.qa.models import (
    AnswerResult,
    ChatMessage,
    ConversationAnalysis,
    ConversationQuestion,
    QuestionAnalysis,
    QuestionStatus,
)

# 配置日志
logger = logging.getLogger(__name__)

MAX_CONTEXT_ENTRIES = 3
MAX_ANSWER_CHARS = 2000

CODE_FENCE_PATTERN = re.compile(r'```(?:json)?\s*|\s*```', re.IGNORECASE)


SYSTEM_PROMPT = """你是一個專業的客服助手，負責在群組中回答客戶問題。
請只根據提供的資料作答，不要編造資訊，並始終以有效的 JSON 格式輸出結果。"""

ANSWER_PROMPT = """根據知識庫回答用戶問題。

問題：{query}

知識庫：
{context}

要求：
- 只用知識庫資訊，不編造
- 回答簡潔，適合聊天訊息
- 必須直接回答問題，給出具體的解答內容
- 不要反問用戶，也不要列出問題清單讓用戶選擇
- 如果問題太模糊無法具體回答，或知識庫中沒有對應答案，canAnswer 設為 false
- 不要把知識庫的標題或問題列表當作回答內容

JSON 回覆：{{"canAnswer": bool, "answer": "回答", "confidence": 0-100, "usedKnowledge": [編號]}}
只回覆 JSON。"""

QUESTION_PROMPT = """分析以下訊息是否為提問，以 JSON 格式回覆：
{{
  "isQuestion": boolean,
  "confidence": number,
  "summary": string,
  "sentiment": "positive" | "neutral" | "negative",
  "suggestedReply": string
}}

判斷標準：
- 直接提問（如：怎麼做？如何設定？）→ isQuestion: true, confidence: 90-100
- 間接提問、請求幫助（如：我想知道...、可以告訴我...）→ isQuestion: true, confidence: 70-90
- 模糊可能是問題（如：課程證書設定）→ isQuestion: true, confidence: 50-70
- 陳述句、打招呼、閒聊 → isQuestion: false

只回覆 JSON，不要其他文字。

訊息內容：
{content}"""

CONVERSATION_PROMPT = """分析以下對話記錄，判斷是否存在未回答的問題，以 JSON 格式回覆。

步驟：
1. 識別對話中所有被提出的問題
2. 檢查每個問題後續是否已有人回答、提問者已自行解決或表示不需要了
3. 排除已回答、已解決或已放棄的問題
4. 若仍有多個未回答問題，question 取最新的一個

回覆格式：
{{
  "hasUnansweredQuestion": boolean,
  "question": string,
  "allQuestions": [
    {{"question": string, "status": "unanswered" | "answered" | "abandoned", "answeredBy": string | null}}
  ],
  "confidence": number,
  "summary": string,
  "sentiment": "positive" | "neutral" | "negative"
}}

判斷標準：
- 直接提問或間接請求幫助都視為問題
- 有人回覆了相關答案（包含機器人）→ answered
- 提問者轉移話題、說「沒事了」「好的謝謝」→ abandoned
- 後續沒有任何相關回覆 → unanswered
- 閒聊、打招呼、陳述句不算問題

只回覆 JSON，不要其他文字。

對話記錄（由舊到新）：
{conversation}"""


@dataclass
class DecodeResult:
    """
    模型输出 JSON 解析结果

    Attributes:
        value: 解析得到的对象，失败时为 None
        error: 失败原因，成功时为 None
    """
    value: dict[str, Any] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.value is not None

    def unwrap(self) -> dict[str, Any]:
        """返回解析结果，失败时抛出 DecodeError"""
        if self.value is None:
            raise DecodeError(self.error or "empty model output")
        return self.value


def decode_json(text: str | None) -> DecodeResult:
    """
    从模型输出中提取 JSON 对象

    兼容 ```json 代码块和前后附加说明文字的情况。

    Examples:
        >>> decode_json('```json\\n{"canAnswer": true}\\n```').value
        {'canAnswer': True}
        >>> decode_json('no json here').ok
        False
    """
    if not text or not text.strip():
        return DecodeResult(error="empty model output")

    cleaned = CODE_FENCE_PATTERN.sub('', text)
    json_start = cleaned.find('{')
    json_end = cleaned.rfind('}') + 1
    if json_start == -1 or json_end <= json_start:
        return DecodeResult(error=f"no JSON object found: {text[:100]!r}")

    try:
        value = json.loads(cleaned[json_start:json_end])
    except json.JSONDecodeError as e:
        return DecodeResult(error=f"invalid JSON: {e}")

    if not isinstance(value, dict):
        return DecodeResult(error="JSON root is not an object")

    return DecodeResult(value=value)


def normalize_confidence(value: Any) -> int:
    """
    将模型给出的信心度统一为 [0, 100] 的整数

    (0, 1] 视为比例（1.0 即 100），其余视为百分比。

    Examples:
        >>> normalize_confidence(0.85)
        85
        >>> normalize_confidence(1)
        100
        >>> normalize_confidence(85)
        85
        >>> normalize_confidence("abc")
        0
    """
    if isinstance(value, bool):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0

    if not math.isfinite(number):
        return 0
    if 0 < number <= 1:
        number *= 100

    return max(0, min(100, round(number)))


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', 'yes', '1')
    return bool(value)


class AnswerGenerator:
    """
    答案生成器

    Attributes:
        backend: 模型补全后端
        max_context_entries: 生成答案时最多使用的知识条目数
        max_answer_chars: 每个条目答案的最大字符数
    """

    def __init__(
        self,
        backend: LLMBackend,
        max_context_entries: int = MAX_CONTEXT_ENTRIES,
        max_answer_chars: int = MAX_ANSWER_CHARS
    ):
        self.backend = backend
        self.max_context_entries = max_context_entries
        self.max_answer_chars = max_answer_chars

    def _format_context(self, entries: list[KnowledgeEntry]) -> str:
        blocks = []
        for i, entry in enumerate(entries, start=1):
            answer = entry.answer
            if len(answer) > self.max_answer_chars:
                answer = answer[:self.max_answer_chars] + '...'
            blocks.append(f"【{i}】{entry.question}\n{answer}")
        return '\n\n'.join(blocks)

    def generate_answer(self, query: str, entries: list[KnowledgeEntry]) -> AnswerResult:
        """
        根据知识条目生成答案

        Args:
            query: 用户问题
            entries: 按相关度排序的知识条目

        Returns:
            AnswerResult；没有条目、调用失败或输出无法解析时返回无法回答
        """
        if not entries:
            return AnswerResult.cannot_answer()

        used_entries = entries[:self.max_context_entries]
        prompt = ANSWER_PROMPT.format(query=query, context=self._format_context(used_entries))

        try:
            raw = self.backend.complete(prompt, system_prompt=SYSTEM_PROMPT)
        except GeneratorError as e:
            logger.error(f"Answer generation failed ({self.backend.name}): {e}")
            return AnswerResult.cannot_answer()

        decoded = decode_json(raw)
        if not decoded.ok:
            logger.warning(f"Failed to decode answer from {self.backend.name}: {decoded.error}")
            return AnswerResult.cannot_answer()

        data = decoded.value
        used_knowledge = data.get('usedKnowledge') or []
        if not isinstance(used_knowledge, list):
            logger.warning(
                f"Malformed answer from {self.backend.name}: usedKnowledge is "
                f"{type(used_knowledge).__name__}"
            )
            return AnswerResult.cannot_answer()

        answer = str(data.get('answer') or '').strip()

        sources: list[int] = []
        for index in used_knowledge:
            try:
                position = int(index) - 1
            except (TypeError, ValueError, OverflowError):
                continue
            if 0 <= position < len(used_entries):
                entry_id = used_entries[position].id
                if entry_id not in sources:
                    sources.append(entry_id)

        return AnswerResult(
            answer=answer,
            confidence=normalize_confidence(data.get('confidence')),
            sources=sources,
            can_answer=_as_bool(data.get('canAnswer')) and bool(answer),
        )

    def analyze_question(self, text: str) -> QuestionAnalysis:
        """
        判断单条消息是否为提问

        Raises:
            GeneratorError: 调用失败或输出无法解析
        """
        raw = self.backend.complete(QUESTION_PROMPT.format(content=text))
        data = decode_json(raw).unwrap()

        return QuestionAnalysis(
            is_question=_as_bool(data.get('isQuestion')),
            confidence=normalize_confidence(data.get('confidence')),
            summary=str(data.get('summary') or ''),
            sentiment=Sentiment.parse(data.get('sentiment')),
            suggested_reply=str(data.get('suggestedReply') or ''),
        )

    def analyze_conversation(self, messages: list[ChatMessage]) -> ConversationAnalysis:
        """
        分析对话中的未回答问题

        Args:
            messages: 由旧到新的对话消息

        Raises:
            GeneratorError: 调用失败或输出无法解析
        """
        conversation = '\n'.join(m.format_line() for m in messages)
        raw = self.backend.complete(CONVERSATION_PROMPT.format(conversation=conversation))
        data = decode_json(raw).unwrap()

        all_questions = data.get('allQuestions') or []
        if not isinstance(all_questions, list):
            raise DecodeError(f"allQuestions is not a list: {type(all_questions).__name__}")

        questions = []
        for item in all_questions:
            if not isinstance(item, dict):
                continue
            text = str(item.get('question') or '').strip()
            if not text:
                continue
            questions.append(ConversationQuestion(
                text=text,
                status=QuestionStatus.parse(item.get('status')),
                answered_by=item.get('answeredBy') or None,
            ))

        return ConversationAnalysis(
            has_unanswered_question=_as_bool(data.get('hasUnansweredQuestion')),
            question=str(data.get('question') or '').strip(),
            all_questions=questions,
            confidence=normalize_confidence(data.get('confidence')),
            summary=str(data.get('summary') or ''),
            sentiment=Sentiment.parse(data.get('sentiment')),
        )


def create_backend(config: GeneratorConfig) -> LLMBackend:
    """
    根据配置创建补全后端

    Raises:
        ValueError: 不支持的 provider
    """
    provider = config.provider
    if provider in ("openai", "ollama"):
        from autoreply.analyzers.openai_backend import OpenAIBackend
        return OpenAIBackend(config)
    if provider == "anthropic":
        from autoreply.analyzers.anthropic_backend import AnthropicBackend
        return AnthropicBackend(config)
    if provider == "gemini_oauth":
        from autoreply.analyzers.gemini_oauth_backend import GeminiOAuthBackend
        return GeminiOAuthBackend(config)
    raise ValueError(f"Unsupported generator provider: {provider}")


def create_answer_generator(config: GeneratorConfig) -> AnswerGenerator:
    """创建 AnswerGenerator 实例的工厂函数"""
    return AnswerGenerator(create_backend(config))
