"""
答案安全过滤模块

拦截形态异常的生成结果：模型有时会把知识库的问题列表或反问句当作答案输出。
问号 ≥ 3 个或项目符号 ≥ 5 个时强制判定为无法回答，答案文本保持不变。
"""

import logging
import re
from dataclasses import replace

from autoreply.qa.models import AnswerResult

logger = logging.getLogger(__name__)

QUESTION_MARK_PATTERN = re.compile(r'[？?]')
BULLET_PATTERN = re.compile(r'[•·]')

MAX_QUESTION_MARKS = 3
MAX_BULLETS = 5


def is_malformed(answer: str) -> bool:
    """答案是否呈现问题列表或反问的形态"""
    if not answer:
        return False
    question_marks = len(QUESTION_MARK_PATTERN.findall(answer))
    bullets = len(BULLET_PATTERN.findall(answer))
    return question_marks >= MAX_QUESTION_MARKS or bullets >= MAX_BULLETS


def apply_safety_filter(result: AnswerResult) -> AnswerResult:
    """
    对答案结果应用安全过滤

    Args:
        result: 生成器返回的结果

    Returns:
        通过时原样返回；拦截时返回 can_answer=False、confidence=0 的副本
    """
    if not is_malformed(result.answer):
        return result

    logger.info(f"Rejected malformed answer: {result.answer[:50]!r}")
    return replace(result, can_answer=False, confidence=0)
