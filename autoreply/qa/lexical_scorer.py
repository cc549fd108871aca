"""
关键词匹配评分模块

按词元在知识条目问题、关键词和答案中的出现情况计算匹配分数：

- 问题包含词元：长度 × 4
- 任一关键词包含词元，或词元包含关键词：长度 × 3
- 答案中出现次数 n（上限 5）：长度 × min(n, 5)

匹配类型取三项中最大者，并列时优先级为 question > keyword > answer。
"""

import re
from dataclasses import dataclass, field

from autoreply.models import KnowledgeEntry

QUESTION_WEIGHT = 4
KEYWORD_WEIGHT = 3
MAX_ANSWER_OCCURRENCES = 5
MIN_TOKEN_LENGTH = 2

MATCH_QUESTION = "question"
MATCH_KEYWORD = "keyword"
MATCH_ANSWER = "answer"
MATCH_NONE = "none"


@dataclass
class MatchScore:
    """
    单个条目的匹配分数

    Attributes:
        total: 总分
        match_type: 主要匹配位置（question / keyword / answer / none）
        question_score: 问题匹配得分
        keyword_score: 关键词匹配得分
        answer_score: 答案匹配得分
        matched_tokens: 有贡献的词元
    """
    total: int = 0
    match_type: str = MATCH_NONE
    question_score: int = 0
    keyword_score: int = 0
    answer_score: int = 0
    matched_tokens: list[str] = field(default_factory=list)


def _count_occurrences(haystack: str, token: str) -> int:
    return len(re.findall(re.escape(token), haystack))


def score_entry(tokens: list[str], entry: KnowledgeEntry) -> MatchScore:
    """
    计算词元列表对单个知识条目的匹配分数

    Args:
        tokens: 分词结果
        entry: 知识库条目

    Returns:
        MatchScore，全部为零时 match_type 为 none
    """
    question = entry.question.lower()
    answer = entry.answer.lower()
    keywords = [kw.lower() for kw in entry.keywords if kw]

    question_score = 0
    keyword_score = 0
    answer_score = 0
    matched: list[str] = []

    for token in tokens:
        if len(token) < MIN_TOKEN_LENGTH:
            continue

        token = token.lower()
        length = len(token)
        hit = False

        if token in question:
            question_score += length * QUESTION_WEIGHT
            hit = True

        if any(token in kw or kw in token for kw in keywords):
            keyword_score += length * KEYWORD_WEIGHT
            hit = True

        occurrences = _count_occurrences(answer, token)
        if occurrences:
            answer_score += length * min(occurrences, MAX_ANSWER_OCCURRENCES)
            hit = True

        if hit:
            matched.append(token)

    total = question_score + keyword_score + answer_score
    if total == 0:
        return MatchScore()

    # 并列时按 question > keyword > answer 取第一个
    match_type = max(
        (
            (question_score, MATCH_QUESTION),
            (keyword_score, MATCH_KEYWORD),
            (answer_score, MATCH_ANSWER),
        ),
        key=lambda pair: pair[0],
    )[1]

    return MatchScore(
        total=total,
        match_type=match_type,
        question_score=question_score,
        keyword_score=keyword_score,
        answer_score=answer_score,
        matched_tokens=matched,
    )


def rescale_relevance(score: MatchScore) -> int:
    """
    将匹配分数映射为 [0, 100] 的相关度

    question: min(90, 50 + s)，keyword: min(80, 40 + s)，answer: min(70, 30 + s)
    """
    if score.match_type == MATCH_QUESTION:
        return min(90, 50 + score.total)
    if score.match_type == MATCH_KEYWORD:
        return min(80, 40 + score.total)
    if score.match_type == MATCH_ANSWER:
        return min(70, 30 + score.total)
    return 0
