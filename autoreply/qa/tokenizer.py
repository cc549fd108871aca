"""
查询分词模块

将用户问题切分为用于关键词匹配的词元：小写化、标点替换为空格、
按空白切分、过滤停用词，并对含中文的词额外生成 2/3/4 字滑动窗口。

长度过滤由评分器负责，这里只负责切分和去重。
"""

import re
import logging

# 配置日志
logger = logging.getLogger(__name__)

# 疑问词、礼貌用语和语气助词
STOP_WORDS = frozenset({
    # 疑问词
    '怎麼', '如何', '什麼', '哪裡', '為什麼', '怎樣', '哪個', '哪些', '是什麼', '怎麼辦',
    # 能力/意愿
    '可以', '能不能', '有沒有', '是否',
    # 礼貌用语
    '請問', '想問', '請教', '想知道',
    # 语气助词
    '的', '了', '嗎', '呢', '吧', '啊', '呀', '嘛',
})

# ASCII 与全角中文标点
PUNCTUATION_PATTERN = re.compile(r'[？?！!。，,、：:；;（）()「」『』"“”\'‘’]')

CJK_PATTERN = re.compile(r'[\u4e00-\u9fa5]')

NGRAM_SIZES = (2, 3, 4)


def contains_cjk(text: str) -> bool:
    """是否包含至少一个中文字符"""
    return CJK_PATTERN.search(text) is not None


def _split_words(text: str) -> list[str]:
    normalized = PUNCTUATION_PATTERN.sub(' ', text.lower())
    return [w for w in normalized.split() if w]


def tokenize(text: str) -> list[str]:
    """
    将文本切分为去重后的词元列表

    规则：
    1. 整个词不是停用词时加入结果
    2. 含中文的词，额外加入所有长度为 2、3、4 的连续子串（各自过滤停用词）

    Args:
        text: 待切分文本

    Returns:
        去重后的词元（保持首次出现顺序）

    Examples:
        >>> tokenize("怎麼建立課程？")
        ['怎麼建立課程', '麼建', '建立', '立課', '課程', '怎麼建', '麼建立', '建立課', '立課程', '怎麼建立', '麼建立課', '建立課程']
        >>> tokenize("Reset Password")
        ['reset', 'password']
    """
    if not text:
        return []

    seen: set[str] = set()
    tokens: list[str] = []

    def add(token: str) -> None:
        if token and token not in STOP_WORDS and token not in seen:
            seen.add(token)
            tokens.append(token)

    for word in _split_words(text):
        add(word)

        if not contains_cjk(word):
            continue

        for size in NGRAM_SIZES:
            for start in range(len(word) - size + 1):
                add(word[start:start + size])

    return tokens
