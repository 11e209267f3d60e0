"""检索查询构造：查询变体、关键词、精确短语。

一条长而混杂的中英文查询做单个 embedding 时，短而关键的子查询会被稀释，
因此拆出最多 6 个变体分别向量化，打分时取最大余弦相似度。
"""

from __future__ import annotations

import re

from core.charsets import HAN, LATIN_ALNUM

_WHITESPACE_RE = re.compile(r"\s+")
_SENTENCE_SPLIT_RE = re.compile(r"[。！？；;.!?]+")
_HAN_RUN_RE = re.compile(f"[{HAN}]+")
_LATIN_RUN_RE = re.compile(f"[{LATIN_ALNUM}]+")
_TOKEN_RE = re.compile(f"[{LATIN_ALNUM}]{{2,}}|[{HAN}]{{2,}}")
_PHRASE_HAN_RE = re.compile(f"[{HAN}]{{6,}}")
_PHRASE_LATIN_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9\-_/ ]{10,}")

MAX_VARIANTS = 6
MAX_PHRASES = 8
MIN_PHRASE_LEN = 10
# 不超过该长度的汉字串整体作为关键词，更长的交给 jieba 切词
HAN_WHOLE_RUN_MAX = 4

STOP_WORDS = frozenset(
    {
        # English
        "the", "and", "for", "with", "that", "this", "from", "are", "was", "were",
        "will", "shall", "should", "into", "onto", "over", "under", "such", "than",
        "then", "there", "their", "these", "those", "have", "has", "had", "not",
        "but", "all", "any", "can", "may", "must", "our", "its", "per", "via",
        "of", "to", "in", "on", "at", "by", "as", "is", "be", "or", "an", "it",
        # 中文虚词/泛化词
        "的", "了", "和", "与", "及", "或", "在", "对", "为", "是", "将", "把",
        "以及", "或者", "并且", "而且", "其中", "这些", "那些", "这个", "那个",
        "进行", "相关", "有关", "通过", "对于", "关于", "根据", "按照", "需要",
        "可以", "应当", "应该", "是否", "如果", "因为", "所以", "但是", "然而",
        "一个", "一些", "以及其", "其他", "等等", "未填写",
    }
)


def normalize_query(query: str) -> str:
    return _WHITESPACE_RE.sub(" ", query or "").strip()


def build_query_variants(query: str) -> list[str]:
    """1~6 个查询变体：整句、各分句（≥6 字）、汉字串拼接（≥6 字）、字母数字串拼接（≥6 字）。"""
    normalized = normalize_query(query)
    if not normalized:
        return []

    variants = [normalized]
    for sentence in _SENTENCE_SPLIT_RE.split(normalized):
        sentence = sentence.strip()
        if len(sentence) >= 6:
            variants.append(sentence)

    han = "".join(_HAN_RUN_RE.findall(normalized))
    if len(han) >= 6:
        variants.append(han)

    latin = " ".join(_LATIN_RUN_RE.findall(normalized))
    if len(latin) >= 6:
        variants.append(latin)

    return list(dict.fromkeys(variants))[:MAX_VARIANTS]


def _segment_han(run: str) -> list[str]:
    if len(run) <= HAN_WHOLE_RUN_MAX:
        return [run]
    import jieba

    return [w for w in jieba.cut(run) if len(w) >= 2 and _HAN_RUN_RE.fullmatch(w)]


def extract_keywords(text: str, max_keywords: int = 32) -> list[str]:
    """关键词：字母数字串（≥2）与汉字串（≥2，长串经 jieba 切分），小写、去重、去停用词。"""
    keywords: list[str] = []
    seen: set[str] = set()
    for match in _TOKEN_RE.finditer(text or ""):
        token = match.group(0)
        pieces = _segment_han(token) if _HAN_RUN_RE.fullmatch(token) else [token]
        for piece in pieces:
            piece = piece.lower()
            if piece in seen or piece in STOP_WORDS:
                continue
            seen.add(piece)
            keywords.append(piece)
            if len(keywords) >= max_keywords:
                return keywords
    return keywords


def build_exact_phrases(query: str) -> list[str]:
    """精确短语：汉字长串（≥6）、英文长串（≥10），以及查询前 40 字（查询 ≥14 字时）；最多 8 个。

    短于 10 个字符的短语不加权，这里直接丢弃。
    """
    normalized = normalize_query(query)
    if not normalized:
        return []

    phrases: list[str] = []
    candidates = _PHRASE_HAN_RE.findall(normalized) + _PHRASE_LATIN_RE.findall(normalized)
    for candidate in candidates:
        candidate = candidate.strip()
        if len(candidate) >= MIN_PHRASE_LEN:
            phrases.append(candidate)

    # 查询过长时短语可能全被拆散，补充查询前半段
    if len(normalized) >= 14:
        phrases.append(normalized[:40])

    return list(dict.fromkeys(phrases))[:MAX_PHRASES]
