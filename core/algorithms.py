"""核心算法实现：余弦相似度、混合检索打分、关键词命中率、短语加权、RPN 分级。"""

from __future__ import annotations

import re

import numpy as np

_WHITESPACE_RE = re.compile(r"\s+")


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """余弦相似度；任一向量为空、维度不一致或模为 0 时返回 0。"""
    if not a or not b or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def max_cosine_similarity(query_vectors: list[list[float]], vector: list[float]) -> float:
    """多个查询变体取最大相似度；没有查询向量时为 0。"""
    if not query_vectors:
        return 0.0
    return max(cosine_similarity(q, vector) for q in query_vectors)


def keyword_hit_rate(text: str, tokens: list[str]) -> float:
    """命中的关键词占比（0~1），按小写子串包含判断。"""
    tokens = [t for t in tokens if t]
    if not tokens:
        return 0.0
    lower = text.lower()
    hits = sum(1 for t in tokens if t in lower)
    return hits / len(tokens)


def exact_phrase_boost(
    text: str, phrases: list[str], step: float = 0.12, cap: float = 0.36
) -> float:
    """每命中一个精确短语加 step，封顶 cap；短于 10 个字符的短语不参与。"""
    if not phrases:
        return 0.0
    normalized = _WHITESPACE_RE.sub(" ", text).lower()
    boost = 0.0
    for phrase in phrases:
        p = _WHITESPACE_RE.sub(" ", phrase).lower()
        if len(p) < 10:
            continue
        if p in normalized:
            boost += step
            if boost >= cap:
                return cap
    return boost


def combine_retrieval_score(
    cosine: float,
    hit_rate: float,
    phrase_boost: float,
    embedding_weight: float = 0.82,
    keyword_weight: float = 0.18,
    score_cap: float = 1.2,
) -> float:
    """混合分 = w_e * clamp((cos+1)/2) + w_k * hit_rate + boost，封顶 score_cap。

    cos 在 [-1, 1]，先压到 [0, 1] 再与命中率融合。
    """
    emb01 = max(0.0, min(1.0, (cosine + 1.0) / 2.0))
    hybrid = embedding_weight * emb01 + keyword_weight * hit_rate
    return min(score_cap, hybrid + phrase_boost)


def lexical_score(text: str, tokens: list[str]) -> float:
    """纯关键词打分：每命中一个关键词 +2，最低 1（保证无命中的片段仍可入选）。"""
    tokens = [t for t in tokens if t]
    if not tokens:
        return 1.0
    lower = text.lower()
    score = sum(2 for t in tokens if t in lower)
    return float(score or 1)


def compute_rpn(s: int, p: int, d: int) -> int:
    return s * p * d


def compute_rpn_level(rpn: int) -> str:
    """RPN 分级：<27 极低，<54 低，<108 中，其余高（54 属于"中"）。"""
    if rpn < 27:
        return "极低"
    if rpn < 54:
        return "低"
    if rpn < 108:
        return "中"
    return "高"


def needs_actions(rpn: int, threshold: int = 54) -> bool:
    return rpn >= threshold
