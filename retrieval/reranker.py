"""词法预筛：在昂贵的向量化之前按关键词命中率 + 精确短语加权粗排候选片段。

候选片段超过上限时，只保留得分最高的 min(ceiling, top_k * multiplier) 个，
既限制了 embedding 成本，又保留了全文覆盖（而不是只取文档前 N 段）。
"""

from __future__ import annotations

import logging

from core.algorithms import exact_phrase_boost, keyword_hit_rate
from models.schemas import Chunk

logger = logging.getLogger(__name__)


class LexicalPrefilter:
    def __init__(
        self,
        ceiling: int = 240,
        multiplier: int = 24,
        phrase_boost_step: float = 0.12,
        phrase_boost_cap: float = 0.36,
    ):
        self.ceiling = ceiling
        self.multiplier = multiplier
        self.phrase_boost_step = phrase_boost_step
        self.phrase_boost_cap = phrase_boost_cap

    def score(self, text: str, tokens: list[str], phrases: list[str]) -> float:
        return keyword_hit_rate(text, tokens) + exact_phrase_boost(
            text, phrases, step=self.phrase_boost_step, cap=self.phrase_boost_cap
        )

    def filter(
        self, chunks: list[Chunk], tokens: list[str], phrases: list[str], top_k: int
    ) -> list[Chunk]:
        """候选数不超过上限时原样返回；否则按预筛分稳定排序后截断，保持原始相对顺序。"""
        if len(chunks) <= self.ceiling:
            return chunks

        keep = min(self.ceiling, max(1, top_k) * self.multiplier)
        scored = [(i, self.score(c.content, tokens, phrases)) for i, c in enumerate(chunks)]
        scored.sort(key=lambda x: x[1], reverse=True)
        survivors = sorted(i for i, _ in scored[:keep])

        logger.debug("[Prefilter] 候选 %d 个，保留 %d 个", len(chunks), len(survivors))
        return [chunks[i] for i in survivors]
