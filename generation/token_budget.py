"""证据片段的 Token 预算。

每个 JSON 阶段都会把证据块整段放进 Prompt，证据过长时按分数从高到低保留，
超出预算的低分片段丢弃，保留下来的片段维持原有顺序（SOP 在前、文献在后）。
"""

from __future__ import annotations

import logging
import re

from core.charsets import HAN
from models.schemas import EvidenceChunk

logger = logging.getLogger(__name__)

_HAN_CHAR_RE = re.compile(f"[{HAN}]")


class TokenBudgetManager:
    def __init__(self, evidence_budget: int = 24000):
        self.evidence_budget = evidence_budget

    def estimate_tokens(self, text: str) -> int:
        """粗略估算 token 数。

        中文约 1.5 字/token，英文约 0.75 词/token。
        """
        cn_chars = len(_HAN_CHAR_RE.findall(text))
        en_words = len(_HAN_CHAR_RE.sub(" ", text).split())
        return int(cn_chars * 1.5 + en_words * 0.75) + 1

    def trim_evidence(self, chunks: list[EvidenceChunk]) -> list[EvidenceChunk]:
        if self.evidence_budget <= 0 or not chunks:
            return list(chunks)

        order = sorted(range(len(chunks)), key=lambda i: chunks[i].score, reverse=True)
        remaining = self.evidence_budget
        kept: set[int] = set()
        for i in order:
            cost = self.estimate_tokens(chunks[i].content)
            if cost > remaining:
                continue
            kept.add(i)
            remaining -= cost

        if len(kept) < len(chunks):
            logger.info(
                "[TokenBudget] 证据片段 %d 条超出预算 %d，保留 %d 条",
                len(chunks),
                self.evidence_budget,
                len(kept),
            )
        return [c for i, c in enumerate(chunks) if i in kept]
