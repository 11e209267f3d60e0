"""混合检索器：向量相似度 + 关键词命中率 + 精确短语加权。

向量路径（已配置 embedding）:
    查询变体向量化 -> 高召回切分 -> 词法预筛 -> 候选向量化 -> 混合打分 -> 每类 top_k
关键词路径（未配置 embedding，或向量路径失败降级）:
    低成本切分 -> 关键词包含计数打分（最低 1）-> 每类 top_k

SOP 与文献两类独立取 top_k，排序稳定（同分保持插入顺序）。
"""

from __future__ import annotations

import logging
from typing import Callable

from config.settings import Settings
from core.abstractions import Retriever
from core.algorithms import (
    combine_retrieval_score,
    exact_phrase_boost,
    keyword_hit_rate,
    lexical_score,
    max_cosine_similarity,
)
from core.cancellation import CancellationToken
from core.errors import BackendHttpError, EmbeddingError
from ingestion.chunk_splitter import SentenceChunkSplitter, embedding_profile, lexical_profile
from ingestion.data_cleaner import TextNormalizer
from ingestion.embedder import EmbeddingClient
from models.schemas import Chunk, EvidenceChunk, SourceCategory, SourceText
from retrieval.query_builder import build_exact_phrases, build_query_variants, extract_keywords
from retrieval.reranker import LexicalPrefilter

logger = logging.getLogger(__name__)

CATEGORIES: tuple[SourceCategory, ...] = ("sop", "literature")

StageCallback = Callable[[str], None]


def _noop(_message: str) -> None:
    return None


class HybridRetriever(Retriever):
    def __init__(
        self,
        settings: Settings,
        embedding_client: EmbeddingClient | None = None,
        normalizer: TextNormalizer | None = None,
    ):
        self.settings = settings
        self.embedding_client = embedding_client
        self.normalizer = normalizer or TextNormalizer()
        self.lexical_splitter = SentenceChunkSplitter(lexical_profile(settings))
        self.embedding_splitter = SentenceChunkSplitter(embedding_profile(settings))
        self.prefilter = LexicalPrefilter(
            ceiling=settings.prefilter_ceiling,
            multiplier=settings.prefilter_multiplier,
            phrase_boost_step=settings.phrase_boost_step,
            phrase_boost_cap=settings.phrase_boost_cap,
        )

    @property
    def uses_embedding(self) -> bool:
        return self.embedding_client is not None

    async def retrieve(
        self,
        sources: list[SourceText],
        query: str,
        top_k: int,
        on_stage: StageCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> tuple[list[EvidenceChunk], bool]:
        """返回 (证据片段, 是否发生降级)。"""
        on_stage = on_stage or _noop

        if self.embedding_client is not None:
            try:
                return await self._retrieve_by_embedding(sources, query, top_k, on_stage, cancel), False
            except (EmbeddingError, BackendHttpError) as e:
                logger.warning("[Retriever] 向量检索失败，降级为关键词检索: %s", e)
                on_stage(f"向量检索失败，已降级为关键词检索：{e}")
                return self._retrieve_by_keywords(sources, query, top_k), True

        on_stage("关键词检索中...")
        return self._retrieve_by_keywords(sources, query, top_k), False

    # ---- 向量路径 ----

    async def _retrieve_by_embedding(
        self,
        sources: list[SourceText],
        query: str,
        top_k: int,
        on_stage: StageCallback,
        cancel: CancellationToken | None,
    ) -> list[EvidenceChunk]:
        on_stage("向量化中...")
        variants = build_query_variants(query)
        query_vectors = await self.embedding_client.embed(variants, cancel=cancel)
        if not query_vectors:
            return []
        dim = len(query_vectors[0])
        on_stage(f"查询向量数量：{len(query_vectors)}，向量维度：{dim}")
        on_stage("向量检索中...")

        tokens = extract_keywords(query, self.settings.max_keywords)
        phrases = build_exact_phrases(query)

        results: list[EvidenceChunk] = []
        for category in CATEGORIES:
            candidates = self._chunk_sources(sources, category, self.embedding_splitter)
            if not candidates:
                continue
            candidates = self.prefilter.filter(candidates, tokens, phrases, top_k)
            vectors = await self.embedding_client.embed(
                [c.content for c in candidates], cancel=cancel
            )
            if len(vectors) != len(candidates):
                raise EmbeddingError("Embedding 返回数量不匹配")
            if any(len(v) != dim for v in vectors):
                raise EmbeddingError("Embedding 返回维度与查询向量不一致，无法计算相似度")

            scored = []
            for chunk, vector in zip(candidates, vectors):
                score = combine_retrieval_score(
                    max_cosine_similarity(query_vectors, vector),
                    keyword_hit_rate(chunk.content, tokens),
                    exact_phrase_boost(
                        chunk.content,
                        phrases,
                        step=self.settings.phrase_boost_step,
                        cap=self.settings.phrase_boost_cap,
                    ),
                    embedding_weight=self.settings.embedding_weight,
                    keyword_weight=self.settings.keyword_weight,
                    score_cap=self.settings.score_cap,
                )
                scored.append(EvidenceChunk(**chunk.model_dump(), score=score))
            results.extend(self._top_k(scored, top_k))

        logger.info("[Retriever] 向量检索完成，证据片段 %d 条", len(results))
        return results

    # ---- 关键词路径 ----

    def _retrieve_by_keywords(
        self, sources: list[SourceText], query: str, top_k: int
    ) -> list[EvidenceChunk]:
        tokens = extract_keywords(query, self.settings.max_keywords)
        results: list[EvidenceChunk] = []
        for category in CATEGORIES:
            scored = [
                EvidenceChunk(**chunk.model_dump(), score=lexical_score(chunk.content, tokens))
                for chunk in self._chunk_sources(sources, category, self.lexical_splitter)
            ]
            results.extend(self._top_k(scored, top_k))
        logger.info("[Retriever] 关键词检索完成，证据片段 %d 条", len(results))
        return results

    # ---- 辅助方法 ----

    def _chunk_sources(
        self, sources: list[SourceText], category: SourceCategory, splitter: SentenceChunkSplitter
    ) -> list[Chunk]:
        chunks: list[Chunk] = []
        for source in sources:
            if source.category != category:
                continue
            text = self.normalizer.normalize(source.text)
            for content in splitter.split(text):
                chunks.append(Chunk(content=content, category=category, filename=source.filename))
        return chunks

    def _top_k(self, scored: list[EvidenceChunk], top_k: int) -> list[EvidenceChunk]:
        # sorted 是稳定排序，同分保持插入顺序
        return sorted(scored, key=lambda c: c.score, reverse=True)[: max(0, top_k)]
