"""检索查询构造与词法预筛测试。"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from models.schemas import Chunk
from retrieval.query_builder import (
    build_exact_phrases,
    build_query_variants,
    extract_keywords,
    normalize_query,
)
from retrieval.reranker import LexicalPrefilter

QUERY = "固体制剂车间洁净区温湿度监控 EMS 系统上线两年。评估现有报警处置是否满足 GMP 要求"


class TestVariants:
    def test_empty(self):
        assert build_query_variants("   ") == []

    def test_first_variant_is_whole_query(self):
        variants = build_query_variants(QUERY)
        assert variants[0] == normalize_query(QUERY)

    def test_bounded_and_unique(self):
        variants = build_query_variants(QUERY)
        assert 1 <= len(variants) <= 6
        assert len(set(variants)) == len(variants)

    def test_latin_variant(self):
        variants = build_query_variants(QUERY)
        assert "EMS GMP" in variants


class TestKeywords:
    def test_latin_lowercased(self):
        keywords = extract_keywords("EMS 与 GMP")
        assert "ems" in keywords
        assert "gmp" in keywords

    def test_short_han_run_kept_whole(self):
        assert extract_keywords("温湿度") == ["温湿度"]

    def test_stop_words_removed(self):
        assert extract_keywords("进行 相关 the data") == ["data"]

    def test_long_han_run_segmented(self):
        text = "洁净区温湿度监控管理规程"
        keywords = extract_keywords(text)
        assert keywords
        for keyword in keywords:
            assert len(keyword) >= 2
            assert keyword in text

    def test_max_keywords(self):
        text = " ".join(f"token{i}" for i in range(50))
        assert len(extract_keywords(text, max_keywords=10)) == 10

    def test_deduplicated(self):
        assert extract_keywords("EMS ems Ems") == ["ems"]


class TestPhrases:
    def test_long_han_phrase(self):
        phrases = build_exact_phrases("洁净区温湿度监控与报警处置")
        assert "洁净区温湿度监控与报警处置" in phrases

    def test_short_query(self):
        assert build_exact_phrases("温度") == []

    def test_all_phrases_long_enough(self):
        for phrase in build_exact_phrases(QUERY):
            assert len(phrase) >= 10


class TestPrefilter:
    def _chunks(self, n: int) -> list[Chunk]:
        return [Chunk(content=f"普通段落 {i}", category="sop") for i in range(n)]

    def test_under_ceiling_unchanged(self):
        chunks = self._chunks(5)
        prefilter = LexicalPrefilter(ceiling=10, multiplier=2)
        assert prefilter.filter(chunks, ["温湿度"], [], top_k=2) == chunks

    def test_keeps_best_in_original_order(self):
        chunks = self._chunks(20)
        chunks[3] = Chunk(content="温湿度报警", category="sop")
        chunks[15] = Chunk(content="温湿度", category="sop")
        prefilter = LexicalPrefilter(ceiling=10, multiplier=1)
        kept = prefilter.filter(chunks, ["温湿度", "报警"], [], top_k=2)
        assert [c.content for c in kept] == ["温湿度报警", "温湿度"]
