"""句子感知切分器：按中英文句末标点切句，再贪心装箱为有界长度的片段。

两套配置并存：
- 关键词检索：800 字 / 无重叠 / 最多 48 段（便宜）
- 向量检索：800 字 / 200 字重叠 / 最多 240 段（高召回）
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from config.settings import Settings
from core.abstractions import ChunkSplitter

# 中文句末标点、半角 ;!? 之后切开；半角句点仅在其后是空白时视为句末（避免切断 12.7、v1.2）
_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[。！？；;!?])|(?<=\.)(?=\s)")
_LINE_BREAKS_RE = re.compile(r"\r\n?|\n+")


@dataclass(frozen=True)
class ChunkProfile:
    max_len: int
    overlap: int
    max_chunks: int


def lexical_profile(settings: Settings) -> ChunkProfile:
    return ChunkProfile(
        max_len=settings.lexical_chunk_max_len,
        overlap=settings.lexical_chunk_overlap,
        max_chunks=settings.lexical_chunk_max_chunks,
    )


def embedding_profile(settings: Settings) -> ChunkProfile:
    return ChunkProfile(
        max_len=settings.embedding_chunk_max_len,
        overlap=settings.embedding_chunk_overlap,
        max_chunks=settings.embedding_chunk_max_chunks,
    )


def split_units(text: str) -> list[str]:
    """换行合并为空格后按句切分；没有任何句末标点时整段作为一个单元。"""
    lines = [line.strip() for line in _LINE_BREAKS_RE.split(text)]
    base = " ".join(line for line in lines if line)
    if not base:
        return []
    units = [u.strip() for u in _SENTENCE_BOUNDARY_RE.split(base)]
    units = [u for u in units if u]
    return units or [base]


def chunk_text(text: str, max_len: int = 800, overlap: int = 0, max_chunks: int = 48) -> list[str]:
    """贪心装箱。

    - ``len(buffer) + len(unit) + 1 <= max_len`` 时追加（单元之间以空格连接）
    - 溢出时落盘，并以上一段末尾 ``overlap`` 个字符作为下一段的开头
    - 超长单元按 ``max(1, max_len - overlap)`` 步长硬切为重叠窗口
    - 达到 ``max_chunks`` 立即停止（截断是预期行为）
    """
    if max_len <= 0 or max_chunks <= 0:
        return []
    overlap = max(0, min(overlap, max_len - 1))

    chunks: list[str] = []
    buffer = ""

    for unit in split_units(text):
        if len(unit) > max_len:
            if buffer:
                chunks.append(buffer[:max_len])
                if len(chunks) >= max_chunks:
                    return chunks
                buffer = ""
            step = max(1, max_len - overlap)
            for start in range(0, len(unit), step):
                chunks.append(unit[start : start + max_len])
                if len(chunks) >= max_chunks:
                    return chunks
                if start + max_len >= len(unit):
                    break
            continue

        if not buffer:
            buffer = unit
            continue

        if len(buffer) + len(unit) + 1 <= max_len:
            buffer = f"{buffer} {unit}"
            continue

        chunks.append(buffer[:max_len])
        if len(chunks) >= max_chunks:
            return chunks

        # 重叠：上一段尾部 + 新单元
        tail = buffer[len(buffer) - overlap :].strip() if overlap > 0 else ""
        buffer = f"{tail} {unit}" if tail else unit
        if len(buffer) > max_len:
            buffer = buffer[len(buffer) - max_len :]

    if buffer and len(chunks) < max_chunks:
        chunks.append(buffer[:max_len])
    return chunks


class SentenceChunkSplitter(ChunkSplitter):
    def __init__(self, profile: ChunkProfile):
        self.profile = profile

    def split(self, text: str) -> list[str]:
        return chunk_text(
            text,
            max_len=self.profile.max_len,
            overlap=self.profile.overlap,
            max_chunks=self.profile.max_chunks,
        )
