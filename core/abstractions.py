"""核心抽象基类：工作流依赖的可替换组件。"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable

from core.cancellation import CancellationToken
from models.schemas import EvidenceChunk, SourceText, TokenUsage

DeltaCallback = Callable[[str], None]


class ChunkSplitter(ABC):
    """将规范化文本切分为有界长度的片段。"""

    @abstractmethod
    def split(self, text: str) -> list[str]: ...


class EmbeddingCache(ABC):
    """向量缓存：键为 sha256(base_url|model|text)，只缓存非空向量。"""

    @abstractmethod
    def get_many(self, keys: list[str]) -> list[list[float] | None]: ...

    @abstractmethod
    def set_many(self, items: dict[str, list[float]]) -> None: ...


class Retriever(ABC):
    """按查询从来源文本中检索证据片段。"""

    @property
    def uses_embedding(self) -> bool:
        return False

    @abstractmethod
    async def retrieve(
        self,
        sources: list[SourceText],
        query: str,
        top_k: int,
        on_stage: Callable[[str], None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> tuple[list[EvidenceChunk], bool]: ...


class ModelClient(ABC):
    """OpenAI 兼容的对话模型客户端，全部调用返回 (结果, 用量)。"""

    @abstractmethod
    async def call_json(
        self, messages: list[dict], cancel: CancellationToken | None = None
    ) -> tuple[Any, TokenUsage | None]: ...

    @abstractmethod
    async def call_json_streaming(
        self,
        messages: list[dict],
        on_delta: DeltaCallback,
        cancel: CancellationToken | None = None,
    ) -> tuple[Any, TokenUsage | None]: ...

    @abstractmethod
    async def call_markdown_streaming(
        self,
        messages: list[dict],
        on_delta: DeltaCallback,
        cancel: CancellationToken | None = None,
    ) -> tuple[str, TokenUsage | None]: ...
