"""Embedding 客户端：调用 OpenAI 兼容 /embeddings 接口，带缓存与分批。

- 缓存命中与未命中可在一次调用内交错：未命中项按 batch_size 分批顺序请求，
  再按原始位置回填
- 返回条数不符、向量为空、维度不一致（批内或跨批）一律抛 EmbeddingError，不做静默重试
- 某批失败时该批不写缓存，已写入的其他键不受影响
"""

from __future__ import annotations

import logging

import httpx

from cache.embedding_cache import make_cache_key
from core.abstractions import EmbeddingCache
from core.cancellation import CancellationToken
from core.errors import BackendHttpError, EmbeddingError
from models.schemas import ModelConfig

logger = logging.getLogger(__name__)


class EmbeddingClient:
    def __init__(
        self,
        config: ModelConfig,
        cache: EmbeddingCache,
        http_client: httpx.AsyncClient,
        batch_size: int = 10,
    ):
        self.config = config
        self.cache = cache
        self.http_client = http_client
        self.batch_size = max(1, batch_size)

    async def embed(
        self, inputs: list[str], cancel: CancellationToken | None = None
    ) -> list[list[float]]:
        """返回与 inputs 同序同长的向量列表。"""
        if not inputs:
            return []

        keys = [make_cache_key(self.config.base_url, self.config.model, text) for text in inputs]
        results: list[list[float] | None] = list(self.cache.get_many(keys))

        missing = [i for i, vec in enumerate(results) if not vec]
        logger.debug(
            "[Embedding] 共 %d 条，缓存命中 %d 条", len(inputs), len(inputs) - len(missing)
        )

        expected_dim = next((len(vec) for vec in results if vec), None)

        for start in range(0, len(missing), self.batch_size):
            indices = missing[start : start + self.batch_size]
            batch = [inputs[i] for i in indices]
            if cancel is not None:
                vectors = await cancel.run(self._request(batch))
            else:
                vectors = await self._request(batch)

            for vec in vectors:
                if expected_dim is None:
                    expected_dim = len(vec)
                elif len(vec) != expected_dim:
                    raise EmbeddingError("Embedding 返回维度不一致，无法计算相似度")

            for i, vec in zip(indices, vectors):
                results[i] = vec
            self.cache.set_many({keys[i]: vec for i, vec in zip(indices, vectors)})

        return [vec for vec in results if vec is not None]

    async def _request(self, batch: list[str]) -> list[list[float]]:
        url = f"{self.config.base_url}/embeddings"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }
        try:
            response = await self.http_client.post(
                url, json={"model": self.config.model, "input": batch}, headers=headers
            )
        except httpx.HTTPError as e:
            raise BackendHttpError(0, f"Embedding 请求异常: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise BackendHttpError(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as e:
            raise EmbeddingError("Embedding 返回不是合法 JSON") from e

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list) or len(data) != len(batch):
            raise EmbeddingError("Embedding 返回缺失")

        # OpenAI 返回带 index 字段，按其排序；缺失时保持返回顺序
        if all(isinstance(item, dict) and isinstance(item.get("index"), int) for item in data):
            data = sorted(data, key=lambda item: item["index"])

        vectors: list[list[float]] = []
        for item in data:
            vec = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(vec, list) or not vec:
                raise EmbeddingError(
                    "Embedding 返回向量为空或格式不兼容，请检查 base_url 是否为 OpenAI 兼容 /v1 接口"
                )
            vectors.append([float(x) for x in vec])

        dim = len(vectors[0])
        if any(len(v) != dim for v in vectors):
            raise EmbeddingError("Embedding 返回维度不一致，无法计算相似度")
        return vectors
