"""Embedding 向量缓存。

键 = sha256(base_url|model|text)，多个后端/模型共存时互不污染。
只缓存非空向量；某一批请求失败时不写入任何条目。

两种实现：
1. InMemoryEmbeddingCache：进程内 LRU，threading.Lock 保护，并发报告共享
2. RedisEmbeddingCache：String 结构 emb:<sha>，JSON 编码，带 TTL，多进程共享；
   运行期 Redis 故障只记录警告，读取按未命中处理，写入直接跳过
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections import OrderedDict

import redis

from config.settings import Settings
from core.abstractions import EmbeddingCache

logger = logging.getLogger(__name__)


def make_cache_key(base_url: str, model: str, text: str) -> str:
    return hashlib.sha256(f"{base_url}|{model}|{text}".encode("utf-8")).hexdigest()


class InMemoryEmbeddingCache(EmbeddingCache):
    def __init__(self, max_entries: int = 20000):
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._data: OrderedDict[str, list[float]] = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def get_many(self, keys: list[str]) -> list[list[float] | None]:
        results: list[list[float] | None] = []
        with self._lock:
            for key in keys:
                vec = self._data.get(key)
                if vec is not None:
                    self._data.move_to_end(key)
                results.append(vec)
        return results

    def set_many(self, items: dict[str, list[float]]) -> None:
        with self._lock:
            for key, vec in items.items():
                if not vec:
                    continue
                self._data[key] = list(vec)
                self._data.move_to_end(key)
            while len(self._data) > self.max_entries:
                self._data.popitem(last=False)


class RedisEmbeddingCache(EmbeddingCache):
    def __init__(self, settings: Settings):
        self.settings = settings
        self.ttl = settings.embedding_cache_ttl_seconds
        self._redis: redis.Redis | None = None

    def connect(self) -> None:
        self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)
        self._redis.ping()
        logger.info("[Redis] 已连接: %s", self.settings.redis_url)

    @property
    def client(self) -> redis.Redis:
        if self._redis is None:
            self.connect()
        return self._redis

    def _key(self, key: str) -> str:
        return f"emb:{key}"

    def get_many(self, keys: list[str]) -> list[list[float] | None]:
        if not keys:
            return []
        try:
            raw_values = self.client.mget([self._key(k) for k in keys])
        except redis.RedisError as e:
            logger.warning("[Redis] 读取向量缓存失败，按未命中处理: %s", e)
            return [None] * len(keys)
        results: list[list[float] | None] = []
        for raw in raw_values:
            if not raw:
                results.append(None)
                continue
            vec = json.loads(raw)
            results.append(vec if vec else None)
        return results

    def set_many(self, items: dict[str, list[float]]) -> None:
        payload = {self._key(k): json.dumps(vec) for k, vec in items.items() if vec}
        count = len(payload)
        if not count:
            return
        try:
            pipe = self.client.pipeline()
            for key, value in payload.items():
                pipe.setex(key, self.ttl, value)
            pipe.execute()
        except redis.RedisError as e:
            logger.warning("[Redis] 写入向量缓存失败，跳过 %d 条: %s", count, e)
            return
        logger.debug("[Redis] 写入向量缓存 %d 条", count)


def build_embedding_cache(settings: Settings) -> EmbeddingCache:
    """按 embedding_cache_backend 选择实现。"""
    backend = settings.embedding_cache_backend.strip().lower()
    if backend == "redis":
        return RedisEmbeddingCache(settings)
    if backend != "memory":
        logger.warning("[Cache] 未知缓存后端 %s，使用内存缓存", backend)
    return InMemoryEmbeddingCache(max_entries=settings.embedding_cache_max_entries)
