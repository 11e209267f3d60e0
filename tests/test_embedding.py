"""Embedding 缓存与客户端测试（httpx.MockTransport 模拟后端）。"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio
import json

import httpx
import pytest

from cache.embedding_cache import InMemoryEmbeddingCache, RedisEmbeddingCache, make_cache_key
from config.settings import Settings
from core.cancellation import CancellationToken
from core.errors import BackendHttpError, Cancelled, EmbeddingError
from ingestion.embedder import EmbeddingClient
from models.schemas import ModelConfig

CONFIG = ModelConfig(base_url="https://emb.example.com/v1/", api_key="k", model="emb-1")


def _vector(text: str, dim: int = 3) -> list[float]:
    return [float(len(text))] + [1.0] * (dim - 1)


def _handler(calls: list, dims=None):
    """按输入文本返回向量；dims(text) 可定制每条向量的维度。"""

    def handle(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append(body["input"])
        data = [
            {"index": i, "embedding": _vector(text, dims(text) if dims else 3)}
            for i, text in enumerate(body["input"])
        ]
        return httpx.Response(200, json={"data": data})

    return handle


def _client(handler, cache=None, batch_size=10) -> EmbeddingClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    if cache is None:
        cache = InMemoryEmbeddingCache()
    return EmbeddingClient(CONFIG, cache, http, batch_size=batch_size)


class TestCache:
    def test_key_depends_on_backend_and_model(self):
        a = make_cache_key("https://a/v1", "m1", "文本")
        assert a == make_cache_key("https://a/v1", "m1", "文本")
        assert a != make_cache_key("https://a/v1", "m2", "文本")
        assert a != make_cache_key("https://b/v1", "m1", "文本")

    def test_lru_eviction(self):
        cache = InMemoryEmbeddingCache(max_entries=2)
        cache.set_many({"a": [1.0], "b": [2.0]})
        cache.get_many(["a"])
        cache.set_many({"c": [3.0]})
        assert cache.get_many(["a", "b", "c"]) == [[1.0], None, [3.0]]
        assert len(cache) == 2

    def test_empty_vectors_not_cached(self):
        cache = InMemoryEmbeddingCache()
        cache.set_many({"a": []})
        assert cache.get_many(["a"]) == [None]


UNREACHABLE_REDIS = Settings(redis_url="redis://127.0.0.1:1/0", embedding_cache_backend="redis")


class TestRedisUnavailable:
    """Redis 运行期不可用：读取按未命中处理，写入跳过，不影响向量化。"""

    def test_reads_are_misses(self):
        cache = RedisEmbeddingCache(UNREACHABLE_REDIS)
        assert cache.get_many(["a", "b"]) == [None, None]

    def test_writes_skipped(self):
        RedisEmbeddingCache(UNREACHABLE_REDIS).set_many({"a": [1.0, 2.0]})

    def test_embedding_still_served(self):
        calls = []
        client = _client(_handler(calls), cache=RedisEmbeddingCache(UNREACHABLE_REDIS))
        vectors = asyncio.run(client.embed(["甲", "乙乙"]))
        assert vectors == [_vector("甲"), _vector("乙乙")]
        assert calls == [["甲", "乙乙"]]


class TestEmbeddingClient:
    def test_order_and_batching(self):
        calls = []
        client = _client(_handler(calls), batch_size=2)
        inputs = ["a", "bb", "ccc", "dddd", "eeeee"]
        vectors = asyncio.run(client.embed(inputs))
        assert [v[0] for v in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]
        assert calls == [["a", "bb"], ["ccc", "dddd"], ["eeeee"]]

    def test_cache_hits_skip_requests(self):
        calls = []
        cache = InMemoryEmbeddingCache()
        cache.set_many({make_cache_key(CONFIG.base_url, CONFIG.model, "bb"): [9.0, 9.0, 9.0]})
        client = _client(_handler(calls), cache=cache)
        vectors = asyncio.run(client.embed(["a", "bb", "ccc"]))
        assert calls == [["a", "ccc"]]
        assert vectors[1] == [9.0, 9.0, 9.0]
        assert len(cache) == 3

    def test_sorted_by_index(self):
        def handle(request):
            return httpx.Response(
                200,
                json={"data": [{"index": 1, "embedding": [2.0, 0.0]}, {"index": 0, "embedding": [1.0, 0.0]}]},
            )

        vectors = asyncio.run(_client(handle).embed(["x", "y"]))
        assert vectors == [[1.0, 0.0], [2.0, 0.0]]

    def test_count_mismatch(self):
        def handle(request):
            return httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})

        with pytest.raises(EmbeddingError, match="缺失"):
            asyncio.run(_client(handle).embed(["x", "y"]))

    def test_empty_vector(self):
        def handle(request):
            return httpx.Response(200, json={"data": [{"index": 0, "embedding": []}]})

        with pytest.raises(EmbeddingError):
            asyncio.run(_client(handle).embed(["x"]))

    def test_mixed_dimensions_in_batch(self):
        calls = []
        client = _client(_handler(calls, dims=lambda t: 3 if len(t) == 1 else 4))
        with pytest.raises(EmbeddingError, match="维度不一致"):
            asyncio.run(client.embed(["a", "bb"]))

    def test_mixed_dimensions_across_batches_keeps_first_batch(self):
        calls = []
        cache = InMemoryEmbeddingCache()
        client = _client(
            _handler(calls, dims=lambda t: 3 if len(t) <= 2 else 4), cache=cache, batch_size=2
        )
        with pytest.raises(EmbeddingError, match="维度不一致"):
            asyncio.run(client.embed(["a", "bb", "ccc"]))
        keys = [make_cache_key(CONFIG.base_url, CONFIG.model, t) for t in ("a", "bb", "ccc")]
        cached = cache.get_many(keys)
        assert cached[0] is not None and cached[1] is not None
        assert cached[2] is None

    def test_http_error_status(self):
        def handle(request):
            return httpx.Response(401, text="bad key")

        with pytest.raises(BackendHttpError) as exc_info:
            asyncio.run(_client(handle).embed(["x"]))
        assert exc_info.value.status == 401

    def test_network_error(self):
        def handle(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(BackendHttpError) as exc_info:
            asyncio.run(_client(handle).embed(["x"]))
        assert exc_info.value.status == 0

    def test_cancelled_before_request(self):
        calls = []
        token = CancellationToken()
        token.cancel("停止")
        with pytest.raises(Cancelled):
            asyncio.run(_client(_handler(calls)).embed(["x"], cancel=token))
        assert calls == []

    def test_empty_input(self):
        assert asyncio.run(_client(_handler([])).embed([])) == []


class TestInFlightCancel:
    def test_cancel_aborts_pending_request(self):
        started = []

        async def handle(request):
            started.append(request)
            await asyncio.sleep(3600)
            return httpx.Response(200, json={"data": []})

        token = CancellationToken()
        cache = InMemoryEmbeddingCache()

        async def run():
            asyncio.get_running_loop().call_later(0.05, token.cancel, "停止")
            return await asyncio.wait_for(_client(handle, cache=cache).embed(["x"], cancel=token), timeout=5)

        with pytest.raises(Cancelled, match="停止"):
            asyncio.run(run())
        assert len(started) == 1
        assert len(cache) == 0
