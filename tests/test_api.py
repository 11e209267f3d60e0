"""API 测试：通过 FastAPI TestClient 走完整的 HTTP 链路。

模型后端使用 Mock Provider，不依赖任何外部服务。
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import json

import pytest
from fastapi.testclient import TestClient

from data.sample_documents import SAMPLE_INPUTS, build_sample_input


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("QRM_LLM_PROVIDER", "mock")
    monkeypatch.setenv("QRM_EMBEDDING_API_KEY", "")
    monkeypatch.setenv("QRM_EMBEDDING_CACHE_BACKEND", "memory")
    from api.app import app

    with TestClient(app) as c:
        yield c


def _read_sse(response) -> list[tuple[str, dict]]:
    """把 SSE 响应解析为 (event, data) 列表。"""
    events = []
    name = None
    for line in response.iter_lines():
        if line.startswith("event: "):
            name = line[len("event: ") :]
        elif line.startswith("data: "):
            events.append((name, json.loads(line[len("data: ") :])))
    return events


class TestHealth:
    def test_health_check(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["embedding_cache"] == "InMemoryEmbeddingCache"
        assert data["stages"][0] == "context"


class TestReportStream:
    def test_stream_events(self, client):
        body = {"input": build_sample_input(SAMPLE_INPUTS[0])}
        with client.stream("POST", "/reports/stream", json=body) as response:
            assert response.status_code == 200
            assert response.headers["content-type"].startswith("text/event-stream")
            events = _read_sse(response)

        names = [name for name, _ in events]
        assert names[0] == "start"
        assert names[-1] == "done"
        assert all(name == data["type"] for name, data in events)
        assert "context_meta" in names
        assert "llm_delta" in names

        report = events[-1][1]["report"]
        assert report["markdown"].startswith("# 洁净区温湿度监控风险评估")
        assert report["json"]["scored_items"]
        assert report["json"]["context"]["retrieval_meta"]["sop_text_count"] == 2

    def test_stream_error_event(self, client):
        body = {"input": {"title": "t", "scope": "颗粒干燥", "risk_method": "流程图法"}}
        with client.stream("POST", "/reports/stream", json=body) as response:
            events = _read_sse(response)
        assert events[-1][0] == "error"
        assert events[-1][1]["step"] == "hazard_identification"
        assert not any(name == "done" for name, _ in events)


class TestCreateReport:
    def test_create_report(self, client):
        resp = client.post("/reports", json={"input": build_sample_input(SAMPLE_INPUTS[1])})
        assert resp.status_code == 200
        data = resp.json()
        assert data["usage"]["total_tokens"] > 0
        assert [i["dimension_id"] for i in data["json"]["risk_items"]] == ["S1", "S2", "S3", "S4", "S5"]
        assert len(data["json"]["actions"]) == 5

    def test_workflow_failure_maps_to_502(self, client):
        resp = client.post(
            "/reports", json={"input": {"scope": "颗粒干燥", "risk_method": "流程图法"}}
        )
        assert resp.status_code == 502
        assert "流程步骤" in resp.json()["detail"]

    def test_validation(self, client):
        """多余字段直接拒绝，返回 422。"""
        resp = client.post("/reports", json={"input": {"scope": "x", "unknown": 1}})
        assert resp.status_code == 422

    def test_invalid_source_category(self, client):
        source = {"text": "正文", "filename": "a.txt", "category": "manual"}
        resp = client.post("/reports", json={"input": {"sop_sources": [source]}})
        assert resp.status_code == 422
