"""工作流编排测试：阶段顺序、跳过、降级、失败与取消。

模型后端使用 MockModelClient（按 Prompt 任务类型拼装结构化输出），
需要特定评分或异常时在测试内派生子类。
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio
import json
from datetime import date

import httpx
import pytest

from cache.embedding_cache import InMemoryEmbeddingCache
from config.settings import Settings
from core.cancellation import CancellationToken
from core.errors import Cancelled, ReportEngineError
from data.sample_documents import SAMPLE_INPUTS, build_sample_input
from generation.mock_client import MockModelClient
from ingestion.embedder import EmbeddingClient
from models.events import CancelledEvent, StartEvent
from models.schemas import ModelConfig, ReportInput
from retrieval.hybrid_retriever import HybridRetriever
from workflow.events import EventChannel
from workflow.orchestrator import STAGES, ReportWorkflow

TODAY = date(2026, 3, 1)


class RecordingClient(MockModelClient):
    """记录每次模型调用的任务首行。"""

    def __init__(self):
        super().__init__()
        self.tasks: list[str] = []

    def _record(self, messages):
        self.tasks.append(messages[-1]["content"].split("\n", 1)[0])

    async def call_json_streaming(self, messages, on_delta, cancel=None):
        self._record(messages)
        return await super().call_json_streaming(messages, on_delta, cancel)

    async def call_markdown_streaming(self, messages, on_delta, cancel=None):
        self._record(messages)
        return await super().call_markdown_streaming(messages, on_delta, cancel)


class LowRiskClient(RecordingClient):
    """所有风险项评分 (3, 3, 1)，RPN=9。"""

    def _fmea(self, prompt):
        data = super()._fmea(prompt)
        for row in data["rows"]:
            row.update(s=3, p=3, d=1)
        return data


class HighRiskClient(RecordingClient):
    def _fmea(self, prompt):
        data = super()._fmea(prompt)
        for row in data["rows"]:
            row.update(s=9, p=9, d=9)
        return data


class CancellingClient(RecordingClient):
    """评分阶段开始时触发取消，模拟客户端中途断开。"""

    async def call_json_streaming(self, messages, on_delta, cancel=None):
        if "FMEA" in messages[-1]["content"].split("\n", 1)[0]:
            cancel.cancel("用户取消")
        return await super().call_json_streaming(messages, on_delta, cancel)


class GarbageClient(RecordingClient):
    def _json_text(self, messages):
        return "抱歉，我无法完成该任务"


def _settings(**overrides) -> Settings:
    return Settings(lexical_chunk_max_len=200, **overrides)


def _workflow(client, settings=None, retriever=None) -> ReportWorkflow:
    settings = settings or _settings()
    return ReportWorkflow(
        settings, client, retriever or HybridRetriever(settings), today=lambda: TODAY
    )


def _collect(workflow, report_input, cancel=None) -> list:
    async def run():
        return [event async for event in workflow.stream(report_input, cancel)]

    return asyncio.run(run())


def _steps(events) -> list[tuple[str, str]]:
    return [(e.step, e.status) for e in events if e.type == "step"]


def _stage_messages(events) -> list[str]:
    return [e.message for e in events if e.type == "context_stage"]


CLEAN_ROOM = ReportInput(
    title="洁净区温湿度监控风险评估",
    scope="洁净区温湿度监控",
    objective="评估现有监控措施是否满足 GMP 要求",
)


class TestLowRiskScenario:
    """无来源文件、全部 RPN < 54：跳过措施生成与控制计划，直接渲染。"""

    def test_event_sequence(self):
        client = LowRiskClient()
        events = _collect(_workflow(client), CLEAN_ROOM)

        assert events[0].type == "start"
        assert events[-1].type == "done"
        assert _steps(events) == [
            ("context", "running"),
            ("context", "done"),
            ("hazard_identification", "running"),
            ("hazard_identification", "done"),
            ("mapping_validation", "running"),
            ("mapping_validation", "done"),
            ("fmea_scoring", "running"),
            ("fmea_scoring", "done"),
            ("action_generation", "skipped"),
            ("control_plan", "skipped"),
            ("rendering", "running"),
            ("rendering", "done"),
        ]
        assert len(client.tasks) == 3
        assert not any(e.type in ("error", "cancelled") for e in events)

    def test_context_events(self):
        events = _collect(_workflow(LowRiskClient()), CLEAN_ROOM)
        messages = _stage_messages(events)
        assert messages[0].startswith("检索查询：洁净区温湿度监控")
        assert "关键词检索中..." in messages
        assert "召回片段预览：无" in messages
        assert any("跳过措施生成与控制计划" in m for m in messages)
        meta = [e for e in events if e.type == "context_meta"][0].meta
        assert meta.evidence_chunk_count == 0
        assert not meta.degraded

    def test_report_and_usage(self):
        events = _collect(_workflow(LowRiskClient()), CLEAN_ROOM)
        done = events[-1]
        report = done.report
        assert report.report_json.control_measures == []
        assert report.report_json.actions == []
        assert all(item.rpn == 9 and not item.need_actions for item in report.report_json.scored_items)
        assert report.report_json.mapping_validation.ok

        deltas = "".join(e.delta for e in events if e.type == "delta")
        assert deltas == report.markdown
        assert report.markdown.startswith("# 洁净区温湿度监控风险评估")

        usage_events = [e for e in events if e.type == "usage"]
        assert len(usage_events) == 5
        assert usage_events[-1].usage == done.usage
        assert done.usage.total_tokens > 0

    def test_llm_deltas_reconstruct_stage_output(self):
        events = _collect(_workflow(LowRiskClient(), _settings(draft_interval_chars=50)), CLEAN_ROOM)
        hazard = [e for e in events if e.type == "llm_delta" and e.step == "hazard_identification"]
        text = "".join(e.delta for e in hazard)
        assert len(json.loads(text)["items"]) == 5
        drafts = [e.draft for e in hazard if e.draft is not None]
        assert drafts
        assert "items" in drafts[-1]


class TestActionScenario:
    def test_actions_generated_for_medium_and_high(self):
        client = RecordingClient()
        report_input = ReportInput.model_validate(build_sample_input(SAMPLE_INPUTS[0]))
        events = _collect(_workflow(client), report_input)
        assert events[-1].type == "done"
        report = events[-1].report.report_json

        needed = [item.risk_id for item in report.scored_items if item.need_actions]
        assert needed
        assert [m.risk_id for m in report.control_measures] == needed
        assert [a.risk_id for a in report.actions] == needed
        for entry in report.actions:
            for action in entry.actions:
                assert action.planned_date == "2026-03-31"
        assert len(client.tasks) == 5
        assert ("action_generation", "done") in _steps(events)
        assert report.context.retrieval_meta.evidence_chunk_count > 0

    def test_process_flow_with_force_all(self):
        report_input = ReportInput.model_validate(build_sample_input(SAMPLE_INPUTS[1]))
        events = _collect(_workflow(RecordingClient()), report_input)
        assert events[-1].type == "done"
        report = events[-1].report.report_json
        assert [i.dimension_id for i in report.risk_items] == ["S1", "S2", "S3", "S4", "S5"]
        assert all(item.need_actions for item in report.scored_items)
        assert len(report.actions) == 5
        assert any("要求采取措施" in m for m in _stage_messages(events))

    def test_objective_forces_no_actions(self):
        client = HighRiskClient()
        report_input = CLEAN_ROOM.model_copy(update={"objective": "确认风险可控，无需采取措施"})
        events = _collect(_workflow(client), report_input)
        report = events[-1].report.report_json
        assert all(item.level == "高" and not item.need_actions for item in report.scored_items)
        assert ("action_generation", "skipped") in _steps(events)
        assert len(client.tasks) == 3


class TestDeterministicRendering:
    def test_renderer_without_model_call(self):
        client = RecordingClient()
        report_input = ReportInput.model_validate(build_sample_input(SAMPLE_INPUTS[0]))
        events = _collect(_workflow(client, _settings(render_with_model=False)), report_input)
        markdown = events[-1].report.markdown
        deltas = [e for e in events if e.type == "delta"]
        assert len(deltas) == 1
        assert deltas[0].delta == markdown
        assert len(client.tasks) == 4
        for heading in ("## 1. 概述", "### 4.3 风险评价（FMEA 表）", "## 5. 控制措施", "## 8. 参考文件"):
            assert heading in markdown
        assert "SOP-QA-021 洁净区温湿度监控管理规程.txt" in markdown
        assert "2026-03-31" in markdown


class TestEmbeddingFallback:
    """向量维度不一致 -> 降级关键词检索 -> 工作流照常完成。"""

    def test_mixed_dimensions(self):
        def handle(request):
            texts = json.loads(request.content)["input"]
            data = [{"index": i, "embedding": [1.0] * (2 + i % 2)} for i in range(len(texts))]
            return httpx.Response(200, json={"data": data})

        settings = _settings()
        embedder = EmbeddingClient(
            ModelConfig(base_url="https://emb.example.com/v1", api_key="k", model="emb"),
            InMemoryEmbeddingCache(),
            httpx.AsyncClient(transport=httpx.MockTransport(handle)),
        )
        retriever = HybridRetriever(settings, embedding_client=embedder)
        report_input = ReportInput.model_validate(build_sample_input(SAMPLE_INPUTS[0]))
        events = _collect(_workflow(LowRiskClient(), settings, retriever), report_input)

        assert any(m.startswith("向量检索失败，已降级为关键词检索") for m in _stage_messages(events))
        meta = [e for e in events if e.type == "context_meta"][0].meta
        assert meta.degraded
        assert not meta.used_embedding
        assert meta.evidence_chunk_count > 0
        assert events[-1].type == "done"


class TestFailures:
    def test_process_flow_without_steps(self):
        report_input = CLEAN_ROOM.model_copy(update={"risk_method": "流程图法"})
        events = _collect(_workflow(RecordingClient()), report_input)
        assert events[-2].type == "step"
        assert (events[-2].step, events[-2].status) == ("hazard_identification", "error")
        assert events[-1].type == "error"
        assert events[-1].step == "hazard_identification"
        assert "流程步骤" in events[-1].message
        assert not any(e.type == "done" for e in events)

    def test_invalid_model_output(self):
        events = _collect(_workflow(GarbageClient()), CLEAN_ROOM)
        errors = [e for e in events if e.type == "error"]
        assert len(errors) == 1
        assert errors[0].step == "hazard_identification"
        assert "JSON" in errors[0].message

    def test_generate_raises(self):
        with pytest.raises(ReportEngineError):
            asyncio.run(_workflow(GarbageClient()).generate(CLEAN_ROOM))


class TestCancellation:
    def test_cancel_mid_run(self):
        client = CancellingClient()
        events = _collect(_workflow(client), CLEAN_ROOM)
        terminal = [e for e in events if e.type in ("done", "error", "cancelled")]
        assert len(terminal) == 1
        assert terminal[0].type == "cancelled"
        assert terminal[0].reason == "用户取消"
        assert ("fmea_scoring", "done") not in _steps(events)

    def test_pre_cancelled_token(self):
        token = CancellationToken()
        token.cancel("已取消")
        client = RecordingClient()
        events = _collect(_workflow(client), CLEAN_ROOM, token)
        assert [e.type for e in events] == ["start", "cancelled"]
        assert client.tasks == []

    def test_consumer_exit_cancels_run(self):
        token = CancellationToken()
        workflow = _workflow(RecordingClient())

        async def run():
            events = workflow.stream(CLEAN_ROOM, token)
            await events.__anext__()
            await events.__anext__()
            await events.aclose()

        asyncio.run(run())
        assert token.is_cancelled()
        assert token.reason == "客户端断开"

    def test_run_timeout(self):
        class SlowClient(RecordingClient):
            async def call_json_streaming(self, messages, on_delta, cancel=None):
                await cancel.run(asyncio.sleep(5))
                return await super().call_json_streaming(messages, on_delta, cancel)

        events = _collect(_workflow(SlowClient(), _settings(run_timeout_seconds=0.05)), CLEAN_ROOM)
        assert events[-1].type == "cancelled"
        assert events[-1].reason == "运行超时"

    def test_generate_raises_cancelled(self):
        with pytest.raises(Cancelled):
            asyncio.run(_workflow(CancellingClient()).generate(CLEAN_ROOM))


def test_stage_names():
    assert STAGES[0] == "context"
    assert STAGES[-1] == "rendering"


class TestEventChannel:
    def test_emit_after_close_ignored(self):
        async def run():
            channel = EventChannel()
            channel.emit(StartEvent(run_id="r1"))
            channel.close()
            channel.emit(CancelledEvent(reason="迟到的事件"))
            return channel.closed, [event async for event in channel]

        closed, events = asyncio.run(run())
        assert closed
        assert [e.type for e in events] == ["start"]
