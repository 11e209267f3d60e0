"""工作流事件：编排器向外暴露进度的唯一通道。"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from models.schemas import EvidenceChunk, GeneratedReport, RetrievalMeta, TokenUsage

StepStatus = Literal["running", "done", "error", "skipped"]


class StartEvent(BaseModel):
    type: Literal["start"] = "start"
    run_id: str


class StepEvent(BaseModel):
    type: Literal["step"] = "step"
    step: str
    status: StepStatus


class LlmDeltaEvent(BaseModel):
    type: Literal["llm_delta"] = "llm_delta"
    step: str
    delta: str
    draft: Any | None = None  # 部分 JSON 的实时预览


class DeltaEvent(BaseModel):
    """渲染阶段的 Markdown 增量。"""

    type: Literal["delta"] = "delta"
    delta: str


class UsageEvent(BaseModel):
    type: Literal["usage"] = "usage"
    usage: TokenUsage


class ContextStageEvent(BaseModel):
    type: Literal["context_stage"] = "context_stage"
    message: str


class ContextMetaEvent(BaseModel):
    type: Literal["context_meta"] = "context_meta"
    meta: RetrievalMeta


class ContextEvidenceEvent(BaseModel):
    type: Literal["context_evidence"] = "context_evidence"
    items: list[EvidenceChunk]


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    usage: TokenUsage
    report: GeneratedReport | None = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str
    step: str | None = None


class CancelledEvent(BaseModel):
    type: Literal["cancelled"] = "cancelled"
    reason: str


WorkflowEvent = Annotated[
    Union[
        StartEvent,
        StepEvent,
        LlmDeltaEvent,
        DeltaEvent,
        UsageEvent,
        ContextStageEvent,
        ContextMetaEvent,
        ContextEvidenceEvent,
        DoneEvent,
        ErrorEvent,
        CancelledEvent,
    ],
    Field(discriminator="type"),
]

TERMINAL_EVENT_TYPES = frozenset({"done", "error", "cancelled"})
