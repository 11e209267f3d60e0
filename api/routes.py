"""API 路由：报告流式生成、一次性生成、健康检查。

流式接口按 SSE 帧输出工作流事件：
    event: <type>
    data: <json>
客户端断开后取消令牌被触发，进行中的模型请求随之中断。
"""

from __future__ import annotations

import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from api.dependencies import Components, get_components
from core.cancellation import CancellationToken
from models.events import WorkflowEvent
from models.schemas import GeneratedReport, ReportRequest
from workflow.orchestrator import STAGES, ReportWorkflow

logger = logging.getLogger(__name__)

router = APIRouter()


def format_sse(event: WorkflowEvent) -> str:
    return f"event: {event.type}\ndata: {event.model_dump_json(by_alias=True)}\n\n"


@router.get("/health")
async def health_check(comp: Components = Depends(get_components)):
    """健康检查。"""
    return {
        "status": "ok",
        "embedding_cache": type(comp.embedding_cache).__name__,
        "stages": list(STAGES),
    }


@router.post("/reports/stream")
async def report_stream(
    body: ReportRequest, request: Request, comp: Components = Depends(get_components)
):
    """SSE 流式生成报告。"""
    workflow = comp.workflow_for(body.models)
    cancel = CancellationToken()

    async def sse_generator() -> AsyncIterator[str]:
        events = workflow.stream(body.input, cancel)
        try:
            async for event in events:
                if await request.is_disconnected():
                    logger.info("[API] 客户端已断开，取消运行")
                    cancel.cancel("客户端断开")
                yield format_sse(event)
        finally:
            await events.aclose()

    return StreamingResponse(
        sse_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/reports", response_model=GeneratedReport)
async def create_report(body: ReportRequest, comp: Components = Depends(get_components)):
    """一次性生成报告（返回完整 JSON）；失败由 app 层的异常处理器映射状态码。"""
    workflow: ReportWorkflow = comp.workflow_for(body.models)
    return await workflow.generate(body.input)
