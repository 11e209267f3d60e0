"""FastAPI 应用定义与组件初始化。

报告生成是长时间的流式 I/O（多次模型调用串行），
工作流全程运行在 asyncio 事件循环上，单进程即可承载多路并发运行。
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.dependencies import init_components, shutdown_components
from core.errors import Cancelled, ReportEngineError

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="QRM Report Engine",
    description="检索增强的多阶段质量风险评估报告生成引擎",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Cancelled)
async def _on_cancelled(request: Request, exc: Cancelled):
    logger.info("[API] %s 运行已取消: %s", request.url.path, exc.reason)
    return JSONResponse(status_code=504, content={"detail": exc.reason})


@app.exception_handler(ReportEngineError)
async def _on_engine_error(request: Request, exc: ReportEngineError):
    """工作流失败（模型输出非法、后端错误等）统一映射为 502。"""
    logger.warning("[API] %s 生成失败: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.on_event("startup")
async def startup():
    init_components()


@app.on_event("shutdown")
async def shutdown():
    await shutdown_components()


from api.routes import router  # noqa: E402

app.include_router(router)
