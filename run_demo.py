"""QRM 报告生成引擎一键演示脚本。

流程：
1. 初始化共享组件（HTTP 连接池、embedding 缓存；未配置 API Key 时使用 Mock 模型）
2. 用内置示例 SOP/文献运行报告生成工作流，打印事件流
3. 启动 FastAPI 服务（http://localhost:8000/docs）
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys

import uvicorn

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("demo")


async def run_demo_reports():
    """对内置场景运行完整工作流。"""
    from api.dependencies import get_components, shutdown_components
    from data.sample_documents import SAMPLE_INPUTS, build_sample_input
    from models.schemas import ReportInput

    comp = get_components()
    try:
        for i, sample in enumerate(SAMPLE_INPUTS):
            logger.info("=" * 60)
            logger.info("场景 %d: %s（%s）", i + 1, sample["title"], sample["description"])
            logger.info("=" * 60)

            workflow = comp.workflow_for(None)
            report_input = ReportInput.model_validate(build_sample_input(sample))
            markdown_chars = 0
            async for event in workflow.stream(report_input):
                if event.type == "step":
                    logger.info("[Step] %s -> %s", event.step, event.status)
                elif event.type == "context_stage":
                    logger.info("[Context] %s", event.message[:120])
                elif event.type == "context_meta":
                    logger.info("[Context] 检索元数据: %s", event.meta.model_dump())
                elif event.type == "delta":
                    markdown_chars += len(event.delta)
                elif event.type == "error":
                    logger.error("[Error] %s（阶段 %s）", event.message, event.step)
                elif event.type == "cancelled":
                    logger.warning("[Cancelled] %s", event.reason)
                elif event.type == "done":
                    report = event.report
                    logger.info(
                        "[Done] 风险项 %d 条，需措施 %d 条，报告 %d 字，tokens=%d",
                        len(report.report_json.scored_items),
                        sum(1 for item in report.report_json.scored_items if item.need_actions),
                        markdown_chars,
                        event.usage.total_tokens,
                    )
    finally:
        # 连接池绑定在本事件循环上，服务启动时会重新初始化组件
        await shutdown_components()

    logger.info("=" * 60)
    logger.info("演示完毕!")
    logger.info("=" * 60)


def main():
    # 切换到项目目录以便模块导入
    os.chdir(os.path.dirname(os.path.abspath(__file__)))
    if os.getcwd() not in sys.path:
        sys.path.insert(0, os.getcwd())

    if not os.environ.get("QRM_LLM_API_KEY"):
        os.environ.setdefault("QRM_LLM_PROVIDER", "mock")

    # 1. 初始化组件
    from api.dependencies import init_components

    logger.info("初始化组件...")
    init_components()

    # 2. 运行演示报告
    asyncio.run(run_demo_reports())

    # 3. 启动 FastAPI 服务
    logger.info("启动 FastAPI 服务: http://localhost:8000/docs")

    from api.app import app

    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")


if __name__ == "__main__":
    main()
