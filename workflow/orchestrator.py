"""报告生成工作流编排器。

阶段严格顺序执行：
    context -> hazard_identification -> mapping_validation -> fmea_scoring
    -> action_generation -> control_plan -> rendering

每个阶段以 step{running} / step{done} 包裹，失败时 step{error} 后紧跟唯一的 error 事件；
取消（客户端断开、运行超时）以唯一的 cancelled 事件结束，此时不会再发出 done。
所有进度通过 EventChannel 向外暴露，编排器本身不关心传输方式。
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import date, datetime
from typing import AsyncIterator, Callable
from zoneinfo import ZoneInfo

import httpx

from config.settings import Settings
from core.abstractions import EmbeddingCache, ModelClient, Retriever
from core.cancellation import CancellationToken
from core.errors import Cancelled, ReportEngineError, SchemaValidationError
from generation.llm_client import OpenAIChatClient
from generation.partial_json import PartialJsonDraft
from generation.prompts import (
    DEFAULT_TEMPLATE,
    SYSTEM_QRM,
    SYSTEM_QRM_MARKDOWN,
    build_control_measures_prompt,
    build_control_plan_prompt,
    build_fmea_scoring_prompt,
    build_hazard_five_factor_prompt,
    build_hazard_process_flow_prompt,
    build_markdown_render_prompt,
    build_messages,
    to_json,
)
from generation.token_budget import TokenBudgetManager
from ingestion.embedder import EmbeddingClient
from models.events import (
    CancelledEvent,
    ContextEvidenceEvent,
    ContextMetaEvent,
    ContextStageEvent,
    DeltaEvent,
    DoneEvent,
    ErrorEvent,
    LlmDeltaEvent,
    StartEvent,
    StepEvent,
    UsageEvent,
    WorkflowEvent,
)
from models.schemas import (
    ActionPlanEntry,
    ControlMeasure,
    FmeaRow,
    GeneratedReport,
    MappingValidation,
    ModelContext,
    ReportInput,
    ReportJson,
    RiskItem,
    ScoredRiskItem,
    TokenUsage,
    WorkflowContext,
)
from retrieval.hybrid_retriever import HybridRetriever
from workflow.context_builder import ContextBuilder
from workflow.events import EventChannel
from workflow.policy import apply_objective_policy, infer_objective_policy
from workflow.renderer import render_report_markdown
from workflow.validators import (
    is_process_flow_method,
    merge_scoring,
    validate_control_measures,
    validate_control_plan,
    validate_fmea_scoring,
    validate_hazard_identification,
    validate_mapping,
)

logger = logging.getLogger(__name__)

STAGES = (
    "context",
    "hazard_identification",
    "mapping_validation",
    "fmea_scoring",
    "action_generation",
    "control_plan",
    "rendering",
)


class _RunState:
    """单次运行的可变状态：事件通道、累计用量、当前阶段。"""

    def __init__(self, channel: EventChannel, cancel: CancellationToken):
        self.channel = channel
        self.cancel = cancel
        self.usage = TokenUsage()
        self.step: str | None = None

    def emit(self, event: WorkflowEvent) -> None:
        self.channel.emit(event)

    def stage_message(self, message: str) -> None:
        self.emit(ContextStageEvent(message=message))

    def add_usage(self, usage: TokenUsage | None) -> None:
        self.usage.add(usage)


class ReportWorkflow:
    def __init__(
        self,
        settings: Settings,
        model_client: ModelClient,
        retriever: Retriever,
        today: Callable[[], date] | None = None,
    ):
        self.settings = settings
        self.model_client = model_client
        self.context_builder = ContextBuilder(
            retriever,
            top_k=settings.evidence_top_k,
            token_budget=TokenBudgetManager(settings.evidence_token_budget),
        )
        self._today = today or self._local_today

    def _local_today(self) -> date:
        return datetime.now(ZoneInfo(self.settings.report_timezone)).date()

    # ---- 对外接口 ----

    async def stream(
        self, report_input: ReportInput, cancel: CancellationToken | None = None
    ) -> AsyncIterator[WorkflowEvent]:
        """以异步迭代器形式产出事件；调用方提前退出迭代视为取消。"""
        cancel = cancel or CancellationToken()
        channel = EventChannel()
        task = asyncio.create_task(self.execute(report_input, channel, cancel))
        try:
            async for event in channel:
                yield event
        finally:
            if not task.done():
                cancel.cancel("客户端断开")
            await asyncio.gather(task, return_exceptions=True)

    async def generate(
        self, report_input: ReportInput, cancel: CancellationToken | None = None
    ) -> GeneratedReport:
        """运行至结束并返回报告；失败抛 ReportEngineError，取消抛 Cancelled。"""
        report: GeneratedReport | None = None
        async for event in self.stream(report_input, cancel):
            if event.type == "done":
                report = event.report
            elif event.type == "error":
                raise ReportEngineError(event.message)
            elif event.type == "cancelled":
                raise Cancelled(event.reason)
        if report is None:
            raise ReportEngineError("工作流未产出报告")
        return report

    async def execute(
        self,
        report_input: ReportInput,
        channel: EventChannel,
        cancel: CancellationToken,
    ) -> GeneratedReport | None:
        """执行全部阶段并向 channel 写事件，结束时关闭 channel。"""
        run = _RunState(channel, cancel)
        run_id = str(uuid.uuid4())
        timer = None
        if self.settings.run_timeout_seconds > 0:
            timer = cancel.cancel_after(self.settings.run_timeout_seconds)

        logger.info("[Workflow] 开始运行 %s", run_id)
        run.emit(StartEvent(run_id=run_id))
        try:
            report = await self._run_stages(report_input, run)
            cancel.raise_if_cancelled()
            run.emit(DoneEvent(usage=run.usage.model_copy(), report=report))
            logger.info(
                "[Workflow] 运行 %s 完成，累计 tokens=%d", run_id, run.usage.total_tokens
            )
            return report
        except Cancelled as e:
            logger.info("[Workflow] 运行 %s 已取消（阶段 %s）: %s", run_id, run.step, e.reason)
            run.emit(CancelledEvent(reason=e.reason))
        except ReportEngineError as e:
            logger.warning("[Workflow] 运行 %s 在阶段 %s 失败: %s", run_id, run.step, e)
            self._fail(run, str(e))
        except Exception as e:
            logger.exception("[Workflow] 运行 %s 在阶段 %s 出现未预期异常", run_id, run.step)
            self._fail(run, str(e) or type(e).__name__)
        finally:
            if timer is not None:
                timer.cancel()
            channel.close()
        return None

    def _fail(self, run: _RunState, message: str) -> None:
        if run.step is not None:
            run.emit(StepEvent(step=run.step, status="error"))
        run.emit(ErrorEvent(message=message, step=run.step))

    # ---- 阶段控制 ----

    async def _enter(self, run: _RunState, step: str) -> None:
        run.cancel.raise_if_cancelled()
        await run.cancel.sleep(self.settings.stage_pacing_seconds)
        run.step = step
        logger.info("[Workflow] 阶段开始: %s", step)
        run.emit(StepEvent(step=step, status="running"))

    def _leave(self, run: _RunState, step: str) -> None:
        run.emit(StepEvent(step=step, status="done"))
        run.emit(UsageEvent(usage=run.usage.model_copy()))
        run.step = None

    def _skip(self, run: _RunState, step: str) -> None:
        logger.info("[Workflow] 阶段跳过: %s", step)
        run.emit(StepEvent(step=step, status="skipped"))

    async def _call_json(self, run: _RunState, step: str, system: str, user: str):
        """流式 JSON 调用：增量以 llm_delta 发出，并附带节流后的部分 JSON 预览。"""
        run.cancel.raise_if_cancelled()
        draft = PartialJsonDraft(self.settings.draft_interval_chars)

        def on_delta(delta: str) -> None:
            run.emit(LlmDeltaEvent(step=step, delta=delta, draft=draft.feed(delta)))

        result, usage = await self.model_client.call_json_streaming(
            build_messages(system, user), on_delta, cancel=run.cancel
        )
        run.add_usage(usage)
        return result

    # ---- 各阶段 ----

    async def _run_stages(self, report_input: ReportInput, run: _RunState) -> GeneratedReport:
        ctx = await self._context(report_input, run)
        items = await self._hazard_identification(report_input, ctx, run)
        mapping = await self._mapping_validation(report_input, ctx, items, run)
        fmea_rows, scored = await self._fmea_scoring(ctx, items, run)

        measures: list[ControlMeasure] = []
        actions: list[ActionPlanEntry] = []
        if any(item.need_actions for item in scored):
            measures = await self._action_generation(ctx, scored, run)
            actions = await self._control_plan(ctx, measures, scored, run)
        else:
            run.cancel.raise_if_cancelled()
            run.stage_message("所有风险项均无需新增控制措施，跳过措施生成与控制计划")
            self._skip(run, "action_generation")
            self._skip(run, "control_plan")

        markdown = await self._rendering(report_input, ctx, items, scored, actions, run)
        report_json = ReportJson(
            context=ctx,
            risk_items=items,
            fmea_rows=fmea_rows,
            scored_items=scored,
            control_measures=measures,
            actions=actions,
            mapping_validation=mapping,
        )
        return GeneratedReport(markdown=markdown, json=report_json, usage=run.usage.model_copy())

    async def _context(self, report_input: ReportInput, run: _RunState) -> WorkflowContext:
        await self._enter(run, "context")
        ctx = await self.context_builder.build(report_input, run.stage_message, cancel=run.cancel)
        run.emit(ContextMetaEvent(meta=ctx.retrieval_meta))
        run.emit(ContextEvidenceEvent(items=ctx.evidence_chunks))
        self._leave(run, "context")
        return ctx

    async def _hazard_identification(
        self, report_input: ReportInput, ctx: WorkflowContext, run: _RunState
    ) -> list[RiskItem]:
        step = "hazard_identification"
        await self._enter(run, step)
        steps = report_input.process_steps
        if is_process_flow_method(ctx.risk_method):
            if not steps:
                raise SchemaValidationError("流程图法需要提供流程步骤", stage=step)
            prompt = build_hazard_process_flow_prompt(
                ctx, to_json([s.model_dump() for s in steps])
            )
        else:
            prompt = build_hazard_five_factor_prompt(ctx)

        raw = await self._call_json(run, step, SYSTEM_QRM, prompt)
        items = validate_hazard_identification(raw, ctx.risk_method, steps)
        logger.info("[Workflow] 识别风险项 %d 条", len(items))
        self._leave(run, step)
        return items

    async def _mapping_validation(
        self, report_input: ReportInput, ctx: WorkflowContext, items: list[RiskItem], run: _RunState
    ) -> MappingValidation:
        step = "mapping_validation"
        await self._enter(run, step)
        result = validate_mapping(items, ctx.risk_method, report_input.process_steps)
        if not result.ok:
            raise SchemaValidationError("维度映射校验失败：" + "；".join(result.issues), stage=step)
        self._leave(run, step)
        return result

    async def _fmea_scoring(
        self, ctx: WorkflowContext, items: list[RiskItem], run: _RunState
    ) -> tuple[list[FmeaRow], list[ScoredRiskItem]]:
        step = "fmea_scoring"
        await self._enter(run, step)
        prompt = build_fmea_scoring_prompt(ctx, to_json([item.model_dump() for item in items]))
        raw = await self._call_json(run, step, SYSTEM_QRM, prompt)
        rows = validate_fmea_scoring(raw, items)
        scored = merge_scoring(items, rows)

        policy = infer_objective_policy(ctx.objective)
        if policy != "none" and scored:
            scored = apply_objective_policy(scored, policy)
            if policy == "force_none":
                run.stage_message("评估目标表明无需新增措施，所有风险项不生成控制措施")
            else:
                run.stage_message("评估目标要求采取措施，所有风险项均生成控制措施")

        for item in scored:
            logger.debug(
                "[Workflow] %s RPN=%d (%s) need_actions=%s",
                item.risk_id,
                item.rpn,
                item.level,
                item.need_actions,
            )
        self._leave(run, step)
        return rows, scored

    async def _action_generation(
        self, ctx: WorkflowContext, scored: list[ScoredRiskItem], run: _RunState
    ) -> list[ControlMeasure]:
        step = "action_generation"
        await self._enter(run, step)
        targets = [item.model_dump() for item in scored if item.need_actions]
        raw = await self._call_json(
            run, step, SYSTEM_QRM, build_control_measures_prompt(ctx, to_json(targets))
        )
        measures = validate_control_measures(raw, scored)
        self._leave(run, step)
        return measures

    async def _control_plan(
        self,
        ctx: WorkflowContext,
        measures: list[ControlMeasure],
        scored: list[ScoredRiskItem],
        run: _RunState,
    ) -> list[ActionPlanEntry]:
        step = "control_plan"
        await self._enter(run, step)
        today = self._today()
        prompt = build_control_plan_prompt(
            ctx, to_json([m.model_dump() for m in measures]), today.isoformat()
        )
        raw = await self._call_json(run, step, SYSTEM_QRM, prompt)
        actions = validate_control_plan(raw, measures, scored, today)
        self._leave(run, step)
        return actions

    async def _rendering(
        self,
        report_input: ReportInput,
        ctx: WorkflowContext,
        items: list[RiskItem],
        scored: list[ScoredRiskItem],
        actions: list[ActionPlanEntry],
        run: _RunState,
    ) -> str:
        step = "rendering"
        await self._enter(run, step)
        title = report_input.title or "风险评估报告"

        if not self.settings.render_with_model:
            markdown = render_report_markdown(
                title,
                report_input.template_content or DEFAULT_TEMPLATE,
                ctx,
                scored,
                actions,
                report_input.source_files,
            )
            run.emit(DeltaEvent(delta=markdown))
            self._leave(run, step)
            return markdown

        prompt = build_markdown_render_prompt(
            title,
            report_input.template_content or DEFAULT_TEMPLATE,
            ctx,
            to_json([item.model_dump() for item in items]),
            to_json([item.model_dump() for item in scored]),
            to_json([entry.model_dump() for entry in actions]),
        )
        run.cancel.raise_if_cancelled()
        markdown, usage = await self.model_client.call_markdown_streaming(
            build_messages(SYSTEM_QRM_MARKDOWN, prompt),
            lambda delta: run.emit(DeltaEvent(delta=delta)),
            cancel=run.cancel,
        )
        run.add_usage(usage)
        self._leave(run, step)
        return markdown


def build_report_workflow(
    settings: Settings,
    models: ModelContext,
    http_client: httpx.AsyncClient,
    cache: EmbeddingCache,
    model_client: ModelClient | None = None,
) -> ReportWorkflow:
    """按一次请求的模型配置装配工作流；embedding 未配置时只走关键词检索。"""
    embedding_client = None
    if models.embedding is not None and models.embedding.is_configured:
        embedding_client = EmbeddingClient(
            models.embedding, cache, http_client, batch_size=settings.embedding_batch_size
        )
    retriever = HybridRetriever(settings, embedding_client=embedding_client)
    model_client = model_client or OpenAIChatClient(models.llm, http_client)
    return ReportWorkflow(settings, model_client, retriever)
