"""上下文构建：一次运行只构建一次 WorkflowContext，之后不可变。

检索查询 = 范围 + 背景 + 评估目标；检索过程中的进度以阶段消息回调给编排器。
"""

from __future__ import annotations

import logging
import re
from typing import Callable

from core.abstractions import Retriever
from core.cancellation import CancellationToken
from generation.prompts import DEFAULT_TEMPLATE
from generation.token_budget import TokenBudgetManager
from models.schemas import EvidenceChunk, ReportInput, RetrievalMeta, WorkflowContext

logger = logging.getLogger(__name__)

UNFILLED = "（未填写）"
DEFAULT_RISK_METHOD = "五因素法"
DEFAULT_EVAL_TOOL = "FMEA"
QUERY_PREVIEW_CHARS = 320

_WHITESPACE_RE = re.compile(r"\s+")


def summarize_template_requirements(template: str | None) -> str:
    """模板摘要：最多 12 个标题以 " / " 连接；没有标题时取前 240 字。"""
    raw = (template or "").strip()
    if not raw:
        return "（未提供模板要求）"
    headings = [line.strip() for line in raw.splitlines() if line.strip().startswith("#")][:12]
    if headings:
        return " / ".join(headings)
    return raw[:240] + "..." if len(raw) > 240 else raw


def format_evidence_blocks(chunks: list[EvidenceChunk]) -> str:
    if not chunks:
        return "（无可用片段）"

    def section(title: str, label: str, items: list[EvidenceChunk]) -> str:
        if not items:
            return f"{title}：无"
        lines = [f"{title}："] + [f"[{label}#{i}] {c.content}" for i, c in enumerate(items, start=1)]
        return "\n\n".join(lines)

    sop = [c for c in chunks if c.category == "sop"]
    literature = [c for c in chunks if c.category == "literature"]
    return "\n\n".join([section("SOP片段", "SOP", sop), section("文献片段", "文献", literature)])


def format_evidence_preview(
    chunks: list[EvidenceChunk], max_items: int = 4, preview_chars: int = 140
) -> str:
    if not chunks:
        return "召回片段预览：无"
    items = []
    for i, chunk in enumerate(chunks[:max_items], start=1):
        cleaned = _WHITESPACE_RE.sub(" ", chunk.content).strip()
        suffix = "..." if len(cleaned) > preview_chars else ""
        label = "SOP" if chunk.category == "sop" else "文献"
        items.append(f"{i}. [{label}] ({chunk.score:.3f}) {cleaned[:preview_chars]}{suffix}")
    extra = f"（其余 {len(chunks) - max_items} 条省略）" if len(chunks) > max_items else ""
    return "召回片段预览：" + "；".join(items) + extra


def _or_default(value: str | None, default: str) -> str:
    value = (value or "").strip()
    return value or default


class ContextBuilder:
    def __init__(
        self,
        retriever: Retriever,
        top_k: int = 8,
        token_budget: TokenBudgetManager | None = None,
    ):
        self.retriever = retriever
        self.top_k = top_k
        self.token_budget = token_budget or TokenBudgetManager()

    async def build(
        self,
        report_input: ReportInput,
        on_stage: Callable[[str], None],
        cancel: CancellationToken | None = None,
    ) -> WorkflowContext:
        scope = _or_default(report_input.scope, UNFILLED)
        background = _or_default(report_input.background, UNFILLED)
        objective = _or_default(report_input.objective, UNFILLED)

        query = " ".join(part for part in (scope, background, objective) if part)
        preview = query[:QUERY_PREVIEW_CHARS] + "..." if len(query) > QUERY_PREVIEW_CHARS else query
        on_stage(f"检索查询：{preview or '（空）'}")

        sources = report_input.sop_sources + report_input.literature_sources
        chunks, degraded = await self.retriever.retrieve(
            sources, query, self.top_k, on_stage=on_stage, cancel=cancel
        )
        chunks = self.token_budget.trim_evidence(chunks)
        on_stage(format_evidence_preview(chunks))
        on_stage("上下文拼装中...")

        meta = RetrievalMeta(
            used_embedding=self.retriever.uses_embedding and not degraded,
            sop_text_count=len(report_input.sop_sources),
            literature_text_count=len(report_input.literature_sources),
            evidence_chunk_count=len(chunks),
            degraded=degraded,
        )
        logger.info(
            "[Context] 证据片段 %d 条（SOP 文本 %d 份，文献 %d 份，降级=%s）",
            meta.evidence_chunk_count,
            meta.sop_text_count,
            meta.literature_text_count,
            degraded,
        )

        return WorkflowContext(
            scope=scope,
            background=background,
            objective=objective,
            risk_method=_or_default(report_input.risk_method, DEFAULT_RISK_METHOD),
            eval_tool=_or_default(report_input.eval_tool, DEFAULT_EVAL_TOOL),
            template_requirements=summarize_template_requirements(
                report_input.template_content or DEFAULT_TEMPLATE
            ),
            evidence_blocks=format_evidence_blocks(chunks),
            evidence_chunks=chunks,
            retrieval_meta=meta,
        )
