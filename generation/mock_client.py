"""Mock 模型客户端：不访问任何后端，按 Prompt 的任务类型拼装结构化结果。

用于本地演示与无 API Key 的环境（QRM_LLM_PROVIDER=mock）。
输出走与真实后端相同的流式回调和 JSON 解析路径，因此下游校验、打分、渲染逻辑完全一致。
评分按条目顺序轮换一组固定的 S/P/D 组合，保证结果可复现。
"""

from __future__ import annotations

import asyncio
import json
import re
from datetime import date, timedelta
from typing import Any

from core.abstractions import DeltaCallback, ModelClient
from core.cancellation import CancellationToken
from core.errors import InvalidModelOutput
from generation.llm_client import extract_json
from generation.prompts import UUID_PLACEHOLDER
from models.schemas import FIVE_FACTOR_DIMENSIONS, TokenUsage

_TASK_RE = re.compile(r"^任务：(.+)$", re.MULTILINE)
_TITLE_RE = re.compile(r"报告标题为 (.+?)。")
_DATE_RE = re.compile(r"不得早于今天（(\d{4}-\d{2}-\d{2})）")

# (S, P, D)：依次对应 中 / 低 / 高 / 极低
_SCORE_CYCLE = [(6, 3, 3), (3, 3, 3), (9, 3, 6), (3, 1, 3)]

_FIVE_FACTOR_TEMPLATES = {
    "人员": ("操作人员未按{scope}相关 SOP 执行关键步骤", "关键参数失控未被及时发现，影响产品质量"),
    "设备与设施": ("{scope}相关设备或传感器未按期校准", "监测数据失真，偏差无法被识别"),
    "物料": ("{scope}涉及的物料标识或状态管理不清", "错用物料导致批次混淆"),
    "法规与程序": ("{scope}相关 SOP 未覆盖异常情况处置要求", "偏差处理不一致，存在合规缺陷"),
    "环境": ("{scope}所在区域环境条件超出规定范围", "产品暴露于不受控环境，质量受影响"),
}

_MEASURE_TEMPLATES = [
    "修订相关 SOP，明确{mode}的控制要求与记录要求",
    "对相关岗位人员开展专项培训并进行考核，保留培训记录",
]


def _after(text: str, marker: str) -> Any:
    """解析 marker 之后紧跟的 JSON 值。"""
    start = text.find(marker)
    if start < 0:
        return []
    rest = text[start + len(marker) :].lstrip()
    try:
        value, _ = json.JSONDecoder().raw_decode(rest)
    except ValueError:
        return []
    return value


def _scope(prompt: str) -> str:
    match = re.search(r"\[评估范围\] (.+)", prompt)
    scope = match.group(1).strip() if match else ""
    return "" if scope in ("（无）", "（未填写）") else scope[:30]


class MockModelClient(ModelClient):
    def __init__(self, chunk_chars: int = 24):
        self.chunk_chars = max(1, chunk_chars)

    async def call_json(
        self, messages: list[dict], cancel: CancellationToken | None = None
    ) -> tuple[Any, TokenUsage | None]:
        text = self._json_text(messages)
        return extract_json(text), self._usage(messages, text)

    async def call_json_streaming(
        self,
        messages: list[dict],
        on_delta: DeltaCallback,
        cancel: CancellationToken | None = None,
    ) -> tuple[Any, TokenUsage | None]:
        text = self._json_text(messages)
        await self._replay(text, on_delta, cancel)
        return extract_json(text), self._usage(messages, text)

    async def call_markdown_streaming(
        self,
        messages: list[dict],
        on_delta: DeltaCallback,
        cancel: CancellationToken | None = None,
    ) -> tuple[str, TokenUsage | None]:
        text = self._markdown(messages[-1]["content"])
        await self._replay(text, on_delta, cancel)
        return text, self._usage(messages, text)

    # ---- 流式回放 ----

    async def _replay(
        self, text: str, on_delta: DeltaCallback, cancel: CancellationToken | None
    ) -> None:
        for i in range(0, len(text), self.chunk_chars):
            if cancel is not None:
                cancel.raise_if_cancelled()
            on_delta(text[i : i + self.chunk_chars])
            await asyncio.sleep(0)

    def _usage(self, messages: list[dict], text: str) -> TokenUsage:
        prompt_tokens = sum(len(m["content"]) for m in messages) // 2
        completion_tokens = len(text) // 2
        return TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    # ---- 各任务 ----

    def _json_text(self, messages: list[dict]) -> str:
        prompt = messages[-1]["content"]
        match = _TASK_RE.search(prompt)
        task = match.group(1) if match else ""
        if task.startswith("按五因素法"):
            data = self._five_factor(prompt)
        elif task.startswith("按流程图法"):
            data = self._process_flow(prompt)
        elif task.startswith("对风险清单逐条进行 FMEA 评分"):
            data = self._fmea(prompt)
        elif task.startswith("只针对 need_actions=true"):
            data = self._measures(prompt)
        elif task.startswith("为已确定的控制措施制定执行计划"):
            data = self._plan(prompt)
        else:
            raise InvalidModelOutput(f"Mock 模型无法识别任务: {task[:40]}")
        return json.dumps(data, ensure_ascii=False)

    def _five_factor(self, prompt: str) -> dict:
        scope = _scope(prompt)
        items = []
        for dimension in FIVE_FACTOR_DIMENSIONS:
            mode, consequence = _FIVE_FACTOR_TEMPLATES[dimension]
            items.append(
                {
                    "risk_id": UUID_PLACEHOLDER,
                    "dimension_type": "five_factors",
                    "dimension": dimension,
                    "dimension_id": None,
                    "failure_mode": mode.format(scope=scope),
                    "consequence": consequence,
                }
            )
        return {"items": items}

    def _process_flow(self, prompt: str) -> dict:
        steps = _after(prompt, "流程步骤清单：")
        items = [
            {
                "risk_id": UUID_PLACEHOLDER,
                "dimension_type": "process_flow",
                "dimension": step["step_name"],
                "dimension_id": step["step_id"],
                "failure_mode": f"{step['step_name']}的关键参数未按规定设置或复核",
                "consequence": f"{step['step_name']}输出不符合要求，影响后续工序",
            }
            for step in steps
            if isinstance(step, dict)
        ]
        return {"items": items}

    def _fmea(self, prompt: str) -> dict:
        rows = []
        for i, item in enumerate(_after(prompt, "风险清单：")):
            s, p, d = _SCORE_CYCLE[i % len(_SCORE_CYCLE)]
            rows.append(
                {
                    "risk_id": item["risk_id"],
                    "s": s,
                    "s_reason": "失效直接影响产品质量或数据可靠性",
                    "p": p,
                    "p_reason": "现行 SOP 已有规定，但执行依赖人工",
                    "d": d,
                    "d_reason": "依靠定期复核发现，存在滞后",
                }
            )
        return {"rows": rows}

    def _measures(self, prompt: str) -> dict:
        measures = [
            {
                "risk_id": item["risk_id"],
                "measures": [t.format(mode=item.get("failure_mode", "")) for t in _MEASURE_TEMPLATES],
            }
            for item in _after(prompt, "已评分的风险清单：")
        ]
        return {"measures": measures}

    def _plan(self, prompt: str) -> dict:
        match = _DATE_RE.search(prompt)
        today = date.fromisoformat(match.group(1)) if match else date.today()
        planned = (today + timedelta(days=30)).isoformat()
        actions = []
        for entry in _after(prompt, "控制措施："):
            texts = entry.get("measures", [])
            actions.append(
                {
                    "risk_id": entry["risk_id"],
                    "actions": [
                        {
                            "type": "SOP/规程" if i == 0 else "培训与资质",
                            "action_text": text,
                            "owner_role": "QA",
                            "owner_dept": "质量保证部",
                            "planned_date": planned,
                        }
                        for i, text in enumerate(texts)
                    ],
                }
            )
        return {"actions": actions}

    def _markdown(self, prompt: str) -> str:
        match = _TITLE_RE.search(prompt)
        title = match.group(1) if match else "风险评估报告"
        scored = _after(prompt, "风险评价结果：")
        lines = [f"# {title}", "", "## 4.3 风险评价", ""]
        lines.append("| 序号 | 失效模式 | S | P | D | RPN | 等级 |")
        lines.append("| --- | --- | --- | --- | --- | --- | --- |")
        for i, item in enumerate(scored, start=1):
            lines.append(
                f"| {i} | {item['failure_mode']} | {item['s']} | {item['p']} | {item['d']} "
                f"| {item['rpn']} | {item['level']} |"
            )
        return "\n".join(lines) + "\n"
