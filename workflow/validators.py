"""阶段输出校验。

每个阶段的模型输出先做"精确字段集合"检查（缺字段、多字段都报错，尽早发现模型漂移），
再做字段级约束（枚举、非空字符串）与跨阶段引用检查（risk_id 覆盖、不得多出）。
校验通过返回类型化结构，失败抛 SchemaValidationError，消息指明阶段、第几条与字段。
"""

from __future__ import annotations

import re
import uuid
from datetime import date
from typing import Any

from core.algorithms import compute_rpn, compute_rpn_level, needs_actions
from core.errors import SchemaValidationError
from models.schemas import (
    ACTION_TYPES,
    FIVE_FACTOR_DIMENSIONS,
    SCORE_VALUES,
    ActionItem,
    ActionPlanEntry,
    ControlMeasure,
    FmeaRow,
    MappingValidation,
    ProcessStep,
    RiskItem,
    ScoredRiskItem,
)

RISK_ITEM_KEYS = ("risk_id", "dimension_type", "dimension", "dimension_id", "failure_mode", "consequence")
FMEA_ROW_KEYS = ("risk_id", "s", "s_reason", "p", "p_reason", "d", "d_reason")
MEASURE_KEYS = ("risk_id", "measures")
PLAN_ENTRY_KEYS = ("risk_id", "actions")
ACTION_KEYS = ("type", "action_text", "owner_role", "owner_dept", "planned_date")

TBD = "TBD"
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def is_process_flow_method(method: str | None) -> bool:
    """风险识别方法是否为流程图法；其余一律按五因素法处理。"""
    text = (method or "").strip().lower()
    return "流程" in text or "process" in text


# ---- 通用检查 ----


def _records(raw: Any, top_key: str, label: str, stage: str) -> list:
    """取出顶层列表：{"<top_key>": [...]} 必须恰好只有这一个键；裸数组同样接受。"""
    if isinstance(raw, list):
        return raw
    if not isinstance(raw, dict):
        raise SchemaValidationError(f"{label} 输出必须是 JSON 对象", stage=stage)
    if top_key not in raw:
        raise SchemaValidationError(f"{label} 缺少字段: {top_key}", stage=stage, field=top_key)
    extra = sorted(k for k in raw if k != top_key)
    if extra:
        raise SchemaValidationError(f"{label} 包含多余字段: {extra[0]}", stage=stage, field=extra[0])
    records = raw[top_key]
    if not isinstance(records, list):
        raise SchemaValidationError(f"{label} 字段 {top_key} 必须是数组", stage=stage, field=top_key)
    return records


def _check_keys(record: Any, keys: tuple[str, ...], label: str, index: int, stage: str) -> dict:
    n = index + 1
    if not isinstance(record, dict):
        raise SchemaValidationError(f"{label} 第{n}条不是对象", stage=stage, record_index=index)
    for key in keys:
        if key not in record:
            raise SchemaValidationError(
                f"{label} 第{n}条缺少字段: {key}", stage=stage, record_index=index, field=key
            )
    extra = [k for k in record if k not in keys]
    if extra:
        raise SchemaValidationError(
            f"{label} 第{n}条包含多余字段: {extra[0]}", stage=stage, record_index=index, field=extra[0]
        )
    return record


def _require_text(record: dict, key: str, label: str, index: int, stage: str) -> str:
    value = record.get(key)
    if not isinstance(value, str) or not value.strip():
        raise SchemaValidationError(
            f"{label} 第{index + 1}条字段 {key} 必须是非空字符串",
            stage=stage,
            record_index=index,
            field=key,
        )
    return value.strip()


# ---- 风险识别 ----


def validate_hazard_identification(
    raw: Any, method: str | None, process_steps: list[ProcessStep] | None = None
) -> list[RiskItem]:
    """校验风险识别输出；所有 risk_id 一律由服务端重新生成。"""
    stage, label = "hazard_identification", "风险识别"
    records = _records(raw, "items", label, stage)
    if not records:
        raise SchemaValidationError(f"{label} 结果为空", stage=stage)

    process_flow = is_process_flow_method(method)
    expected_type = "process_flow" if process_flow else "five_factors"
    steps = {s.step_id: s.step_name for s in process_steps or []}

    items: list[RiskItem] = []
    for index, record in enumerate(records):
        record = _check_keys(record, RISK_ITEM_KEYS, label, index, stage)
        n = index + 1
        if not isinstance(record["risk_id"], str):
            raise SchemaValidationError(
                f"{label} 第{n}条字段 risk_id 必须是字符串", stage=stage, record_index=index, field="risk_id"
            )
        if record["dimension_type"] != expected_type:
            raise SchemaValidationError(
                f"{label} 第{n}条 dimension_type 应为 {expected_type}",
                stage=stage,
                record_index=index,
                field="dimension_type",
            )
        dimension = _require_text(record, "dimension", label, index, stage)
        failure_mode = _require_text(record, "failure_mode", label, index, stage)
        consequence = _require_text(record, "consequence", label, index, stage)

        dimension_id = record["dimension_id"]
        if process_flow:
            if not isinstance(dimension_id, str) or dimension_id not in steps:
                raise SchemaValidationError(
                    f"{label} 第{n}条 dimension_id 不在流程步骤中: {dimension_id}",
                    stage=stage,
                    record_index=index,
                    field="dimension_id",
                )
        else:
            if dimension not in FIVE_FACTOR_DIMENSIONS:
                raise SchemaValidationError(
                    f"{label} 第{n}条 dimension 非法: {dimension}",
                    stage=stage,
                    record_index=index,
                    field="dimension",
                )
            dimension_id = None

        items.append(
            RiskItem(
                risk_id=str(uuid.uuid4()),
                dimension_type=expected_type,
                dimension=dimension,
                dimension_id=dimension_id,
                failure_mode=failure_mode,
                consequence=consequence,
            )
        )
    return items


def validate_mapping(
    items: list[RiskItem], method: str | None, process_steps: list[ProcessStep] | None = None
) -> MappingValidation:
    """维度映射复核（不调用模型）：五因素覆盖、流程步骤一致性。"""
    issues: list[str] = []
    if is_process_flow_method(method):
        steps = {s.step_id: s.step_name for s in process_steps or []}
        if not steps:
            issues.append("流程图法缺少流程步骤")
        for index, item in enumerate(items):
            if item.dimension_id not in steps:
                issues.append(f"第{index + 1}条风险的流程步骤不存在: {item.dimension_id}")
            elif steps[item.dimension_id] != item.dimension:
                issues.append(
                    f"第{index + 1}条风险的步骤名称与步骤编号不一致: {item.dimension}"
                )
    else:
        present = {item.dimension for item in items}
        for dimension in FIVE_FACTOR_DIMENSIONS:
            if dimension not in present:
                issues.append(f"缺失维度：{dimension}")
    return MappingValidation(ok=not issues, issues=issues)


# ---- FMEA 评分 ----


def validate_fmea_scoring(raw: Any, items: list[RiskItem]) -> list[FmeaRow]:
    stage, label = "fmea_scoring", "FMEA评分"
    records = _records(raw, "rows", label, stage)
    known = {item.risk_id for item in items}

    rows: dict[str, FmeaRow] = {}
    for index, record in enumerate(records):
        record = _check_keys(record, FMEA_ROW_KEYS, label, index, stage)
        n = index + 1
        risk_id = _require_text(record, "risk_id", label, index, stage)
        if risk_id not in known:
            raise SchemaValidationError(
                f"{label} 第{n}条出现未知的 risk_id: {risk_id}", stage=stage, record_index=index, field="risk_id"
            )
        if risk_id in rows:
            raise SchemaValidationError(
                f"{label} 第{n}条 risk_id 重复: {risk_id}", stage=stage, record_index=index, field="risk_id"
            )
        for key in ("s", "p", "d"):
            value = record[key]
            if isinstance(value, bool) or value not in SCORE_VALUES:
                raise SchemaValidationError(
                    f"{label} 第{n}条字段 {key} 只能取 1/3/6/9: {value}",
                    stage=stage,
                    record_index=index,
                    field=key,
                )
        rows[risk_id] = FmeaRow(
            risk_id=risk_id,
            s=record["s"],
            s_reason=_require_text(record, "s_reason", label, index, stage),
            p=record["p"],
            p_reason=_require_text(record, "p_reason", label, index, stage),
            d=record["d"],
            d_reason=_require_text(record, "d_reason", label, index, stage),
        )

    for item in items:
        if item.risk_id not in rows:
            raise SchemaValidationError(f"{label} 缺少风险项评分: {item.risk_id}", stage=stage)
    # 按风险清单顺序输出
    return [rows[item.risk_id] for item in items]


def merge_scoring(items: list[RiskItem], rows: list[FmeaRow]) -> list[ScoredRiskItem]:
    """合并评分并由代码计算 RPN、等级与是否需要措施。"""
    by_id = {row.risk_id: row for row in rows}
    scored: list[ScoredRiskItem] = []
    for item in items:
        row = by_id[item.risk_id]
        rpn = compute_rpn(row.s, row.p, row.d)
        scored.append(
            ScoredRiskItem(
                **item.model_dump(),
                **row.model_dump(exclude={"risk_id"}),
                rpn=rpn,
                level=compute_rpn_level(rpn),
                need_actions=needs_actions(rpn),
            )
        )
    return scored


# ---- 控制措施 ----


def _check_coverage(label: str, stage: str, seen: list[str], required: list[str]) -> None:
    for risk_id in required:
        if risk_id not in seen:
            raise SchemaValidationError(f"{label} 缺失风险控制措施: {risk_id}", stage=stage)


def validate_control_measures(raw: Any, scored_items: list[ScoredRiskItem]) -> list[ControlMeasure]:
    stage, label = "action_generation", "控制措施"
    records = _records(raw, "measures", label, stage)
    flags = {item.risk_id: item.need_actions for item in scored_items}

    measures: list[ControlMeasure] = []
    seen: list[str] = []
    for index, record in enumerate(records):
        record = _check_keys(record, MEASURE_KEYS, label, index, stage)
        n = index + 1
        risk_id = _require_text(record, "risk_id", label, index, stage)
        if risk_id not in flags:
            raise SchemaValidationError(
                f"{label} 第{n}条出现未知的 risk_id: {risk_id}", stage=stage, record_index=index, field="risk_id"
            )
        if not flags[risk_id]:
            raise SchemaValidationError(
                f"{label} 出现不需要措施的 risk_id: {risk_id}", stage=stage, record_index=index, field="risk_id"
            )
        if risk_id in seen:
            raise SchemaValidationError(
                f"{label} 第{n}条 risk_id 重复: {risk_id}", stage=stage, record_index=index, field="risk_id"
            )
        texts = record["measures"]
        if not isinstance(texts, list):
            raise SchemaValidationError(
                f"{label} 第{n}条字段 measures 必须是数组", stage=stage, record_index=index, field="measures"
            )
        cleaned = [t.strip() for t in texts if isinstance(t, str) and t.strip()]
        if not cleaned:
            raise SchemaValidationError(
                f"{label} 风险 {risk_id} 未提供具体措施", stage=stage, record_index=index, field="measures"
            )
        seen.append(risk_id)
        measures.append(ControlMeasure(risk_id=risk_id, measures=cleaned))

    _check_coverage(label, stage, seen, [i.risk_id for i in scored_items if i.need_actions])
    return measures


def _normalize_planned_date(value: str, today: date) -> str:
    """早于今天或不是 YYYY-MM-DD 的日期一律置为 TBD。"""
    value = value.strip()
    if not _DATE_RE.match(value):
        return TBD
    try:
        planned = date.fromisoformat(value)
    except ValueError:
        return TBD
    return value if planned >= today else TBD


def validate_control_plan(
    raw: Any,
    measures: list[ControlMeasure],
    scored_items: list[ScoredRiskItem],
    today: date,
) -> list[ActionPlanEntry]:
    stage, label = "control_plan", "控制计划"
    records = _records(raw, "actions", label, stage)
    flags = {item.risk_id: item.need_actions for item in scored_items}
    expected = [m.risk_id for m in measures]

    entries: list[ActionPlanEntry] = []
    seen: list[str] = []
    for index, record in enumerate(records):
        record = _check_keys(record, PLAN_ENTRY_KEYS, label, index, stage)
        n = index + 1
        risk_id = _require_text(record, "risk_id", label, index, stage)
        if risk_id not in expected:
            if flags.get(risk_id) is False:
                raise SchemaValidationError(
                    f"{label} 出现不需要措施的 risk_id: {risk_id}", stage=stage, record_index=index, field="risk_id"
                )
            raise SchemaValidationError(
                f"{label} 第{n}条出现未知的 risk_id: {risk_id}", stage=stage, record_index=index, field="risk_id"
            )
        if risk_id in seen:
            raise SchemaValidationError(
                f"{label} 第{n}条 risk_id 重复: {risk_id}", stage=stage, record_index=index, field="risk_id"
            )
        raw_actions = record["actions"]
        if not isinstance(raw_actions, list) or not raw_actions:
            raise SchemaValidationError(
                f"{label} 风险 {risk_id} 未提供具体措施", stage=stage, record_index=index, field="actions"
            )

        action_label = f"{label} 风险 {risk_id} 的措施"
        actions: list[ActionItem] = []
        for j, raw_action in enumerate(raw_actions):
            raw_action = _check_keys(raw_action, ACTION_KEYS, action_label, j, stage)
            if raw_action["type"] not in ACTION_TYPES:
                raise SchemaValidationError(
                    f"{action_label} 第{j + 1}条动作类型非法: {raw_action['type']}",
                    stage=stage,
                    record_index=index,
                    field="type",
                )
            planned = raw_action["planned_date"]
            actions.append(
                ActionItem(
                    type=raw_action["type"],
                    action_text=_require_text(raw_action, "action_text", action_label, j, stage),
                    owner_role=_require_text(raw_action, "owner_role", action_label, j, stage),
                    owner_dept=_require_text(raw_action, "owner_dept", action_label, j, stage),
                    planned_date=_normalize_planned_date(planned if isinstance(planned, str) else "", today),
                )
            )
        seen.append(risk_id)
        entries.append(ActionPlanEntry(risk_id=risk_id, actions=actions))

    _check_coverage(label, stage, seen, expected)
    return entries
