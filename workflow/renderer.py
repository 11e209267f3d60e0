"""确定性报告渲染（不调用模型）。

render_with_model=False 时使用：按固定章节输出，模板中各章节已有的正文保留在生成内容之前。
表格单元格中的 "|" 替换为全角 "｜"，换行替换为空格。
"""

from __future__ import annotations

import re

from models.schemas import ActionPlanEntry, ScoredRiskItem, SourceText, WorkflowContext

_HEADING_RE = re.compile(r"^(#+)\s+")
UNFILLED = "（未填写）"


def escape_table(text: str) -> str:
    return text.replace("|", "｜").replace("\r\n", " ").replace("\n", " ")


def _table(header: list[str], rows: list[list[str]]) -> str:
    lines = [
        "| " + " | ".join(header) + " |",
        "| " + " | ".join("---" for _ in header) + " |",
    ]
    lines.extend("| " + " | ".join(row) + " |" for row in rows)
    return "\n".join(lines)


# ---- 模板解析 ----


def template_title(template: str | None) -> str | None:
    for line in (template or "").splitlines():
        line = line.strip()
        if line.startswith("# "):
            return line[2:].strip() or None
    return None


def section_body(template: str | None, heading_text: str, level: int) -> str:
    """取模板中某个标题下、下一个同级或更高级标题之前的正文。"""
    if not template:
        return ""
    lines = template.replace("\r\n", "\n").split("\n")
    prefix = "#" * level + " "
    start = None
    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped.startswith(prefix) and heading_text in stripped:
            start = i + 1
            break
    if start is None:
        return ""
    body: list[str] = []
    for line in lines[start:]:
        match = _HEADING_RE.match(line.strip())
        if match and len(match.group(1)) <= level:
            break
        body.append(line)
    return "\n".join(body).strip()


def _merge(template_body: str, generated: str) -> str:
    if template_body:
        return f"{template_body}\n\n{generated}".strip()
    return generated


# ---- 各章节 ----


def _overview(title: str, ctx: WorkflowContext) -> str:
    prefix = f"项目名称：{title}。" if title else ""
    if ctx.background and ctx.background != UNFILLED:
        return f"{prefix}{ctx.background}"
    return f"{prefix}本报告依据项目现有信息，围绕评估范围与评估目标完成风险识别与 FMEA 评价。"


def _method(ctx: WorkflowContext) -> str:
    return "\n".join(
        [
            f"风险识别方法：{ctx.risk_method}。",
            f"评估工具：{ctx.eval_tool}，从严重性(S)、可能性(P)、可测性(D)三个维度评分，分值取 9/6/3/1。",
            "风险优先数 RPN=S×P×D：RPN<27 为极低，27~53 为低，54~107 为中，≥108 为高。",
        ]
    )


def render_risk_table(items: list[ScoredRiskItem]) -> str:
    rows = [
        [str(i), escape_table(item.dimension), escape_table(item.failure_mode), escape_table(item.consequence)]
        for i, item in enumerate(items, start=1)
    ]
    return _table(["序号", "风险维度", "风险点/失效模式", "潜在后果"], rows)


def render_fmea_table(items: list[ScoredRiskItem]) -> str:
    header = ["序号", "风险维度", "失效模式", "后果", "S", "S理由", "P", "P理由", "D", "D理由", "RPN", "等级"]
    rows = [
        [
            str(i),
            escape_table(item.dimension),
            escape_table(item.failure_mode),
            escape_table(item.consequence),
            str(item.s),
            escape_table(item.s_reason),
            str(item.p),
            escape_table(item.p_reason),
            str(item.d),
            escape_table(item.d_reason),
            str(item.rpn),
            item.level,
        ]
        for i, item in enumerate(items, start=1)
    ]
    return _table(header, rows)


def render_action_table(actions: list[ActionPlanEntry], items: list[ScoredRiskItem]) -> str:
    if not any(item.need_actions for item in items):
        return "未识别出需要新增控制措施的中、高风险项。"
    order = {item.risk_id: i for i, item in enumerate(items, start=1)}
    rows = [
        [
            str(order.get(entry.risk_id, "-")),
            action.type,
            escape_table(action.action_text),
            escape_table(action.owner_role),
            escape_table(action.owner_dept),
            action.planned_date,
        ]
        for entry in actions
        for action in entry.actions
    ]
    if not rows:
        return "未生成可执行的控制措施，请复核评分结果。"
    return _table(["序号", "措施类型", "措施内容", "责任角色", "责任部门", "计划完成"], rows)


def _conclusion(items: list[ScoredRiskItem], objective: str) -> str:
    counts = {level: sum(1 for item in items if item.level == level) for level in ("高", "中", "低", "极低")}
    if counts["高"]:
        headline = "存在高风险项，结论为不可接受，须优先落实整改。"
    elif counts["中"]:
        headline = "存在中风险项，结论为有条件可接受，须落实改进措施。"
    else:
        headline = "未识别出中、高风险项，结论为可接受。"
    lines = [headline]
    if objective and objective != UNFILLED:
        lines.append(f"评估目标：{objective}")
    lines.append(
        f"风险等级分布：高 {counts['高']} / 中 {counts['中']} / 低 {counts['低']} / 极低 {counts['极低']}"
    )
    return "\n".join(lines)


def _references(sources: list[SourceText]) -> str:
    named = [s for s in sources if s.filename]
    if not named:
        return "（未提供）"
    return "\n".join(
        f"{i}. [{'SOP' if s.category == 'sop' else '文献'}] {s.filename}"
        for i, s in enumerate(named, start=1)
    )


def render_report_markdown(
    title: str,
    template: str | None,
    ctx: WorkflowContext,
    items: list[ScoredRiskItem],
    actions: list[ActionPlanEntry],
    sources: list[SourceText],
) -> str:
    title = title or "风险评估报告"
    header = template_title(template) or "风险评估报告"
    intro = section_body(template, "4. 风险评估", 2)

    sections = [
        f"# {header}",
        "## 1. 概述\n" + _merge(section_body(template, "1. 概述", 2), _overview(title, ctx)),
        "## 2. 目的\n" + _merge(section_body(template, "2. 目的", 2), ctx.objective),
        "## 3. 范围\n" + _merge(section_body(template, "3. 范围", 2), ctx.scope),
        "## 4. 风险评估" + (f"\n{intro}" if intro else ""),
        "### 4.1 风险识别\n" + _merge(section_body(template, "4.1 风险识别", 3), render_risk_table(items)),
        "### 4.2 评估方法\n" + _merge(section_body(template, "4.2 评估方法", 3), _method(ctx)),
        "### 4.3 风险评价（FMEA 表）\n"
        + _merge(section_body(template, "4.3 风险评价", 3), render_fmea_table(items)),
        "## 5. 控制措施\n"
        + _merge(section_body(template, "控制措施", 2), render_action_table(actions, items)),
        "## 6. 风险评估结论\n"
        + _merge(section_body(template, "6. 风险评估结论", 2), _conclusion(items, ctx.objective)),
        "## 7. 再评估\n"
        + _merge(
            section_body(template, "7. 再评估", 2),
            "控制措施实施完成后 3~6 个月内进行复核，重新评价风险等级与剩余风险。",
        ),
        "## 8. 参考文件\n" + _merge(section_body(template, "8. 参考文件", 2), _references(sources)),
    ]
    return "\n\n".join(sections) + "\n"
