"""评估目标策略：从自由文本的评估目标中推断是否强制开启/关闭控制措施。

这是一条启发式规则，不是可靠的语义理解：短语覆盖有限，既可能漏判也可能误判。
独立成函数，便于将来替换为分类模型而不改动编排器。
策略只在评分完成后作用于 need_actions，从不修改 S/P/D、RPN 或等级。
"""

from __future__ import annotations

import re
from typing import Literal

from models.schemas import ScoredRiskItem

ObjectivePolicy = Literal["force_none", "force_all", "none"]

_NEGATION = r"(?:无需|不需要|不必|无须|不用|没有必要)"
_ACTION_WORD = r"(?:采取|新增|增加|追加|制定|实施)?\s*(?:任何)?\s*(?:控制|改进|纠正|预防|整改)?\s*(?:措施|行动|CAPA)"

_FORCE_NONE_PATTERNS = [
    re.compile(_NEGATION + r"\s*" + _ACTION_WORD, re.IGNORECASE),
    re.compile(r"风险(?:均|整体|总体)?(?:已)?(?:可控|可接受)"),
    re.compile(r"维持现状|保持现有控制"),
]

# "是否需要采取措施" 这类疑问子句不表态，匹配前剔除至下一个标点
_QUESTION_CLAUSE_RE = re.compile(r"是否[^，。；！？,.;!?\n]*")

_FORCE_ALL_PATTERNS = [
    re.compile(r"(?:必须|需要|需|应当|应)\s*" + _ACTION_WORD, re.IGNORECASE),
    re.compile(r"(?:全面|立即|限期)?整改"),
    re.compile(r"所有风险(?:项)?(?:都|均)?(?:需要|须|应)"),
]


def infer_objective_policy(objective: str | None) -> ObjectivePolicy:
    """否定表述优先判定（"无需采取措施"同时包含"采取措施"）。"""
    text = _QUESTION_CLAUSE_RE.sub("", (objective or "").strip())
    if not text:
        return "none"
    if any(p.search(text) for p in _FORCE_NONE_PATTERNS):
        return "force_none"
    if any(p.search(text) for p in _FORCE_ALL_PATTERNS):
        return "force_all"
    return "none"


def apply_objective_policy(
    items: list[ScoredRiskItem], policy: ObjectivePolicy
) -> list[ScoredRiskItem]:
    """返回应用策略后的新列表；没有条目时不做任何强制。"""
    if not items or policy == "none":
        return list(items)
    forced = policy == "force_all"
    return [item.model_copy(update={"need_actions": forced}) for item in items]
