from __future__ import annotations

from typing import Literal, get_args

from pydantic import BaseModel, Field, field_validator

# ---- 枚举 ----

SourceCategory = Literal["sop", "literature"]
DimensionType = Literal["five_factors", "process_flow"]
ScoreValue = Literal[1, 3, 6, 9]
RiskLevel = Literal["极低", "低", "中", "高"]
ActionType = Literal[
    "SOP/规程",
    "培训与资质",
    "设备/系统",
    "监测与报警",
    "数据完整性",
    "双人复核/独立审核",
    "其他",
]

ACTION_TYPES: tuple[str, ...] = get_args(ActionType)
SCORE_VALUES: tuple[int, ...] = get_args(ScoreValue)
FIVE_FACTOR_DIMENSIONS: tuple[str, ...] = ("人员", "设备与设施", "物料", "法规与程序", "环境")


# ---- 模型配置 ----


class ModelConfig(BaseModel):
    """OpenAI 兼容后端的运行时配置。"""

    base_url: str
    api_key: str = ""
    model: str
    temperature: float = 0.2

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.base_url and self.model)


class ModelContext(BaseModel):
    llm: ModelConfig
    embedding: ModelConfig | None = None


# ---- 输入 ----


class SourceText(BaseModel):
    """一份已抽取文本的上传文档（SOP 或文献）。"""

    text: str
    filename: str | None = None
    category: SourceCategory

    model_config = {"frozen": True}


class ProcessStep(BaseModel):
    step_id: str
    step_name: str


class ReportInput(BaseModel):
    """单次报告生成的全部输入，多余字段直接拒绝。"""

    title: str = ""
    scope: str | None = None
    background: str | None = None
    objective: str | None = None
    risk_method: str | None = None
    eval_tool: str | None = None
    template_content: str | None = None
    sop_sources: list[SourceText] = []
    literature_sources: list[SourceText] = []
    process_steps: list[ProcessStep] = []

    model_config = {"extra": "forbid"}

    @property
    def source_files(self) -> list[SourceText]:
        return [s for s in self.sop_sources + self.literature_sources if s.filename]


# ---- 检索 ----


class Chunk(BaseModel):
    content: str
    category: SourceCategory
    filename: str | None = None


class EvidenceChunk(Chunk):
    score: float


class RetrievalMeta(BaseModel):
    used_embedding: bool = False
    sop_text_count: int = 0
    literature_text_count: int = 0
    evidence_chunk_count: int = 0
    degraded: bool = False


class WorkflowContext(BaseModel):
    """一次运行内只构建一次的上下文，构建后不可变。"""

    scope: str
    background: str
    objective: str
    risk_method: str
    eval_tool: str
    template_requirements: str
    evidence_blocks: str
    evidence_chunks: list[EvidenceChunk] = []
    retrieval_meta: RetrievalMeta = Field(default_factory=RetrievalMeta)

    model_config = {"frozen": True}


# ---- 阶段产物 ----


class RiskItem(BaseModel):
    risk_id: str
    dimension_type: DimensionType
    dimension: str
    dimension_id: str | None = None
    failure_mode: str
    consequence: str


class FmeaRow(BaseModel):
    risk_id: str
    s: ScoreValue
    s_reason: str
    p: ScoreValue
    p_reason: str
    d: ScoreValue
    d_reason: str


class ScoredRiskItem(RiskItem):
    s: ScoreValue
    s_reason: str
    p: ScoreValue
    p_reason: str
    d: ScoreValue
    d_reason: str
    rpn: int
    level: RiskLevel
    need_actions: bool


class ControlMeasure(BaseModel):
    """措施生成阶段的产物：每个需要措施的风险项对应若干条措施描述。"""

    risk_id: str
    measures: list[str]


class ActionItem(BaseModel):
    type: ActionType
    action_text: str
    owner_role: str
    owner_dept: str
    planned_date: str


class ActionPlanEntry(BaseModel):
    risk_id: str
    actions: list[ActionItem]


class MappingValidation(BaseModel):
    ok: bool
    issues: list[str] = []


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_payload(cls, payload: dict | None) -> TokenUsage | None:
        """从 OpenAI 响应的 usage 字段提取，缺失字段按 0 处理。"""
        if not isinstance(payload, dict):
            return None
        return cls(
            prompt_tokens=int(payload.get("prompt_tokens") or 0),
            completion_tokens=int(payload.get("completion_tokens") or 0),
            total_tokens=int(payload.get("total_tokens") or 0),
        )

    def add(self, other: TokenUsage | None) -> None:
        """累加用量；None 视为零长度阶段。"""
        if other is None:
            return
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens


# ---- 输出 ----


class ReportJson(BaseModel):
    context: WorkflowContext
    risk_items: list[RiskItem] = []
    fmea_rows: list[FmeaRow] = []
    scored_items: list[ScoredRiskItem] = []
    control_measures: list[ControlMeasure] = []
    actions: list[ActionPlanEntry] = []
    mapping_validation: MappingValidation


class GeneratedReport(BaseModel):
    markdown: str
    report_json: ReportJson = Field(alias="json")
    usage: TokenUsage

    model_config = {"populate_by_name": True}


# ---- 请求 ----


class ReportRequest(BaseModel):
    """报告生成请求；models 缺省时使用 Settings 中的默认后端。"""

    input: ReportInput
    models: ModelContext | None = None

    model_config = {"extra": "forbid"}
