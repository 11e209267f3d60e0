"""报告引擎异常体系。

致命错误（模型输出非法、结构校验失败、后端 HTTP 错误）会中止整个工作流；
EmbeddingError 在检索层被捕获并降级为关键词检索；Cancelled 是独立的终止状态。
"""

from __future__ import annotations

__all__ = [
    "ReportEngineError",
    "InvalidModelOutput",
    "SchemaValidationError",
    "EmbeddingError",
    "BackendHttpError",
    "Cancelled",
]


class ReportEngineError(RuntimeError):
    """引擎内所有可预期失败的基类。"""


class InvalidModelOutput(ReportEngineError):
    """模型返回为空、JSON 无法解析或顶层结构不符。"""


class SchemaValidationError(ReportEngineError):
    """阶段输出未通过字段集合/枚举/交叉引用校验。"""

    def __init__(
        self,
        message: str,
        *,
        stage: str | None = None,
        record_index: int | None = None,
        field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.record_index = record_index
        self.field = field


class EmbeddingError(ReportEngineError):
    """向量为空、维度不一致或返回数量与请求不符。"""


class BackendHttpError(ReportEngineError):
    """模型后端返回非 2xx，或网络/超时失败（status=0）。"""

    def __init__(self, status: int, body: str) -> None:
        if status:
            message = f"模型请求失败: {status} {body}"
        else:
            message = f"模型请求失败: {body}"
        super().__init__(message)
        self.status = status
        self.body = body


class Cancelled(ReportEngineError):
    """观察到协作式取消信号。"""

    def __init__(self, reason: str = "已取消") -> None:
        super().__init__(reason)
        self.reason = reason
