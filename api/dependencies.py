"""依赖注入：初始化并管理进程级共享组件。

进程内共享的只有配置、HTTP 连接池与 embedding 缓存；
工作流按每次请求的模型配置单独装配，运行之间不保留任何状态。
"""

from __future__ import annotations

import logging

import httpx

from cache.embedding_cache import InMemoryEmbeddingCache, RedisEmbeddingCache, build_embedding_cache
from config.settings import Settings
from generation.mock_client import MockModelClient
from models.schemas import ModelConfig, ModelContext
from workflow.orchestrator import ReportWorkflow, build_report_workflow

logger = logging.getLogger(__name__)


class Components:
    """所有共享组件的容器。"""

    def __init__(self, settings: Settings | None = None, http_client: httpx.AsyncClient | None = None):
        self.settings = settings or Settings()
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                self.settings.http_read_timeout, connect=self.settings.http_connect_timeout
            )
        )
        self.embedding_cache = build_embedding_cache(self.settings)
        self.mock_client = None
        if self.settings.llm_provider == "mock":
            self.mock_client = MockModelClient()
            logger.info("[Init] LLM Provider: Mock")
        else:
            logger.info("[Init] LLM Provider: OpenAI 兼容接口 (%s)", self.settings.llm_model)

    def default_models(self) -> ModelContext:
        """请求未携带模型配置时使用 Settings 中的默认后端。"""
        s = self.settings
        embedding = None
        if s.embedding_api_key:
            embedding = ModelConfig(
                base_url=s.embedding_base_url, api_key=s.embedding_api_key, model=s.embedding_model
            )
        return ModelContext(
            llm=ModelConfig(
                base_url=s.llm_base_url,
                api_key=s.llm_api_key,
                model=s.llm_model,
                temperature=s.llm_temperature,
            ),
            embedding=embedding,
        )

    def workflow_for(self, models: ModelContext | None) -> ReportWorkflow:
        return build_report_workflow(
            self.settings,
            models or self.default_models(),
            self.http_client,
            self.embedding_cache,
            model_client=self.mock_client,
        )


_components: Components | None = None


def init_components() -> Components:
    """初始化共享组件；Redis 不可用时退回内存缓存。"""
    global _components
    _components = Components()

    if isinstance(_components.embedding_cache, RedisEmbeddingCache):
        if not _try_connect("Redis", _components.embedding_cache.connect):
            _components.embedding_cache = InMemoryEmbeddingCache(
                max_entries=_components.settings.embedding_cache_max_entries
            )

    logger.info("[Init] 所有组件初始化完毕")
    return _components


def _try_connect(name: str, connect_fn) -> bool:
    """尝试连接，失败只记录警告不阻塞。"""
    try:
        connect_fn()
        logger.info("[Init] %s 连接成功", name)
        return True
    except Exception as e:
        logger.warning("[Init] %s 连接失败（将使用降级模式）: %s", name, e)
        return False


def get_components() -> Components:
    """获取全局组件实例。"""
    global _components
    if _components is None:
        _components = init_components()
    return _components


async def shutdown_components() -> None:
    """关闭 HTTP 连接池。"""
    global _components
    if _components:
        try:
            await _components.http_client.aclose()
        except Exception as e:
            logger.warning("[Shutdown] HTTP 连接池关闭失败: %s", e)
        _components = None
        logger.info("[Shutdown] 所有连接已关闭")
