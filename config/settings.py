from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """报告生成引擎全局配置，所有参数均可通过环境变量覆盖。"""

    # ---- 默认文本模型（OpenAI 兼容接口）----
    llm_provider: str = "openai"  # "openai" | "mock"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: str = ""
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.2

    # ---- 默认 Embedding 模型（api_key 为空即视为未配置）----
    embedding_base_url: str = "https://api.openai.com/v1"
    embedding_api_key: str = ""
    embedding_model: str = "text-embedding-3-small"

    # ---- HTTP ----
    http_connect_timeout: float = 10.0
    http_read_timeout: float = 120.0

    # ---- Chunk 参数：关键词检索（低召回、低成本）----
    lexical_chunk_max_len: int = 800
    lexical_chunk_overlap: int = 0
    lexical_chunk_max_chunks: int = 48

    # ---- Chunk 参数：向量检索（高召回）----
    embedding_chunk_max_len: int = 800
    embedding_chunk_overlap: int = 200
    embedding_chunk_max_chunks: int = 240

    # ---- 混合检索打分 ----
    evidence_top_k: int = 8
    embedding_weight: float = 0.82
    keyword_weight: float = 0.18
    phrase_boost_step: float = 0.12
    phrase_boost_cap: float = 0.36
    score_cap: float = 1.2
    prefilter_ceiling: int = 240
    prefilter_multiplier: int = 24
    max_keywords: int = 32

    # ---- Embedding 缓存 ----
    embedding_batch_size: int = 10
    embedding_cache_backend: str = "memory"  # "memory" | "redis"
    embedding_cache_max_entries: int = 20000
    embedding_cache_ttl_seconds: int = 7 * 86400
    redis_url: str = "redis://localhost:6379/0"

    # ---- 工作流 ----
    report_timezone: str = "Asia/Shanghai"
    stage_pacing_seconds: float = 0.0
    run_timeout_seconds: float = 900.0
    render_with_model: bool = True
    draft_interval_chars: int = 240
    evidence_token_budget: int = 24000

    model_config = {"env_prefix": "QRM_"}
