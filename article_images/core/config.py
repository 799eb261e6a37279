from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


class Settings(BaseSettings):
    app_name: str = "article-imagery-api"
    environment: str = "dev"
    log_level: str = "INFO"
    api_key: str = "local-image-key"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    min_image_bytes: int = 5_000
    max_image_bytes: int = 10_000_000
    exact_duplicate_threshold: int = 1
    near_duplicate_threshold: int = 6
    dedup_scan_limit: int = 1000
    disabled_strategies: list[str] = []
    result_cache_ttl_seconds: float = 3600.0
    page_cache_ttl_seconds: float = 1800.0
    result_cache_max_entries: int = 10_000
    page_cache_max_entries: int = 500
    max_page_bytes: int = 5_000_000
    max_range_bytes: int = 65_536
    article_timeout_seconds: float = 30.0
    strategy_timeout_seconds: float = 5.0
    request_timeout_seconds: float = 5.0
    max_redirects: int = 5
    retry_attempts: int = 2
    retry_backoff_base_seconds: float = 1.0
    retry_backoff_max_seconds: float = 8.0
    resolve_dns: bool = True
    min_composition_score: int = 50
    unknown_composition_score: int = 50
    render_fallback_enabled: bool = False
    render_timeout_seconds: float = 20.0
    vision_endpoint: str | None = None
    vision_api_key: str | None = None
    vision_timeout_seconds: float = 10.0
    image_identity_overrides_json: str | None = None
    user_agent: str = DEFAULT_USER_AGENT
    job_queue_url: str | None = None
    module_id: str = "local-image-worker"
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    claim_lease_seconds: int = 120
    otel_enabled: bool = True
    otel_service_name: str = "article-imagery"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="AIMG_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
