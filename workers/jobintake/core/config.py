from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 5
    http_timeout_seconds: float = 15.0
    gmail_client_id: str | None = None
    gmail_client_secret: str | None = None
    gmail_query: str = "label:JobOps newer_than:14d"
    gmail_max_per_run: int = 25
    max_jobs_per_email: int = 3
    max_jobs_per_poll: int = 10
    token_enc_key: str | None = None
    rss_feeds: str = ""
    rss_max_per_run: int = 25
    rss_allow_keywords: str = ""
    rss_block_keywords: str = ""
    rss_max_resolve_requests: int = 120
    rss_resolve_timeout_ms: int = 3500
    ingest_api_base_url: str = "http://localhost:8000"
    ingest_api_key: str | None = None
    poll_interval_seconds: float = 900.0
    max_backoff_seconds: float = 3600.0
    otel_enabled: bool = True
    otel_service_name: str = "jobintake-workers"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="JOBINTAKE_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
