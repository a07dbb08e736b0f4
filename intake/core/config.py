from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    user_agent: str = "candidate-intake/0.1"

    max_retries: int = Field(default=3, ge=0)
    initial_delay_ms: float = Field(default=1000.0, ge=0)
    max_delay_ms: float = Field(default=10000.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    per_request_timeout_ms: float = Field(default=30000.0, gt=0)
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_cooldown_ms: float = Field(default=60000.0, ge=0)
    max_concurrency: int = Field(default=8, ge=1)

    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    dedup_window_days: int = Field(default=30, ge=0)
    corpus_timeout_ms: float = Field(default=10000.0, gt=0)

    min_qualification_score: int = Field(default=40, ge=0, le=100)
    scoring_rules_json: str | None = None
    reject_placeholder_titles: bool = True

    sink_timeout_ms: float = Field(default=10000.0, gt=0)
    run_deadline_ms: float = Field(default=300000.0, gt=0)

    otel_enabled: bool = False
    otel_service_name: str = "candidate-intake"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="INTAKE_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
