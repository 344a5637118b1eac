"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Encryption (Fernet key for connector credentials and OAuth tokens)
    encryption_key: str = ""

    # Anthropic (primary)
    anthropic_api_key: str = ""
    anthropic_model_fast: str = "claude-haiku-4-5-20251001"
    anthropic_model_smart: str = "claude-sonnet-4-5-20250929"
    anthropic_max_tokens_fast: int = 1000
    anthropic_max_tokens_smart: int = 4000
    anthropic_timeout_seconds: int = 120

    # OpenAI (fallback + moderation endpoint)
    openai_api_key: str = ""
    openai_base_url: str = ""
    openai_model_fast: str = "gpt-4o-mini"
    openai_model_smart: str = "gpt-4o"
    openai_max_tokens_fast: int = 1000
    openai_max_tokens_smart: int = 4000
    openai_timeout_seconds: int = 120
    openai_moderation_model: str = "omni-moderation-latest"
    ai_daily_budget_usd: float = 25.0

    # Trend sources
    serpapi_api_key: str = ""

    # Social OAuth apps
    twitter_client_id: str = ""
    twitter_client_secret: str = ""
    linkedin_client_id: str = ""
    linkedin_client_secret: str = ""
    facebook_app_id: str = ""
    facebook_app_secret: str = ""

    # Sentry
    sentry_dsn: str = ""

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    # Pipeline tunables
    moderation_max_regenerations: int = 2
    moderation_severe_violation_types: str = "toxicity,brand_safety"  # Comma-separated
    default_auto_approve_threshold: float = 0.8
    default_variant_platforms: str = "website,facebook,twitter,linkedin"
    default_publish_platforms: str = "facebook,twitter,linkedin"
    publish_retry_horizon_hours: int = 24
    metrics_fetch_delay_seconds: int = 3600
    rate_limit_requeue_seconds: int = 900
    token_refresh_window_days: int = 7

    # Worker toggles
    worker_task_processor: bool = True
    worker_pipeline_sweeper: bool = True

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def severe_violation_types(self) -> frozenset[str]:
        return frozenset(
            t.strip() for t in self.moderation_severe_violation_types.split(",") if t.strip()
        )

    @property
    def variant_platforms(self) -> list[str]:
        return [p.strip() for p in self.default_variant_platforms.split(",") if p.strip()]

    @property
    def publish_platforms(self) -> list[str]:
        return [p.strip() for p in self.default_publish_platforms.split(",") if p.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
