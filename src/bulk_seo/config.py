from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_version: str = "0.3.0"
    log_level: str = "INFO"
    database_path: str = "data/bulk_seo.db"

    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "google/gemini-2.5-flash-lite"
    provider_timeout_sec: int = 45
    provider_max_attempts: int = 3
    generate_max_tokens: int = 1200
    generate_temperature: float = 0.4

    # Shared by every shop: the provider quota is account-wide.
    ai_queue_concurrency: int = 3
    ai_queue_bulk_min_share: float = 0.2
    ai_queue_interval_cap: int = 10
    ai_queue_interval_sec: float = 1.0
    ai_queue_timeout_sec: float = 30.0
    ai_queue_bulk_timeout_sec: float = 60.0

    job_unit_concurrency: int = 2
    job_default_unit_sec: float = 1.3
    job_stale_sec: int = 900
    reservation_timeout_sec: int = 3600
    token_safety_margin: float = 0.10
    default_plan: str = "starter"

    platform_api_version: str = "2025-01"
    platform_timeout_sec: int = 30

    batch_requests_per_minute: int = 6
    rate_state_ttl_sec: int = 600

    notify_webhook_url: str = ""
    notify_min_duration_sec: int = 120
    background_max_tasks: int = 4

    admin_api_token: str = ""


settings = Settings()
