from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./coldcase.db"

    openai_api_key: str | None = None
    openai_model: str = "gpt-4.1-mini"

    documents_root: str = "."

    analysis_batch_size: int = 25
    extract_batch_size: int = 10
    extract_concurrency: int = 5
    extract_timeout_s: float = 60.0

    gateway_timeout_s: float = 120.0
    gateway_max_retries: int = 2
    gateway_retry_delay_s: float = 2.0

    stuck_threshold_hours: int = 2
    poll_interval_s: float = 2.0

settings = Settings()
