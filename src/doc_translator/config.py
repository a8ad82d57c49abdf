import logging

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    app_version: str = "0.3.0"
    log_level: str = "INFO"

    database_path: str = "data/translator.db"
    upload_dir: str = "uploads"
    output_dir: str = "outputs"
    max_file_mb: int = 50

    deepl_api_key: str = ""
    deepl_base_url: str = "https://api-free.deepl.com/v2"
    translate_timeout_sec: int = 60
    document_poll_interval_sec: float = 2.0
    document_poll_max_attempts: int = 150

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    frontend_url: str = "http://localhost:5173"

    redis_url: str = "redis://localhost:6379/0"
    queue_attempts: int = 3
    queue_backoff_ms: int = 2000
    queue_job_timeout_sec: int = 1800
    worker_concurrency: int = 3

    credits_low_threshold: int = 2

    admin_api_token: str = ""


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
