from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "SmartBundle Ingest"

    # Unset means ingestion runs without persistence or run tracking
    database_url: Optional[str] = None
    database_echo: bool = False

    # Broker: redis_url wins over the discrete host/port/credential settings
    redis_url: Optional[str] = None
    redis_host: str = "127.0.0.1"
    redis_port: int = 6379
    redis_username: Optional[str] = None
    redis_password: Optional[str] = None
    redis_max_retries: int = 3
    redis_connect_timeout: float = 5.0
    redis_health_check_interval: int = 30
    ingest_queue_name: str = "smartbundle:ingest"

    # Path override for config/sources.yml
    sources_config: Optional[str] = None

    log_level: str = "INFO"
    log_json: bool = True

    worker_concurrency: int = 2
    worker_poll_timeout: float = 5.0
    worker_stall_timeout: float = 900.0
    scheduler_enabled: bool = True

    # Outbound requests made by scrapers
    http_timeout: float = 30.0
    http_user_agent: str = "smartbundle-ingest/0.1"


settings = Settings()
