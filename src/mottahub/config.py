from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    karbon_access_key: str = ""
    karbon_bearer_token: str = ""
    karbon_base_url: str = "https://api.karbonhq.com/v3"
    karbon_webhook_secret: str = ""
    karbon_timeout_seconds: float = 30.0
    karbon_max_pages: int = 100
    database_url: str = "sqlite:///./mottahub.db"
    upsert_batch_size: int = 50
    nested_fetch_batch_size: int = 10
    nested_fetch_delay_seconds: float = 0.1
    karbon_sync_interval_minutes: int = 15
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
