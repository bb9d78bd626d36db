from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    revolut_api_base_url: str = "https://sandbox-oba.revolut.com"
    revolut_client_id: str = ""
    revolut_client_secret: str = ""
    revolut_redirect_uri: Optional[str] = None  # falls back to {request base}/revolut/callback
    revolut_webhook_secret: Optional[str] = None
    database_url: str = "sqlite:///./budget.db"
    request_timeout_seconds: float = 30.0
    transaction_lookback_days: int = 90
    revolut_sync_hour: int = 3

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
