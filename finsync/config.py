from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    database_url: str = "sqlite:///./finsync.db"
    secret_key: str = "change-me"
    algorithm: str = "HS256"
    environment: str = "production"
    log_level: str = "INFO"

    # Credential vault
    encryption_key: Optional[str] = None

    # Scheduled sweep
    cron_secret: Optional[str] = None
    stale_threshold_hours: float = 6
    sweep_budget_seconds: float = 300
    # A syncing account untouched this long is treated as left behind by a killed sync
    abandoned_sync_seconds: float = 960

    # Browser sessions: local | remote_cloud | containerized
    browser_mode: str = "containerized"
    browserless_url: str = "wss://chrome.browserless.io"
    browserless_api_key: Optional[str] = None
    chrome_executable_path: str = "/usr/bin/google-chrome"
    max_browser_sessions: int = 1
    browser_sites_file: Optional[str] = None
    browser_dedup_namespace: str = "israel"
    browser_provider_timeout_margin_seconds: float = 60

    # Token provider (Plaid-compatible API)
    plaid_client_id: str = ""
    plaid_secret: str = ""
    plaid_env: str = "sandbox"
    token_provider_timeout_seconds: float = 120

    initial_sync_days: int = 365

    # Cache
    redis_url: Optional[str] = None
    cache_ttl_seconds: int = 900

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()
