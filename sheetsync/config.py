"""
Configuration management for SheetSync
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "SheetSync Synchronization Engine"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_dir: str = "logs"
    log_to_file: bool = True

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./sheetsync.db"

    # Google OAuth (token refresh only - consent flow lives in the UI)
    google_oauth_client_id: Optional[str] = None
    google_oauth_client_secret: Optional[str] = None
    google_token_uri: str = "https://oauth2.googleapis.com/token"
    token_refresh_margin_minutes: int = 5  # Refresh tokens expiring within this window

    # Google Sheets
    sheets_api_timeout: int = 30  # Seconds per API call
    sheet_fetch_range: str = "A1:Z1000"  # Up to column Z, 1000 rows
    header_scan_rows: int = 20
    date_dayfirst: bool = False  # "01/02/2024" -> Jan 2 unless set
    fetch_max_attempts: int = 3
    fetch_retry_base_delay: float = 2.0

    # Scheduling
    enable_scheduler: bool = True
    default_sync_interval_minutes: int = 60
    max_backoff_minutes: int = 24 * 60
    scheduler_timezone: str = "UTC"

    # Sync history
    sync_history_limit: int = 10

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
