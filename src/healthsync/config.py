from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Identity provider (Microsoft Entra ID via MSAL)
    microsoft_client_id: str = ""
    microsoft_authority: str = "https://login.microsoftonline.com/common"
    microsoft_scopes: List[str] = ["User.Read", "Files.ReadWrite"]
    redirect_uri: str = "http://localhost:8000/auth/callback"
    login_mode: str = "interactive"  # "interactive" (local browser) or "device_code"
    interactive_login_timeout_seconds: int = 60

    # Remote drive
    graph_base_url: str = "https://graph.microsoft.com/v1.0"
    app_folder: str = "Apps/HealthCalendar"
    http_timeout_seconds: float = 30.0

    # Local persistence
    database_url: str = "sqlite:///./healthsync.db"
    local_db_name: str = "HealthCalendarDB"
    state_dir: Path = Path.home() / ".healthsync"

    # Session lifecycle
    session_ttl_hours: int = 24
    token_renewal_margin_minutes: int = 5
    token_retry_delay_seconds: float = 0.0  # set >0 where silent renewal needs settling time
    token_max_retries: int = 3

    # Attachment URL resolution
    url_cache_ttl_seconds: int = 300
    url_cache_sweep_seconds: int = 120
    max_concurrent_resolutions: int = 3

    # Sync
    app_version: str = "1.0.0"
    sync_tables: List[str] = [
        "users",
        "myRecords",
        "stoolRecords",
        "mealRecords",
        "periodRecords",
    ]
    auto_sync_hour: Optional[int] = None
    default_user_id: str = "default"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
