"""Environment settings (secrets and infrastructure), loaded from env or .env."""

from datetime import datetime
from functools import lru_cache
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-level settings. Engine tunables live in ``Config`` instead."""

    model_config = SettingsConfigDict(
        env_prefix="BACKUPCTL_",
        env_file=".env",
        extra="ignore",
    )

    data_dir: str = ".backupctl"
    encryption_key: str = ""
    timezone: str = "UTC"

    smtp_host: str = ""  # empty disables notifications
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_tls: bool = True
    smtp_from: str = "noreply@proxmox-panel.local"

    http_timeout: float = 30.0

    log_level: str = "INFO"
    log_file: str = ""

    def clock(self) -> Callable[[], datetime]:
        """Wall clock in the configured timezone; daily/weekly triggers use its wall time."""
        tz = ZoneInfo(self.timezone)
        return lambda: datetime.now(tz)


@lru_cache
def get_settings() -> Settings:
    return Settings()
