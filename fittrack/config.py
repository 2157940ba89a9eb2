"""Configuration settings for fittrack sync."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from fittrack.utils import get_fittrack_home


class SyncSettings(BaseSettings):
    """Sync settings loaded from the environment (``FITTRACK_*``)."""

    model_config = SettingsConfigDict(
        env_prefix="FITTRACK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    data_dir: Path | None = None
    db_path: Path | None = None

    # Remote backend
    backend_url: str | None = None
    auth_token: str | None = None
    account_id: str | None = None
    request_timeout: float = 10.0

    # Sync behaviour
    incremental_pull: bool = False  # Pass the last-synced-at marker as `since`
    retry_base_delay: float = 5.0  # seconds
    retry_max_delay: float = 300.0  # seconds
    max_retry_attempts: int = 5

    # Logging
    log_level: str = "INFO"

    def resolved_data_dir(self) -> Path:
        return self.data_dir or get_fittrack_home()

    def resolved_db_path(self) -> Path:
        return self.db_path or self.resolved_data_dir() / "fittrack.db"

    def retry_delay(self, attempt: int) -> float:
        """Exponential backoff delay for the given retry attempt (0-based)."""
        return min(self.retry_base_delay * (2**attempt), self.retry_max_delay)


@lru_cache
def get_settings() -> SyncSettings:
    """Get cached settings instance."""
    return SyncSettings()
