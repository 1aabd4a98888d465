"""Configuration management for matchdesk.

Uses pydantic-settings to load configuration from environment variables.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_env_file() -> Path | None:
    """Search for .env file in common locations."""
    cwd = Path.cwd()
    check_dir = cwd
    for _ in range(5):
        if (check_dir / ".env").exists():
            return check_dir / ".env"
        parent = check_dir.parent
        if parent == check_dir:
            break
        check_dir = parent

    # backend/src/matchdesk/config.py -> project root
    project_root = Path(__file__).resolve().parent.parent.parent.parent
    if (project_root / ".env").exists():
        return project_root / ".env"

    return None


_env_file = _find_env_file()


class Settings(BaseSettings):
    """Review controller settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(_env_file) if _env_file else ".env",
        env_file_encoding="utf-8",
        env_prefix="MATCHDESK_",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================
    # Environment
    # =========================
    environment: Literal["development", "staging", "production"] = "development"

    # =========================
    # Matching backend
    # =========================
    api_base_url: str = "http://localhost:8080"
    api_token: str = Field(default="", repr=False)
    request_timeout: float = Field(default=30.0, gt=0)
    max_records_fetch: int = Field(
        default=10000, ge=1, description="Upper bound for a full record set fetch"
    )

    # =========================
    # Polling
    # =========================
    poll_interval: float = Field(default=2.0, gt=0, description="Seconds between poll ticks")
    stuck_reconcile_delay: float = Field(
        default=1.0, ge=0, description="Per-item stagger for stuck task reconciliation"
    )

    # =========================
    # Review workflow
    # =========================
    search_debounce: float = Field(default=0.8, ge=0, description="Search debounce in seconds")
    page_size: int = Field(default=20, ge=1, le=500)
    auto_advance: bool = True
    batch_chunk_size: int = Field(
        default=100, ge=1, description="Maximum ids per batch request"
    )
    batch_chunk_pause: float = Field(default=0.3, ge=0)

    # =========================
    # Logging
    # =========================
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "text"

    @property
    def api_root(self) -> str:
        """Base URL including the API prefix."""
        return f"{self.api_base_url.rstrip('/')}/api"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
