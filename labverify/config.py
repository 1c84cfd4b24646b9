"""
Application configuration loaded from environment variables (prefix ``LABVERIFY_``)
or a ``.env`` file.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LABVERIFY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = Field(default="labverify", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    log_level: str = Field(default="INFO", description="Root log level")

    database_url: str = Field(default="sqlite:///./labverify.db", description="SQLAlchemy database URL")

    # QC statistics
    qc_window_size: int = Field(default=20, ge=2, description="Rolling window for QC statistics")
    qc_min_points_for_limits: int = Field(
        default=20, ge=2,
        description="History points needed before computed limits replace target mean/SD",
    )

    # Escalation
    critical_ack_timeout_minutes: int = Field(
        default=15, description="Minutes before an unacknowledged critical value escalates"
    )
    default_tat_minutes: int = Field(default=60, description="Default turnaround time target")
    notification_workers: int = Field(default=4, ge=1, description="Threads dispatching notifications")
    notification_dedup_hours: int = Field(
        default=24, ge=1, description="Hours a notification key suppresses repeats of the same intent"
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
