"""Configuration management using Pydantic Settings."""

from pathlib import Path
from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CSVCOLLAB_",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    data_dir: Path = Field(Path(".cache"))
    database_name: str = Field("csvcollab.db", description="SQLite file inside data_dir")

    # Logging
    log_level: str = Field("INFO")
    log_format: str = Field("json", pattern="^(json|text)$")

    # Presence
    presence_max_avatars: int = Field(5, ge=1, description="Avatars shown before collapsing into a count")

    # Sync engine
    refresh_debounce_ms: int = Field(
        0,
        ge=0,
        description="Coalesce re-fetch triggers within this window; 0 refreshes on every trigger",
    )
    resubscribe_attempts: int = Field(3, ge=1, le=10)
    resubscribe_wait: float = Field(0.5, ge=0)

    # Import / display
    import_batch_size: int = Field(1000, ge=1)
    display_row_limit: int = Field(1000, ge=1)

    # Users
    user_colors: List[str] = Field(
        default_factory=lambda: [
            "#3B82F6",
            "#10B981",
            "#F59E0B",
            "#EF4444",
            "#8B5CF6",
            "#EC4899",
            "#14B8A6",
            "#F97316",
        ]
    )
    default_user_color: str = Field("#9CA3AF")

    # Web server
    api_host: str = Field("127.0.0.1")
    api_port: int = Field(8000, ge=1, le=65535)

    @field_validator("data_dir")
    @classmethod
    def _create_dirs(cls, v: Path) -> Path:
        v.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def database_path(self) -> Path:
        return self.data_dir / self.database_name


# Instantiate global settings
settings = Settings()
