"""Application configuration via Pydantic BaseSettings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./cvesync.db",
        description="Async SQLAlchemy URL of the embedded vulnerability store",
    )
    db_recycle_after: int = Field(
        default=500,
        description="Storage operations served before the connection is re-established",
    )

    # Application
    app_host: str = Field(default="127.0.0.1")
    app_port: int = Field(default=8000)
    app_debug: bool = Field(default=False)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )

    # CORS
    cors_allowed_origins: list[str] = Field(
        default=["*"],
        description="Allowed CORS origins (configure via CORS_ALLOWED_ORIGINS env var)",
    )

    # Upstream corpus
    data_dir: Path = Field(default=Path("data"), description="Parent directory of working copies")
    corpus_repo_url: str = Field(default="https://github.com/CVEProject/cvelistV5")
    corpus_dir_name: str = Field(default="cvelistV5")
    git_binary: str = Field(default="git")
    git_clone_timeout: int = Field(default=600, description="Seconds allowed for the initial clone")
    git_pull_timeout: int = Field(default=300, description="Seconds allowed for a pull")
    git_command_timeout: int = Field(default=60, description="Seconds allowed for other git calls")

    # Ingestion jobs
    ingest_batch_size: int = Field(default=500, description="Records committed per transaction")
    heartbeat_interval_seconds: float = Field(default=5.0)
    stuck_job_threshold_minutes: int = Field(default=10)
    stuck_job_check_interval_seconds: int = Field(default=60)
    jobs_list_limit: int = Field(default=50)

    @computed_field
    @property
    def corpus_path(self) -> Path:
        """Local working copy of the upstream corpus."""
        return self.data_dir / self.corpus_dir_name

    @field_validator("ingest_batch_size", "db_recycle_after")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
