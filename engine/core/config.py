"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Sync engine settings driven entirely by environment variables (SYNC_*)."""

    # Cache Configuration
    cache_ttl: float = Field(default=300.0, gt=0)  # 5 minutes
    cache_sweep_interval: float = Field(default=300.0, ge=1)

    # Write Coalescer
    batch_max_size: int = Field(default=50, ge=1, le=1000)
    batch_delay: float = Field(default=1.0, ge=0)
    batch_retry_delay: float = Field(default=5.0, ge=0)
    batch_max_redrives: int = Field(default=3, ge=0, le=10)

    # Offline Queue
    queue_max_retries: int = Field(default=3, ge=1, le=20)
    queue_drain_interval: float = Field(default=30.0, ge=1)

    # Last processed event marker (key/value blob)
    marker_path: str = Field(default=".sync/marker.json")
    marker_write_delay: float = Field(default=2.0, ge=0)

    # Remote Store
    remote_backend: Literal["memory", "postgrest"] = Field(default="memory")
    remote_url: Optional[str] = Field(default=None)
    remote_api_key: Optional[str] = Field(default=None)
    remote_timeout: float = Field(default=10.0, ge=1, le=120)
    realtime_url: Optional[str] = Field(default=None)

    # Read retries (progressive delays)
    read_max_retries: int = Field(default=3, ge=0, le=10)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("remote_url", "realtime_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        """Normalize base URLs so paths can be appended verbatim."""
        if v:
            return v.rstrip("/")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def marker_file(self) -> Path:
        return Path(self.marker_path)

    @property
    def is_remote_configured(self) -> bool:
        """Check if an HTTP remote store can be built from these settings."""
        return bool(self.remote_url and self.remote_api_key)

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="none",
    )
