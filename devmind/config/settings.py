"""
Configuration management using Pydantic Settings.
Follows 12-factor app methodology with environment-based configuration.

Every variable is read with the ``DEVMIND_`` prefix, e.g.
``DEVMIND_STATE_DIR=.devmind DEVMIND_SIMULATED_MODE=false``.
"""
import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with validation and environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="DEVMIND_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    environment: str = Field(default="development", description="Environment: development, staging, production, test")
    debug: bool = Field(default=False, description="Debug mode: forces DEBUG logging and FastAPI debug responses")

    # State
    state_dir: str = Field(default=".devmind", description="Directory holding journal.jsonl and checkpoints/")
    checkpoint_every: int = Field(default=25, ge=0, description="Checkpoint after this many transitions (0 disables)")
    storage_retry_attempts: int = Field(default=5, ge=0, description="Retries for optimistic write conflicts")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: json or text")
    log_file: Optional[str] = Field(default=None, description="Log file path")

    # Scheduling
    tick_interval: float = Field(default=0.05, gt=0, description="Seconds between scheduler ticks in the run loop")
    age_threshold_seconds: float = Field(default=30.0, ge=0, description="Queue age after which a task is promoted one tier per tick")
    default_max_attempts: int = Field(default=3, ge=1, description="Attempts before a failing task is terminal")

    # Agents
    default_concurrency_limit: int = Field(default=2, ge=1, description="Concurrent invocations per agent")
    default_capability_timeout: float = Field(default=300.0, gt=0, description="Worker timeout in seconds")
    capability_timeouts: Dict[str, float] = Field(default_factory=dict, description="Per-capability timeout overrides")
    capability_limits: Dict[str, int] = Field(default_factory=dict, description="Per-capability concurrency limits")
    cancel_grace_period: float = Field(default=5.0, ge=0, description="Seconds a worker gets to honour cancellation")
    worker_plugins: Dict[str, str] = Field(default_factory=dict, description="capability -> 'module:attr' worker factory")
    simulated_mode: bool = Field(default=True, description="Register simulated workers for the template capabilities")

    # Message bus
    bus_queue_size: int = Field(default=256, ge=1, description="Bounded queue size per subscriber")
    bus_max_redeliveries: int = Field(default=3, ge=0, description="Redeliveries before a message is dead-lettered")
    bus_history_size: int = Field(default=500, ge=0, description="Messages kept per topic for diagnostics")

    # Retry backoff
    retry_base_delay: float = Field(default=1.0, ge=0, description="Backoff delay for the first retry in seconds")
    retry_max_delay: float = Field(default=60.0, ge=0, description="Backoff cap in seconds")
    retry_multiplier: float = Field(default=2.0, ge=1.0, description="Backoff growth factor")
    retry_jitter: bool = Field(default=True, description="Add random jitter to backoff delays")

    # API
    api_host: str = Field(default="127.0.0.1", description="Host for `devmind serve`")
    api_port: int = Field(default=8000, ge=1024, le=65535, description="Port for `devmind serve`")
    cors_origins: List[str] = Field(
        default=["http://localhost:8000", "http://127.0.0.1:8000"],
        description="Allowed CORS origins"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is one of allowed values."""
        allowed = ["development", "staging", "production", "test"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"Environment must be one of {allowed}")
        return v_lower

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        allowed = ["json", "text"]
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"Log format must be one of {allowed}")
        return v_lower

    @field_validator("worker_plugins")
    @classmethod
    def validate_worker_plugins(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Plugin targets must look like 'package.module:attribute'."""
        for capability, target in v.items():
            module, _, attr = target.partition(":")
            if not module or not attr:
                raise ValueError(
                    f"worker_plugins[{capability!r}] must be 'module:attr', got {target!r}"
                )
        return v

    @property
    def checkpoint_dir(self) -> Path:
        return Path(self.state_dir) / "checkpoints"

    @property
    def journal_path(self) -> Path:
        return Path(self.state_dir) / "journal.jsonl"

    def get_log_level(self) -> int:
        """Get logging level as integer. Debug mode always logs at DEBUG."""
        if self.debug:
            return logging.DEBUG
        return getattr(logging, self.log_level)

    def ensure_directories(self) -> None:
        """Create required directories if they don't exist."""
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings
    """
    return Settings()
