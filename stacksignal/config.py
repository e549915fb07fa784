"""
Pipeline configuration

Settings come from a JSON file (config/classifier-settings.json by default)
validated with pydantic. Secrets never live in the file: the API key is read
from the environment variable named by llm.api_key_env, with .env loaded via
python-dotenv. DATABASE_PATH, when set, overrides database_path.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from stacksignal.exceptions import ConfigError
from stacksignal.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/classifier-settings.json"


class LLMSettings(BaseModel):
    """Classification service connection settings"""

    api_key_env: str = Field(default="OPENAI_API_KEY", min_length=1)
    model: str = Field(default="gpt-5-mini", min_length=1)
    base_url: str | None = Field(None, description="Override for OpenAI-compatible endpoints")
    temperature: float | None = Field(None, ge=0.0, le=2.0)
    timeout_seconds: float = Field(default=30.0, gt=0, le=300)
    max_description_chars: int = Field(default=4000, ge=200)

    @field_validator("api_key_env")
    @classmethod
    def validate_api_key_env(cls, v: str) -> str:
        """Ensure api_key_env is not just whitespace"""
        if not v.strip():
            raise ValueError("api_key_env cannot be empty or whitespace")
        return v.strip()


class RetrySettings(BaseModel):
    """Retry/backoff for transient classification failures"""

    max_retries: int = Field(default=3, ge=0, le=10)
    base_delay_seconds: float = Field(default=2.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    max_delay_seconds: float = Field(default=30.0, ge=0)


class WorkerSettings(BaseModel):
    """Classification worker scheduling and skip-cache policy"""

    batch_size: int = Field(default=10, ge=1, le=100)
    inter_call_delay_seconds: float = Field(default=1.0, ge=0, le=60)
    idle_min_seconds: float = Field(default=5.0, gt=0)
    idle_max_seconds: float = Field(default=30.0, gt=0)
    freshness_days: int = Field(default=90, ge=1)
    cache_refresh_seconds: float = Field(default=300.0, ge=0)

    @model_validator(mode="after")
    def validate_idle_range(self) -> "WorkerSettings":
        if self.idle_max_seconds < self.idle_min_seconds:
            raise ValueError("idle_max_seconds must be >= idle_min_seconds")
        return self


class BudgetSettings(BaseModel):
    """Monthly LLM spend limit"""

    enabled: bool = True
    monthly_limit_usd: float = Field(default=20.0, gt=0)
    pause_when_exceeded: bool = True
    input_cost_per_million: float = Field(default=0.25, ge=0)
    output_cost_per_million: float = Field(default=2.0, ge=0)
    logs_dir: str = "logs"


class PipelineConfig(BaseModel):
    """Top-level pipeline configuration"""

    database_path: str = "data/stacksignal.db"
    llm: LLMSettings = Field(default_factory=LLMSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    budget: BudgetSettings = Field(default_factory=BudgetSettings)

    @classmethod
    def load(cls, config_path: str | None = None) -> "PipelineConfig":
        """
        Load configuration from JSON, falling back to defaults

        Args:
            config_path: Explicit config file. If omitted, the default path is
                used when it exists, otherwise built-in defaults.

        Raises:
            FileNotFoundError: If an explicit config_path doesn't exist
            ConfigError: If the file is not valid JSON or fails validation
        """
        load_dotenv()

        data: dict[str, Any] = {}
        if config_path is not None:
            path = Path(config_path)
            if not path.exists():
                raise FileNotFoundError(f"Config file not found: {config_path}")
        else:
            path = Path(DEFAULT_CONFIG_PATH)

        if path.exists():
            try:
                with path.open() as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid JSON in {path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Config root in {path} must be an object")

        env_db_path = os.getenv("DATABASE_PATH")
        if env_db_path:
            data["database_path"] = env_db_path

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def api_key(self) -> str:
        """
        Read the classification API key from the environment

        Raises:
            ConfigError: If the variable is unset or empty
        """
        value = os.getenv(self.llm.api_key_env)
        if not value:
            raise ConfigError(
                f"Missing {self.llm.api_key_env} environment variable. "
                "Set it in the environment or in .env"
            )
        return value

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.retry.max_retries,
            base_delay=self.retry.base_delay_seconds,
            backoff_factor=self.retry.backoff_factor,
            max_delay=self.retry.max_delay_seconds,
        )
