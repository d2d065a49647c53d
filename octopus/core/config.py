"""Application configuration"""

from functools import lru_cache
from typing import Dict, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from octopus.domain.orchestration.step_executor import RetryPolicy


class Settings(BaseSettings):
    """Orchestrator settings"""

    model_config = SettingsConfigDict(
        env_prefix="OCTOPUS__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Environment
    environment: str = "development"
    service_name: str = "octopus"
    port: int = 3001
    public_base_url: str = "http://localhost:3001"

    # Step execution
    step_max_attempts: int = 2
    step_backoff_ms: int = 600
    continue_on_error: bool = True

    # Tools
    enabled_tools: List[str] = []
    real_tools: Dict[str, str] = {}  # tool name -> "module:attribute"

    # Event streaming
    channel_maxsize: int = 256

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("step_max_attempts")
    @classmethod
    def _at_least_one_attempt(cls, value: int) -> int:
        return max(1, value)

    @field_validator("step_backoff_ms")
    @classmethod
    def _non_negative_backoff(cls, value: int) -> int:
        return max(0, value)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.step_max_attempts, base_backoff_ms=self.step_backoff_ms)

    def source_file_url(self, file_id: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/uploads/{file_id}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
