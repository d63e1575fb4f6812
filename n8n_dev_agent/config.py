"""Runtime settings for the repair pipeline and error tracking.

All values come from the environment (or a .env file). Instantiate
AgentSettings() directly; there is no global settings object so tests can
build isolated instances with keyword overrides.
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentSettings(BaseSettings):
    """Settings for validation, repair and error tracking.

    Environment variables:
      N8N_AGENT_REPAIR_BUDGET        - max AI repair round-trips per request (default: 2)
      N8N_AGENT_PROXIMITY_THRESHOLD  - vertical distance for orphan reconnection (default: 150)
      N8N_AGENT_ERROR_LOG_DIR        - JSONL error log directory (default: ./logs/workflow-errors)
      N8N_AGENT_ERROR_CAPACITY       - in-memory error buffer size (default: 1000)
      N8N_AGENT_PERSIST_ERRORS       - write the JSONL error log (default: true)
      N8N_AGENT_GENERATION_TIMEOUT   - seconds per generator call (default: 120)
      N8N_AGENT_LOG_LEVEL            - logging level for the CLI (default: WARNING)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    repair_budget: int = Field(default=2, validation_alias="N8N_AGENT_REPAIR_BUDGET")
    proximity_threshold: float = Field(
        default=150.0, validation_alias="N8N_AGENT_PROXIMITY_THRESHOLD"
    )
    error_log_dir: str = Field(
        default="./logs/workflow-errors", validation_alias="N8N_AGENT_ERROR_LOG_DIR"
    )
    error_capacity: int = Field(default=1000, validation_alias="N8N_AGENT_ERROR_CAPACITY")
    persist_errors: bool = Field(default=True, validation_alias="N8N_AGENT_PERSIST_ERRORS")
    generation_timeout: float = Field(
        default=120.0, validation_alias="N8N_AGENT_GENERATION_TIMEOUT"
    )
    log_level: str = Field(default="WARNING", validation_alias="N8N_AGENT_LOG_LEVEL")

    @field_validator("repair_budget")
    @classmethod
    def non_negative_budget(cls, v: int) -> int:
        if v < 0:
            raise ValueError("repair budget must be >= 0")
        return v

    @field_validator("error_capacity")
    @classmethod
    def positive_capacity(cls, v: int) -> int:
        if v < 1:
            raise ValueError("error buffer capacity must be >= 1")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def uppercase_level(cls, v: object) -> str:
        return str(v).upper()
