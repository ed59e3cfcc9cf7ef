"""Pydantic configuration models for stacks and the engine."""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Annotated, Any, Self

from pydantic import BaseModel, Field, field_validator, model_validator

LogicalName = Annotated[str, Field(pattern=r"^[a-zA-Z][a-zA-Z0-9_-]*$")]


class ProviderType(StrEnum):
    """Supported provider backends."""

    LOCAL = "local"


class LogFormat(StrEnum):
    CONSOLE = "console"
    JSON = "json"


# -- Stack declaration ---------------------------------------------------------


class OverrideDeclaration(BaseModel, extra="forbid"):
    """Raw property override applied after typed validation.

    ``path`` is dot-separated, e.g.
    ``DistributionConfig.DefaultCacheBehavior.RealtimeLogConfigArn``.
    With ``delete`` set the key at ``path`` is removed instead.
    """

    path: str
    value: Any = None
    delete: bool = False

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v or any(not part for part in v.split(".")):
            msg = f"Override path '{v}' must be a non-empty dot-separated path"
            raise ValueError(msg)
        return v


class ResourceDeclaration(BaseModel, extra="forbid"):
    """A single declared resource in a stack."""

    name: LogicalName
    kind: str
    properties: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    overrides: list[OverrideDeclaration] = Field(default_factory=list)


class StackConfig(BaseModel, extra="forbid"):
    """A full stack: the set of resources deployed as one unit."""

    stack_name: LogicalName
    description: str = ""
    resources: list[ResourceDeclaration] = Field(default_factory=list)
    # Values may embed @{name.attr} references
    outputs: dict[str, str] = Field(default_factory=dict)

    @field_validator("outputs")
    @classmethod
    def validate_output_names(cls, v: dict[str, str]) -> dict[str, str]:
        for key in v:
            if not key or not key[0].isalpha():
                msg = f"Output name '{key}' must start with a letter"
                raise ValueError(msg)
        return v


# -- Engine --------------------------------------------------------------------


class RetryConfig(BaseModel):
    """Retry / backoff configuration for transient provider errors."""

    max_attempts: int = Field(default=5, ge=1)
    initial_wait_seconds: float = Field(default=1.0, ge=0)
    max_wait_seconds: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)

    @model_validator(mode="after")
    def check_wait_bounds(self) -> Self:
        if self.max_wait_seconds < self.initial_wait_seconds:
            msg = "max_wait_seconds must be >= initial_wait_seconds"
            raise ValueError(msg)
        return self


class ExecutorConfig(BaseModel):
    """Apply worker pool settings."""

    max_workers: int = Field(default=4, ge=1)


class StateConfig(BaseModel):
    """Where per-stack state documents are persisted."""

    directory: Path = Path(".stackplan/state")


class LocalProviderConfig(BaseModel):
    """File-backed local provider that simulates a cloud account."""

    directory: Path = Path(".stackplan/cloud")
    region: str = "us-east-1"
    account_id: str = Field(default="000000000000", pattern=r"^\d{12}$")
    domain_suffix: str = "cdn.local"


class ProviderConfig(BaseModel):
    provider_type: ProviderType = ProviderType.LOCAL
    local: LocalProviderConfig | None = LocalProviderConfig()

    @model_validator(mode="after")
    def check_provider_requirements(self) -> Self:
        """Ensure provider-specific config is present."""
        if self.provider_type == ProviderType.LOCAL and self.local is None:
            msg = "local config is required when provider_type is 'local'"
            raise ValueError(msg)
        return self


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: LogFormat = LogFormat.CONSOLE

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            msg = f"Unknown log level '{v}'"
            raise ValueError(msg)
        return upper


class EngineConfig(BaseModel):
    """Engine configuration — state location, provider, retries, workers."""

    state: StateConfig = StateConfig()
    executor: ExecutorConfig = ExecutorConfig()
    retry: RetryConfig = RetryConfig()
    provider: ProviderConfig = ProviderConfig()
    logging: LoggingConfig = LoggingConfig()
