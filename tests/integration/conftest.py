"""Fixtures for end-to-end runs against the file-backed local provider."""

from __future__ import annotations

from pathlib import Path

import pytest

from stackplan.config.models import (
    EngineConfig,
    ExecutorConfig,
    LocalProviderConfig,
    ProviderConfig,
    RetryConfig,
    StackConfig,
    StateConfig,
)
from stackplan.config.templates import build_stack_config


@pytest.fixture()
def engine(tmp_path: Path) -> EngineConfig:
    """Engine config isolated to the test's temporary directory."""
    return EngineConfig(
        state=StateConfig(directory=tmp_path / "state"),
        executor=ExecutorConfig(max_workers=3),
        retry=RetryConfig(max_attempts=3, initial_wait_seconds=0, max_wait_seconds=0),
        provider=ProviderConfig(local=LocalProviderConfig(directory=tmp_path / "cloud")),
    )


@pytest.fixture()
def pixel_stack() -> StackConfig:
    return build_stack_config()
