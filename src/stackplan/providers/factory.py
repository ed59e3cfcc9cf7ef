"""Factory for the configured provider backend."""

from __future__ import annotations

from stackplan.config.models import ProviderConfig, ProviderType
from stackplan.graph.kinds import KindRegistry
from stackplan.providers.base import Provider


def create_provider(
    config: ProviderConfig,
    stack_name: str,
    registry: KindRegistry | None = None,
) -> Provider:
    """Create a Provider for the configured provider type."""
    if config.provider_type == ProviderType.LOCAL:
        assert config.local is not None
        from stackplan.providers.local import LocalProvider

        return LocalProvider(config.local, stack_name, registry)

    msg = f"Unsupported provider type: {config.provider_type}"
    raise ValueError(msg)
