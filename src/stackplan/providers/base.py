"""Provider protocol: the opaque cloud API the executor talks to."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class ProviderResult:
    physical_id: str
    kind: str
    attributes: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Provider(Protocol):
    """Creates, updates, reads and deletes resources.

    Implementations raise TransientProviderError for retryable failures and
    PermanentProviderError for everything else.
    """

    async def create(
        self, name: str, kind: str, properties: dict[str, Any]
    ) -> ProviderResult:
        """Idempotently create the resource identified by logical *name*."""
        ...

    async def update(
        self, name: str, kind: str, physical_id: str, properties: dict[str, Any]
    ) -> ProviderResult:
        ...

    async def delete(self, name: str, kind: str, physical_id: str) -> None:
        """Remove the resource. Deleting a missing resource is not an error."""
        ...

    async def read(self, name: str, kind: str, physical_id: str) -> ProviderResult | None:
        """Return the provider's view of the resource, or None if it is gone."""
        ...
