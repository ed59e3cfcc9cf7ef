"""Persisted stack state."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from stackplan.graph.references import iter_refs, resolve_refs


def utcnow() -> datetime:
    return datetime.now(UTC)


class ResourceState(BaseModel):
    """Last-known state of one applied resource."""

    kind: str
    physical_id: str
    # Declared properties (references unresolved), used for diffing
    inputs: dict[str, Any] = Field(default_factory=dict)
    # Properties as sent to the provider, references resolved
    properties: dict[str, Any] = Field(default_factory=dict)
    attributes: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)


class StackState(BaseModel):
    """Everything the engine knows about a deployed stack."""

    stack_name: str
    serial: int = 0
    resources: dict[str, ResourceState] = Field(default_factory=dict)
    # Order in which resources were successfully applied; destroy reverses it
    order: list[str] = Field(default_factory=list)
    outputs: dict[str, str] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utcnow)

    def record(self, name: str, resource: ResourceState) -> None:
        self.resources[name] = resource
        if name not in self.order:
            self.order.append(name)

    def resolve(self, value: Any) -> Any | None:
        """Resolve references in *value* from recorded attributes.

        Returns None when any referenced resource or attribute is not
        recorded yet.
        """
        for ref in iter_refs(value):
            target = self.resources.get(ref.target)
            if target is None or ref.attr not in target.attributes:
                return None
        return resolve_refs(value, lambda r: self.resources[r.target].attributes[r.attr])

    def forget(self, name: str) -> None:
        self.resources.pop(name, None)
        if name in self.order:
            self.order.remove(name)
