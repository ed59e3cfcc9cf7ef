"""Plan data types."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from stackplan.state.models import ResourceState


class Action(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


@dataclass
class Operation:
    action: Action
    name: str
    kind: str
    # Desired declared properties; None for deletes
    properties: dict[str, Any] | None = None
    dependencies: list[str] = field(default_factory=list)
    prior: ResourceState | None = None
    reason: str = ""
    wave: int = 0

    @property
    def destructive(self) -> bool:
        return self.action in (Action.DELETE, Action.REPLACE)


@dataclass
class Plan:
    """Ordered operations for one stack, grouped into waves."""

    stack_name: str
    operations: list[Operation] = field(default_factory=list)
    outputs: dict[str, str] = field(default_factory=dict)
    # Full topological order of the declared graph; empty for destroy plans
    order: list[str] = field(default_factory=list)
    destroy: bool = False

    def __len__(self) -> int:
        return len(self.operations)

    @property
    def is_empty(self) -> bool:
        return not self.operations

    @property
    def names(self) -> list[str]:
        return [op.name for op in self.operations]

    @property
    def waves(self) -> list[list[Operation]]:
        grouped: dict[int, list[Operation]] = {}
        for op in self.operations:
            grouped.setdefault(op.wave, []).append(op)
        return [grouped[w] for w in sorted(grouped)]

    @property
    def destructive_names(self) -> list[str]:
        return [op.name for op in self.operations if op.destructive]

    def summary(self) -> dict[str, int]:
        counts = Counter(op.action.value for op in self.operations)
        return {action.value: counts.get(action.value, 0) for action in Action}
