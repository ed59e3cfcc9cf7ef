"""Resource graph builder — declarations in, validated DAG out."""

from __future__ import annotations

import copy
import heapq
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

import structlog

from stackplan.config.models import OverrideDeclaration, ResourceDeclaration, StackConfig
from stackplan.errors import (
    CycleError,
    DanglingReferenceError,
    DuplicateNameError,
    InvalidOverrideError,
    MissingPropertyError,
    UnknownAttributeError,
    UnknownKindError,
)
from stackplan.graph.kinds import KindRegistry, default_registry
from stackplan.graph.references import Ref, collect_refs

logger = structlog.get_logger()


@dataclass
class ResourceNode:
    name: str
    kind: str
    properties: dict[str, Any]
    index: int
    depends_on: list[str] = field(default_factory=list)
    overrides: list[OverrideDeclaration] = field(default_factory=list)
    refs: list[Ref] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)


@dataclass
class BuildContext:
    """Mutable state of a single build pass, passed explicitly to every step."""

    stack_name: str
    registry: KindRegistry = field(default_factory=default_registry)
    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)


class ResourceGraph:
    """Validated DAG of resources, iterable in declaration order."""

    def __init__(
        self,
        stack_name: str,
        nodes: dict[str, ResourceNode],
        outputs: dict[str, str] | None = None,
    ) -> None:
        self.stack_name = stack_name
        self._nodes = nodes
        self.outputs = dict(outputs or {})
        self._dependents: dict[str, list[str]] = {name: [] for name in nodes}
        for node in nodes.values():
            for dep in node.dependencies:
                self._dependents[dep].append(node.name)

    def __getitem__(self, name: str) -> ResourceNode:
        return self._nodes[name]

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def names(self) -> list[str]:
        return list(self._nodes)

    @property
    def edges(self) -> list[tuple[str, str]]:
        """``(dependency, dependent)`` pairs."""
        return [
            (dep, node.name) for node in self._nodes.values() for dep in node.dependencies
        ]

    def dependencies(self, name: str) -> list[str]:
        return list(self._nodes[name].dependencies)

    def dependents(self, name: str) -> list[str]:
        return list(self._dependents[name])

    def topological_order(self) -> list[str]:
        return stable_topological_sort(
            self.names,
            {n.name: n.dependencies for n in self._nodes.values()},
        )


def stable_topological_sort(
    names: list[str], dependencies: dict[str, list[str]]
) -> list[str]:
    """Kahn's algorithm; ties broken by position in *names*.

    Dependencies outside *names* are ignored. Raises CycleError if the
    remaining nodes cannot be ordered.
    """
    position = {name: i for i, name in enumerate(names)}
    pending = {
        name: {d for d in dependencies.get(name, []) if d in position} for name in names
    }
    dependents: dict[str, list[str]] = {name: [] for name in names}
    for name, deps in pending.items():
        for dep in deps:
            dependents[dep].append(name)

    ready = [position[name] for name, deps in pending.items() if not deps]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        name = names[heapq.heappop(ready)]
        order.append(name)
        for child in dependents[name]:
            pending[child].discard(name)
            if not pending[child]:
                heapq.heappush(ready, position[child])

    if len(order) != len(names):
        ordered = set(order)
        remaining = {n for n in names if n not in ordered}
        raise CycleError(_find_cycle(remaining, pending))
    return order


def _find_cycle(remaining: set[str], pending: dict[str, set[str]]) -> list[str]:
    """Walk unmet dependencies from any stuck node until a node repeats."""
    start = min(remaining)
    path: list[str] = []
    seen: dict[str, int] = {}
    node = start
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = min(d for d in pending[node] if d in remaining)
    cycle = path[seen[node] :]
    cycle.append(node)
    return cycle


# -- Build steps ---------------------------------------------------------------


def declare(ctx: BuildContext, decl: ResourceDeclaration) -> ResourceNode:
    """Register a declaration, checking name uniqueness and kind requirements."""
    if decl.name in ctx.nodes:
        raise DuplicateNameError(decl.name)
    spec = ctx.registry.get(decl.kind)
    if spec is None:
        raise UnknownKindError(decl.name, decl.kind)
    for prop in spec.required:
        if prop not in decl.properties:
            raise MissingPropertyError(decl.name, decl.kind, prop)

    node = ResourceNode(
        name=decl.name,
        kind=decl.kind,
        properties=copy.deepcopy(decl.properties),
        index=len(ctx.nodes),
        depends_on=list(decl.depends_on),
        overrides=list(decl.overrides),
    )
    ctx.nodes[decl.name] = node
    return node


def set_path(properties: dict[str, Any], override: OverrideDeclaration, owner: str) -> None:
    """Apply one raw override in place."""
    parts = override.path.split(".")
    target: Any = properties
    for part in parts[:-1]:
        if not isinstance(target, dict):
            raise InvalidOverrideError(owner, override.path, f"'{part}' is not a mapping")
        target = target.setdefault(part, {})
    if not isinstance(target, dict):
        raise InvalidOverrideError(
            owner, override.path, f"parent of '{parts[-1]}' is not a mapping"
        )
    if override.delete:
        target.pop(parts[-1], None)
    else:
        target[parts[-1]] = copy.deepcopy(override.value)


def apply_overrides(ctx: BuildContext) -> None:
    for node in ctx.nodes.values():
        for override in node.overrides:
            set_path(node.properties, override, node.name)
            logger.debug("graph.override_applied", resource=node.name, path=override.path)


def _check_ref(ctx: BuildContext, source: str, ref: Ref) -> None:
    target = ctx.nodes.get(ref.target)
    if target is None:
        raise DanglingReferenceError(source, ref.target)
    spec = ctx.registry.get(target.kind)
    assert spec is not None
    if not spec.exports(ref.attr):
        raise UnknownAttributeError(source, ref.target, ref.attr, target.kind)


def link(ctx: BuildContext) -> ResourceGraph:
    """Turn references and depends_on entries into edges and validate the DAG."""
    for node in ctx.nodes.values():
        node.refs = collect_refs(node.properties)
        deps: dict[str, None] = {}
        for ref in node.refs:
            _check_ref(ctx, node.name, ref)
            deps.setdefault(ref.target, None)
        for target in node.depends_on:
            if target not in ctx.nodes:
                raise DanglingReferenceError(node.name, target)
            deps.setdefault(target, None)
        if node.name in deps:
            raise CycleError([node.name, node.name])
        node.dependencies = list(deps)

    for output_name, value in ctx.outputs.items():
        for ref in collect_refs(value):
            _check_ref(ctx, f"output:{output_name}", ref)

    graph = ResourceGraph(ctx.stack_name, ctx.nodes, ctx.outputs)
    graph.topological_order()
    return graph


def build_graph(stack: StackConfig, registry: KindRegistry | None = None) -> ResourceGraph:
    """Build and validate the resource graph for *stack*.

    Raises a ValidationError subclass on duplicate names, unknown kinds,
    missing required properties, bad overrides, dangling references or
    cycles.
    """
    ctx = BuildContext(
        stack_name=stack.stack_name,
        registry=registry or default_registry(),
        outputs=dict(stack.outputs),
    )
    for decl in stack.resources:
        declare(ctx, decl)
    apply_overrides(ctx)
    graph = link(ctx)
    logger.info(
        "graph.built",
        stack=stack.stack_name,
        resources=len(graph),
        edges=len(graph.edges),
    )
    return graph
