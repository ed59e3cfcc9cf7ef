"""Dependency-ordered planner: graph + prior state → Plan."""

from __future__ import annotations

import structlog

from stackplan.graph.builder import ResourceGraph, stable_topological_sort
from stackplan.plan.types import Action, Operation, Plan
from stackplan.state.models import StackState

logger = structlog.get_logger()


def _assign_waves(
    ops: list[Operation], prerequisites: dict[str, list[str]], start: int = 0
) -> int:
    """Set ``op.wave`` in place; *ops* must already be dependency-ordered.

    Returns the first wave index after the ones used.
    """
    wave_of: dict[str, int] = {}
    for op in ops:
        prior = [wave_of[p] for p in prerequisites.get(op.name, []) if p in wave_of]
        op.wave = (max(prior) + 1) if prior else start
        wave_of[op.name] = op.wave
    return (max(wave_of.values()) + 1) if wave_of else start


def _diff(graph: ResourceGraph, state: StackState, order: list[str]) -> list[Operation]:
    ops: list[Operation] = []
    # Resources getting a new physical identity in this plan
    recreated: dict[str, str] = {}
    for name in order:
        node = graph[name]
        prior = state.resources.get(name)
        action: Action | None = None
        reason = ""
        if prior is None:
            action, reason = Action.CREATE, "new resource"
        elif prior.kind != node.kind:
            action, reason = Action.REPLACE, f"kind changed from {prior.kind}"
        elif prior.inputs != node.properties:
            action, reason = Action.UPDATE, "properties changed"
        elif set(prior.dependencies) != set(node.dependencies):
            action, reason = Action.UPDATE, "dependencies changed"
        else:
            hit = next((d for d in node.dependencies if d in recreated), None)
            if hit is not None:
                action, reason = Action.UPDATE, f"dependency '{hit}' {recreated[hit]}"
            else:
                resolved = state.resolve(node.properties)
                if resolved is not None and resolved != prior.properties:
                    action, reason = Action.UPDATE, "referenced attributes changed"

        if action is None:
            continue
        if action == Action.REPLACE:
            recreated[name] = "replaced"
        elif action == Action.CREATE:
            recreated[name] = "recreated"
        ops.append(
            Operation(
                action=action,
                name=name,
                kind=node.kind,
                properties=node.properties,
                dependencies=list(node.dependencies),
                prior=prior,
                reason=reason,
            )
        )
    return ops


def _deletion_order(state: StackState, names: list[str]) -> list[str]:
    """Reverse dependency order for *names*, tie-broken by reverse apply order."""
    position = {n: i for i, n in enumerate(state.order)}
    ranked = sorted(names, key=lambda n: position.get(n, len(position)), reverse=True)
    # When deleting, a resource waits for everything that depends on it
    waits_for: dict[str, list[str]] = {n: [] for n in ranked}
    for name, resource in state.resources.items():
        for dep in resource.dependencies:
            if dep in waits_for and name in waits_for:
                waits_for[dep].append(name)
    return stable_topological_sort(ranked, waits_for)


def _delete_ops(state: StackState, names: list[str], reason: str) -> list[Operation]:
    return [
        Operation(
            action=Action.DELETE,
            name=name,
            kind=state.resources[name].kind,
            dependencies=list(state.resources[name].dependencies),
            prior=state.resources[name],
            reason=reason,
        )
        for name in _deletion_order(state, names)
    ]


def _dependents_in_state(state: StackState) -> dict[str, list[str]]:
    dependents: dict[str, list[str]] = {name: [] for name in state.resources}
    for name, resource in state.resources.items():
        for dep in resource.dependencies:
            dependents.setdefault(dep, []).append(name)
    return dependents


class Planner:
    """Diffs a validated graph against persisted state."""

    def plan(self, graph: ResourceGraph, state: StackState) -> Plan:
        order = graph.topological_order()
        ops = _diff(graph, state, order)
        next_wave = _assign_waves(ops, {n.name: n.dependencies for n in graph})

        removed = [name for name in state.resources if name not in graph]
        deletes = _delete_ops(state, removed, "removed from stack")
        dependents = _dependents_in_state(state)
        _assign_waves(deletes, dependents, start=next_wave)

        plan = Plan(
            stack_name=graph.stack_name,
            operations=ops + deletes,
            outputs=dict(graph.outputs),
            order=order,
        )
        logger.info("plan.computed", stack=graph.stack_name, **plan.summary())
        return plan

    def plan_destroy(self, state: StackState) -> Plan:
        """Delete everything in state, in reverse of the last apply order."""
        ops = _delete_ops(state, list(state.resources), "destroy")
        _assign_waves(ops, _dependents_in_state(state))
        plan = Plan(stack_name=state.stack_name, operations=ops, destroy=True)
        logger.info("plan.destroy_computed", stack=state.stack_name, **plan.summary())
        return plan
