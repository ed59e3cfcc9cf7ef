"""Stack orchestrator — build → refresh → plan → apply / destroy."""

from __future__ import annotations

import signal
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

from stackplan.apply.executor import ApplyExecutor, ApplyResult
from stackplan.config.models import EngineConfig, StackConfig
from stackplan.errors import StateConflictError
from stackplan.graph.builder import ResourceGraph, build_graph
from stackplan.graph.kinds import KindRegistry, default_registry
from stackplan.plan.planner import Planner
from stackplan.plan.types import Plan
from stackplan.providers.base import Provider
from stackplan.providers.factory import create_provider
from stackplan.state.models import StackState
from stackplan.state.store import StateStore

logger = structlog.get_logger()


class StackRunner:
    """Drives one stack through its lifecycle.

    A runner handles a single logical apply at a time; concurrent applies
    against the same stack must be serialised by the caller.
    """

    def __init__(
        self,
        stack: StackConfig,
        engine: EngineConfig | None = None,
        *,
        provider: Provider | None = None,
        registry: KindRegistry | None = None,
    ) -> None:
        self._stack = stack
        self._engine = engine or EngineConfig()
        self._registry = registry or default_registry()
        self._provider = provider or create_provider(
            self._engine.provider, stack.stack_name, self._registry
        )
        self._store = StateStore(self._engine.state.directory)
        self._planner = Planner()
        self._executor: ApplyExecutor | None = None

    @property
    def stack_name(self) -> str:
        return self._stack.stack_name

    @property
    def store(self) -> StateStore:
        return self._store

    def build(self) -> ResourceGraph:
        return build_graph(self._stack, self._registry)

    def load_state(self) -> StackState:
        return self._store.load(self.stack_name)

    async def refresh(self, state: StackState) -> None:
        """Compare persisted state with the provider; raise on any disagreement."""
        for name, resource in state.resources.items():
            observed = await self._provider.read(name, resource.kind, resource.physical_id)
            detail: str | None = None
            if observed is None:
                detail = f"{resource.kind} '{resource.physical_id}' no longer exists"
            elif observed.kind != resource.kind:
                detail = f"provider reports kind {observed.kind}, state has {resource.kind}"
            elif observed.attributes != resource.attributes:
                detail = "provider attributes differ from state"
            if detail is not None:
                raise StateConflictError(name, detail, operation="refresh")
        logger.debug("runner.refreshed", stack=self.stack_name, resources=len(state.resources))

    async def plan(self, *, refresh: bool = True) -> Plan:
        """Validate the declaration and diff it against state.

        Validation errors are raised before the provider is contacted.
        """
        graph = self.build()
        state = self.load_state()
        if refresh:
            await self.refresh(state)
        return self._planner.plan(graph, state)

    async def plan_destroy(self, *, refresh: bool = True) -> Plan:
        state = self.load_state()
        if refresh:
            await self.refresh(state)
        return self._planner.plan_destroy(state)

    async def apply(
        self,
        *,
        confirm_deletes: bool = False,
        plan: Plan | None = None,
        handle_signals: bool = False,
    ) -> ApplyResult:
        graph = self.build()
        state = self.load_state()
        if plan is None:
            await self.refresh(state)
            plan = self._planner.plan(graph, state)
        return await self._run(plan, state, confirm_deletes, handle_signals)

    async def destroy(
        self,
        *,
        confirm: bool = False,
        plan: Plan | None = None,
        handle_signals: bool = False,
    ) -> ApplyResult:
        state = self.load_state()
        if plan is None:
            await self.refresh(state)
            plan = self._planner.plan_destroy(state)
        result = await self._run(plan, state, confirm, handle_signals)
        # Nothing left to track once every resource is gone
        if self._store.exists(self.stack_name) and not state.resources:
            self._store.delete(self.stack_name)
        logger.info("runner.destroyed", stack=self.stack_name)
        return result

    def outputs(self) -> dict[str, str]:
        return dict(self.load_state().outputs)

    def cancel(self) -> None:
        """Signal the running apply to stop scheduling new operations."""
        if self._executor is not None:
            self._executor.cancel()

    async def _run(
        self, plan: Plan, state: StackState, confirm: bool, handle_signals: bool
    ) -> ApplyResult:
        if plan.is_empty:
            logger.info("runner.nothing_to_do", stack=self.stack_name)
            return ApplyResult(stack_name=self.stack_name, outputs=dict(state.outputs))

        self._executor = ApplyExecutor(
            self._provider,
            self._store,
            retry_config=self._engine.retry,
            executor_config=self._engine.executor,
            confirm_deletes=confirm,
        )
        try:
            if handle_signals:
                with self._signal_handlers():
                    return await self._executor.run(plan, state)
            return await self._executor.run(plan, state)
        finally:
            self._executor = None

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _shutdown(signum: int, frame: Any) -> None:
            logger.info("runner.shutdown_signal", signal=signum)
            self.cancel()

        previous = {
            sig: signal.signal(sig, _shutdown) for sig in (signal.SIGINT, signal.SIGTERM)
        }
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
