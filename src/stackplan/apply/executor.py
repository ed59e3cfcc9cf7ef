"""Runs a plan wave by wave against a provider."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from stackplan.config.models import ExecutorConfig, RetryConfig
from stackplan.errors import (
    ApplyCancelled,
    ApplyError,
    DeletionNotConfirmedError,
    PermanentProviderError,
    StateConflictError,
    TransientProviderError,
)
from stackplan.graph.builder import stable_topological_sort
from stackplan.graph.references import Ref, resolve_refs
from stackplan.plan.types import Action, Operation, Plan
from stackplan.providers.base import Provider
from stackplan.state.models import ResourceState, StackState
from stackplan.state.store import StateStore

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class ApplyResult:
    stack_name: str
    operations: list[Operation] = field(default_factory=list)
    outputs: dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def completed(self) -> list[str]:
        return [op.name for op in self.operations]


def resolve_outputs(outputs: dict[str, str], state: StackState) -> dict[str, str]:
    """Resolve every output whose references are all present in *state*."""
    resolved: dict[str, str] = {}
    for key, template in outputs.items():
        value = state.resolve(template)
        if value is not None:
            resolved[key] = str(value)
    return resolved


def _stale_dependents(changed: list[str], state: StackState) -> list[Operation]:
    """Updates for recorded resources whose resolved inputs no longer match."""
    ops: list[Operation] = []
    for name in state.order:
        resource = state.resources[name]
        if not any(dep in changed for dep in resource.dependencies):
            continue
        resolved = state.resolve(resource.inputs)
        if resolved is None or resolved == resource.properties:
            continue
        hit = next(dep for dep in resource.dependencies if dep in changed)
        ops.append(
            Operation(
                action=Action.UPDATE,
                name=name,
                kind=resource.kind,
                properties=resource.inputs,
                dependencies=list(resource.dependencies),
                prior=resource,
                reason=f"dependency '{hit}' attributes changed",
            )
        )
    return ops


def _waves_of(ops: list[Operation]) -> list[list[Operation]]:
    """Group *ops* so none shares a wave with one of its dependencies."""
    names = [op.name for op in ops]
    ordered = stable_topological_sort(names, {op.name: op.dependencies for op in ops})
    by_name = {op.name: op for op in ops}
    wave_of: dict[str, int] = {}
    for name in ordered:
        prior = [wave_of[d] for d in by_name[name].dependencies if d in wave_of]
        wave_of[name] = (max(prior) + 1) if prior else 0
    waves: list[list[Operation]] = [[] for _ in range(max(wave_of.values(), default=-1) + 1)]
    for name in ordered:
        waves[wave_of[name]].append(by_name[name])
    return waves


class ApplyExecutor:
    """Executes plan operations with bounded concurrency and retries.

    Operations inside one wave run concurrently (at most
    ``executor.max_workers`` at once); a wave starts only after every
    operation of the previous wave succeeded. State is persisted after each
    successful operation. The first non-retryable failure stops scheduling;
    operations already running are allowed to finish and nothing is rolled
    back.
    """

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        *,
        retry_config: RetryConfig | None = None,
        executor_config: ExecutorConfig | None = None,
        confirm_deletes: bool = False,
    ) -> None:
        self._provider = provider
        self._store = store
        self._retry = retry_config or RetryConfig()
        self._executor = executor_config or ExecutorConfig()
        self._confirm_deletes = confirm_deletes
        self._cancel_requested = False
        self._halted = False
        self._output_templates: dict[str, str] = {}
        self._queued: list[Operation] = []
        # Resources whose update changed their exported attributes
        self._attributes_changed: list[str] = []

    def cancel(self) -> None:
        """Stop scheduling new operations; in-flight ones run to completion."""
        if not self._cancel_requested:
            logger.warning("apply.cancel_requested")
        self._cancel_requested = True

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    async def run(self, plan: Plan, state: StackState) -> ApplyResult:
        destructive = plan.destructive_names
        if destructive and not self._confirm_deletes:
            raise DeletionNotConfirmedError(destructive)

        started = time.monotonic()
        done: list[Operation] = []
        semaphore = asyncio.Semaphore(self._executor.max_workers)
        waves = plan.waves
        self._halted = False
        self._output_templates = dict(plan.outputs)
        self._queued = list(plan.operations)
        self._attributes_changed = []

        logger.info(
            "apply.started",
            stack=plan.stack_name,
            operations=len(plan),
            waves=len(waves),
        )
        for wave in waves:
            await self._run_wave(plan, wave, state, semaphore, done)

        # Updated attributes can leave dependents outside the plan stale
        while self._attributes_changed:
            changed, self._attributes_changed = self._attributes_changed, []
            followups = _stale_dependents(changed, state)
            if not followups:
                continue
            logger.info(
                "apply.dependents_stale",
                stack=plan.stack_name,
                changed=changed,
                resources=[op.name for op in followups],
            )
            self._queued.extend(followups)
            for wave in _waves_of(followups):
                await self._run_wave(plan, wave, state, semaphore, done)

        if plan.destroy:
            state.order = []
        else:
            state.order = [n for n in plan.order if n in state.resources]
        self._persist(state)

        result = ApplyResult(
            stack_name=plan.stack_name,
            operations=done,
            outputs=dict(state.outputs),
            duration_seconds=time.monotonic() - started,
        )
        logger.info(
            "apply.completed",
            stack=plan.stack_name,
            operations=len(done),
            duration_seconds=round(result.duration_seconds, 3),
        )
        return result

    async def _run_wave(
        self,
        plan: Plan,
        wave: list[Operation],
        state: StackState,
        semaphore: asyncio.Semaphore,
        done: list[Operation],
    ) -> None:
        """Run one wave concurrently; raise if it failed or was cancelled."""
        if self._cancel_requested:
            raise self._cancelled(plan, done)
        before = len(done)

        results = await asyncio.gather(
            *[self._guarded(op, state, semaphore) for op in wave],
            return_exceptions=True,
        )

        failure: tuple[Operation, BaseException] | None = None
        for op, outcome in zip(wave, results, strict=True):
            if outcome is True:
                done.append(op)
            elif isinstance(outcome, BaseException) and failure is None:
                failure = (op, outcome)

        if failure is not None:
            op, exc = failure
            logger.error(
                "apply.failed",
                stack=plan.stack_name,
                resource=op.name,
                operation=op.action.value,
                error=str(exc),
            )
            if isinstance(exc, StateConflictError):
                raise exc
            raise ApplyError(op.name, op.action.value, exc, [d.name for d in done])
        if len(done) - before < len(wave):
            raise self._cancelled(plan, done)

    def _cancelled(self, plan: Plan, done: list[Operation]) -> ApplyCancelled:
        finished = {id(op) for op in done}
        pending = [op.name for op in self._queued if id(op) not in finished]
        logger.warning(
            "apply.cancelled",
            stack=plan.stack_name,
            completed=len(done),
            pending=len(pending),
        )
        return ApplyCancelled([op.name for op in done], pending)

    async def _guarded(
        self, op: Operation, state: StackState, semaphore: asyncio.Semaphore
    ) -> bool:
        """Run *op* unless the apply was halted or cancelled while it waited.

        Returns True when the operation ran, False when it was skipped.
        """
        async with semaphore:
            if self._halted or self._cancel_requested:
                return False
            try:
                await self._execute(op, state)
            except BaseException:
                self._halted = True
                raise
            return True

    # -- Operations ------------------------------------------------------------

    async def _execute(self, op: Operation, state: StackState) -> None:
        log = logger.bind(resource=op.name, kind=op.kind, operation=op.action.value)
        log.info("apply.operation_started", reason=op.reason)

        if op.action in (Action.DELETE, Action.REPLACE):
            prior = op.prior
            assert prior is not None
            await self._call(
                op, self._provider.delete, op.name, prior.kind, prior.physical_id
            )
            state.forget(op.name)
            self._persist(state)
            if op.action == Action.DELETE:
                log.info("apply.operation_completed")
                return

        assert op.properties is not None
        properties = self._resolve(op, state)
        if op.action == Action.UPDATE:
            prior = state.resources.get(op.name) or op.prior
            assert prior is not None
            result = await self._call(
                op,
                self._provider.update,
                op.name,
                op.kind,
                prior.physical_id,
                properties,
            )
            if result.attributes != prior.attributes:
                self._attributes_changed.append(op.name)
        else:
            result = await self._call(
                op, self._provider.create, op.name, op.kind, properties
            )

        state.record(
            op.name,
            ResourceState(
                kind=op.kind,
                physical_id=result.physical_id,
                inputs=op.properties,
                properties=properties,
                attributes=result.attributes,
                dependencies=list(op.dependencies),
            ),
        )
        self._persist(state)
        log.info("apply.operation_completed", physical_id=result.physical_id)

    def _persist(self, state: StackState) -> None:
        state.outputs = resolve_outputs(self._output_templates, state)
        self._store.save(state)

    def _resolve(self, op: Operation, state: StackState) -> dict[str, Any]:
        def lookup(ref: Ref) -> Any:
            target = state.resources.get(ref.target)
            if target is None or ref.attr not in target.attributes:
                raise PermanentProviderError(
                    f"reference '{ref}' has no applied value",
                    resource=op.name,
                    operation=op.action.value,
                )
            return target.attributes[ref.attr]

        return resolve_refs(op.properties, lookup)  # type: ignore[no-any-return]

    async def _call(
        self, op: Operation, fn: Callable[..., Awaitable[T]], *args: Any
    ) -> T:
        retry_cfg = self._retry

        def _log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "apply.retrying",
                resource=op.name,
                operation=op.action.value,
                attempt=retry_state.attempt_number,
                error=str(exc),
            )

        @retry(
            stop=stop_after_attempt(retry_cfg.max_attempts),
            wait=wait_exponential(
                multiplier=retry_cfg.initial_wait_seconds,
                exp_base=retry_cfg.multiplier,
                max=retry_cfg.max_wait_seconds,
            ),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=_log_retry,
            reraise=True,
        )
        async def _attempt() -> T:
            return await fn(*args)

        try:
            return await _attempt()
        except (TransientProviderError, PermanentProviderError) as exc:
            if exc.resource is None:
                exc.resource = op.name
                exc.operation = op.action.value
            raise
        except StateConflictError as exc:
            if exc.operation is None:
                exc.operation = op.action.value
            raise
