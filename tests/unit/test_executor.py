"""Unit tests for the apply executor."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from stackplan.apply.executor import ApplyExecutor, resolve_outputs
from stackplan.config.models import (
    ExecutorConfig,
    ResourceDeclaration,
    RetryConfig,
    StackConfig,
)
from stackplan.errors import (
    ApplyCancelled,
    ApplyError,
    DeletionNotConfirmedError,
    PermanentProviderError,
    StateConflictError,
    TransientProviderError,
)
from stackplan.graph.builder import ResourceGraph, build_graph
from stackplan.plan.planner import Planner
from stackplan.plan.types import Action
from stackplan.providers.base import Provider, ProviderResult
from stackplan.state.models import ResourceState, StackState
from stackplan.state.store import StateStore

NO_WAIT = RetryConfig(max_attempts=3, initial_wait_seconds=0, max_wait_seconds=0)


class ScriptedProvider:
    """In-memory provider whose failures and delays are scripted per resource."""

    def __init__(
        self,
        failures: dict[str, list[Exception]] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.failures = failures or {}
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self.resources: dict[str, ProviderResult] = {}
        self.in_flight = 0
        self.max_in_flight = 0

    async def _step(self, op: str, name: str) -> None:
        self.calls.append((op, name))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            pending = self.failures.get(name)
            if pending:
                raise pending.pop(0)
        finally:
            self.in_flight -= 1

    def _result(self, name: str, kind: str, properties: dict[str, Any]) -> ProviderResult:
        pid = f"{kind.split('.')[-1]}-{name}"
        return ProviderResult(
            pid,
            kind,
            {
                "id": pid,
                "arn": f"arn:test:{pid}",
                "name": properties.get("name", name),
                "domain_name": f"{pid}.example",
            },
        )

    async def create(self, name: str, kind: str, properties: dict[str, Any]) -> ProviderResult:
        await self._step("create", name)
        self.resources[name] = self._result(name, kind, properties)
        return self.resources[name]

    async def update(
        self, name: str, kind: str, physical_id: str, properties: dict[str, Any]
    ) -> ProviderResult:
        await self._step("update", name)
        self.resources[name] = self._result(name, kind, properties)
        return self.resources[name]

    async def delete(self, name: str, kind: str, physical_id: str) -> None:
        await self._step("delete", name)
        self.resources.pop(name, None)

    async def read(self, name: str, kind: str, physical_id: str) -> ProviderResult | None:
        return self.resources.get(name)


def _res(name: str, kind: str = "stream.data", **props: Any) -> ResourceDeclaration:
    depends_on = props.pop("depends_on", [])
    return ResourceDeclaration(name=name, kind=kind, properties=props, depends_on=depends_on)


def _graph(*resources: ResourceDeclaration, **outputs: str) -> ResourceGraph:
    return build_graph(
        StackConfig(stack_name="test", resources=list(resources), outputs=outputs)
    )


def _chain() -> ResourceGraph:
    return _graph(
        _res("bucket", "storage.bucket"),
        _res("role", "iam.role", assumed_by=["glue"], scope="@{bucket.arn}"),
        _res("stream"),
        _res(
            "crawler",
            "catalog.crawler",
            role="@{role.name}",
            database_name="db",
            targets=[{"path": "s3://@{bucket.name}"}],
        ),
        url="https://@{bucket.domain_name}/index.html",
    )


def _executor(
    provider: Provider, tmp_path: Path, **kwargs: Any
) -> tuple[ApplyExecutor, StateStore]:
    store = StateStore(tmp_path)
    kwargs.setdefault("retry_config", NO_WAIT)
    return ApplyExecutor(provider, store, **kwargs), store


def test_scripted_provider_satisfies_protocol():
    assert isinstance(ScriptedProvider(), Provider)


@pytest.mark.asyncio
class TestApply:
    async def test_creates_in_dependency_order_and_resolves_refs(self, tmp_path: Path):
        provider = ScriptedProvider()
        executor, store = _executor(provider, tmp_path)
        graph = _chain()
        state = StackState(stack_name="test")

        result = await executor.run(Planner().plan(graph, state), state)

        created = [name for op, name in provider.calls if op == "create"]
        assert created.index("bucket") < created.index("role") < created.index("crawler")
        crawler = state.resources["crawler"]
        assert crawler.properties["role"] == "role"
        assert crawler.properties["targets"] == [{"path": "s3://bucket"}]
        assert crawler.inputs["role"] == "@{role.name}"
        assert crawler.dependencies == ["role", "bucket"]
        assert result.outputs == {"url": "https://bucket-bucket.example/index.html"}
        assert sorted(result.completed) == ["bucket", "crawler", "role", "stream"]

    async def test_state_persisted_with_graph_order(self, tmp_path: Path):
        executor, store = _executor(ScriptedProvider(), tmp_path)
        graph = _chain()
        state = StackState(stack_name="test")
        await executor.run(Planner().plan(graph, state), state)

        saved = store.load("test")
        assert saved.order == graph.topological_order()
        assert saved.outputs["url"].startswith("https://")
        # one save per operation plus the final one
        assert saved.serial == 5

    async def test_replan_after_apply_is_empty(self, tmp_path: Path):
        executor, store = _executor(ScriptedProvider(), tmp_path)
        graph = _chain()
        state = StackState(stack_name="test")
        await executor.run(Planner().plan(graph, state), state)
        assert Planner().plan(graph, store.load("test")).is_empty

    async def test_wave_concurrency_is_bounded(self, tmp_path: Path):
        provider = ScriptedProvider(delay=0.01)
        executor, _ = _executor(
            provider, tmp_path, executor_config=ExecutorConfig(max_workers=2)
        )
        graph = _graph(*(_res(f"s{i}") for i in range(6)))
        state = StackState(stack_name="test")
        await executor.run(Planner().plan(graph, state), state)
        assert provider.max_in_flight == 2
        assert len(state.resources) == 6

    async def test_independent_operations_overlap(self, tmp_path: Path):
        provider = ScriptedProvider(delay=0.01)
        executor, _ = _executor(provider, tmp_path)
        graph = _graph(_res("a"), _res("b"), _res("c"))
        state = StackState(stack_name="test")
        await executor.run(Planner().plan(graph, state), state)
        assert provider.max_in_flight == 3


@pytest.mark.asyncio
class TestRetries:
    async def test_transient_errors_retried(self, tmp_path: Path):
        provider = ScriptedProvider(
            failures={"stream": [TransientProviderError("throttled")] * 2}
        )
        executor, _ = _executor(provider, tmp_path)
        graph = _graph(_res("stream"))
        state = StackState(stack_name="test")
        await executor.run(Planner().plan(graph, state), state)
        assert provider.calls.count(("create", "stream")) == 3
        assert "stream" in state.resources

    async def test_retries_exhausted_abort_apply(self, tmp_path: Path):
        provider = ScriptedProvider(
            failures={"stream": [TransientProviderError("throttled")] * 3}
        )
        executor, _ = _executor(provider, tmp_path)
        state = StackState(stack_name="test")
        with pytest.raises(ApplyError) as info:
            await executor.run(Planner().plan(_graph(_res("stream")), state), state)
        assert isinstance(info.value.cause, TransientProviderError)
        assert info.value.cause.resource == "stream"
        assert provider.calls.count(("create", "stream")) == 3

    async def test_permanent_error_not_retried(self, tmp_path: Path):
        provider = ScriptedProvider(failures={"stream": [PermanentProviderError("denied")]})
        executor, _ = _executor(provider, tmp_path)
        state = StackState(stack_name="test")
        with pytest.raises(ApplyError, match="create 'stream'"):
            await executor.run(Planner().plan(_graph(_res("stream")), state), state)
        assert provider.calls == [("create", "stream")]


@pytest.mark.asyncio
class TestFailureHandling:
    async def test_failure_stops_later_waves_and_keeps_applied(self, tmp_path: Path):
        provider = ScriptedProvider(failures={"role": [PermanentProviderError("denied")]})
        executor, store = _executor(provider, tmp_path)
        graph = _chain()
        state = StackState(stack_name="test")

        with pytest.raises(ApplyError) as info:
            await executor.run(Planner().plan(graph, state), state)

        assert info.value.resource == "role"
        assert info.value.operation == "create"
        assert sorted(info.value.completed) == ["bucket", "stream"]
        assert ("create", "crawler") not in provider.calls
        saved = store.load("test")
        assert sorted(saved.resources) == ["bucket", "stream"]

    async def test_resume_after_partial_failure(self, tmp_path: Path):
        provider = ScriptedProvider(failures={"role": [PermanentProviderError("denied")]})
        executor, store = _executor(provider, tmp_path)
        graph = _chain()
        state = StackState(stack_name="test")
        with pytest.raises(ApplyError):
            await executor.run(Planner().plan(graph, state), state)

        resumed_state = store.load("test")
        plan = Planner().plan(graph, resumed_state)
        assert plan.names == ["role", "crawler"]
        await executor.run(plan, resumed_state)
        assert provider.calls.count(("create", "bucket")) == 1
        assert store.load("test").order == graph.topological_order()

    async def test_in_flight_siblings_finish_after_failure(self, tmp_path: Path):
        provider = ScriptedProvider(
            failures={"a": [PermanentProviderError("boom")]}, delay=0.01
        )
        executor, store = _executor(provider, tmp_path)
        state = StackState(stack_name="test")
        with pytest.raises(ApplyError):
            await executor.run(
                Planner().plan(_graph(_res("a"), _res("b"), _res("c")), state), state
            )
        assert sorted(store.load("test").resources) == ["b", "c"]

    async def test_resume_after_failure_following_replace(self, tmp_path: Path):
        provider = ScriptedProvider()
        executor, store = _executor(provider, tmp_path, confirm_deletes=True)
        state = StackState(stack_name="test")
        await executor.run(
            Planner().plan(_graph(_res("a"), _res("b", src="@{a.arn}")), state), state
        )

        graph = _graph(_res("a", "kms.key"), _res("b", src="@{a.arn}"))
        provider.failures["b"] = [PermanentProviderError("denied")]
        with pytest.raises(ApplyError) as info:
            await executor.run(Planner().plan(graph, state), state)
        assert info.value.completed == ["a"]

        resumed_state = store.load("test")
        plan = Planner().plan(graph, resumed_state)
        assert [(op.action, op.name) for op in plan.operations] == [
            (Action.UPDATE, "b")
        ]
        assert plan.operations[0].reason == "referenced attributes changed"
        await executor.run(plan, resumed_state)
        assert resumed_state.resources["b"].properties["src"] == "arn:test:key-a"
        assert Planner().plan(graph, store.load("test")).is_empty

    async def test_state_conflict_carries_operation(self, tmp_path: Path):
        provider = ScriptedProvider(
            failures={"stream": [StateConflictError("stream", "already exists")]}
        )
        executor, _ = _executor(provider, tmp_path)
        state = StackState(stack_name="test")
        with pytest.raises(StateConflictError) as info:
            await executor.run(Planner().plan(_graph(_res("stream")), state), state)
        assert info.value.operation == "create"
        assert "during create" in str(info.value)


@pytest.mark.asyncio
class TestCancellation:
    async def test_cancel_before_run_schedules_nothing(self, tmp_path: Path):
        provider = ScriptedProvider()
        executor, _ = _executor(provider, tmp_path)
        executor.cancel()
        state = StackState(stack_name="test")
        with pytest.raises(ApplyCancelled) as info:
            await executor.run(Planner().plan(_chain(), state), state)
        assert provider.calls == []
        assert len(info.value.pending) == 4

    async def test_cancel_mid_wave_lets_in_flight_finish(self, tmp_path: Path):
        provider = ScriptedProvider(delay=0.05)
        executor, store = _executor(provider, tmp_path)
        graph = _chain()
        state = StackState(stack_name="test")

        async def _cancel_soon() -> None:
            await asyncio.sleep(0.01)
            executor.cancel()

        with pytest.raises(ApplyCancelled) as info:
            await asyncio.gather(
                executor.run(Planner().plan(graph, state), state), _cancel_soon()
            )

        assert sorted(info.value.completed) == ["bucket", "stream"]
        assert info.value.pending == ["role", "crawler"]
        assert sorted(store.load("test").resources) == ["bucket", "stream"]


@pytest.mark.asyncio
class TestDependentPropagation:
    async def test_changed_attributes_update_dependents_outside_plan(
        self, tmp_path: Path
    ):
        provider = ScriptedProvider()
        executor, store = _executor(provider, tmp_path)
        state = StackState(stack_name="test")
        await executor.run(
            Planner().plan(
                _graph(_res("a", name="one"), _res("b", src="@{a.name}")), state
            ),
            state,
        )

        graph = _graph(_res("a", name="two"), _res("b", src="@{a.name}"))
        plan = Planner().plan(graph, state)
        assert plan.names == ["a"]

        result = await executor.run(plan, state)
        assert provider.calls[-2:] == [("update", "a"), ("update", "b")]
        assert result.completed == ["a", "b"]
        assert result.operations[1].reason == "dependency 'a' attributes changed"
        assert state.resources["b"].properties == {"src": "two"}
        assert state.order == ["a", "b"]
        assert Planner().plan(graph, store.load("test")).is_empty

    async def test_unchanged_attributes_leave_dependents_alone(self, tmp_path: Path):
        provider = ScriptedProvider()
        executor, _ = _executor(provider, tmp_path)
        state = StackState(stack_name="test")
        await executor.run(
            Planner().plan(_graph(_res("a"), _res("b", src="@{a.arn}")), state), state
        )

        graph = _graph(_res("a", shard_count=2), _res("b", src="@{a.arn}"))
        result = await executor.run(Planner().plan(graph, state), state)
        assert result.completed == ["a"]
        assert ("update", "b") not in provider.calls


@pytest.mark.asyncio
class TestDeletes:
    async def test_deletes_require_confirmation(self, tmp_path: Path):
        provider = ScriptedProvider()
        executor, _ = _executor(provider, tmp_path)
        graph = _chain()
        state = StackState(stack_name="test")
        await executor.run(Planner().plan(graph, state), state)
        calls_before = len(provider.calls)

        destroy = Planner().plan_destroy(state)
        with pytest.raises(DeletionNotConfirmedError):
            await executor.run(destroy, state)
        assert len(provider.calls) == calls_before

    async def test_destroy_reverses_apply_order(self, tmp_path: Path):
        provider = ScriptedProvider()
        executor, store = _executor(
            provider,
            tmp_path,
            executor_config=ExecutorConfig(max_workers=1),
            confirm_deletes=True,
        )
        graph = _chain()
        state = StackState(stack_name="test")
        await executor.run(Planner().plan(graph, state), state)
        applied = list(state.order)

        await executor.run(Planner().plan_destroy(state), state)
        deleted = [name for op, name in provider.calls if op == "delete"]
        assert deleted == list(reversed(applied))
        saved = store.load("test")
        assert saved.resources == {}
        assert saved.outputs == {}

    async def test_replace_deletes_then_creates(self, tmp_path: Path):
        provider = ScriptedProvider()
        executor, _ = _executor(provider, tmp_path, confirm_deletes=True)
        state = StackState(stack_name="test")
        await executor.run(Planner().plan(_graph(_res("a")), state), state)

        await executor.run(Planner().plan(_graph(_res("a", "kms.key")), state), state)
        assert provider.calls[-2:] == [("delete", "a"), ("create", "a")]
        assert state.resources["a"].kind == "kms.key"


class TestResolveOutputs:
    def test_skips_outputs_with_unapplied_refs(self):
        state = StackState(stack_name="s")
        state.record(
            "dist",
            ResourceState(
                kind="cdn.distribution",
                physical_id="d1",
                attributes={"id": "d1", "domain_name": "d1.cdn.local"},
            ),
        )
        outputs = resolve_outputs(
            {"url": "@{dist.domain_name}", "lake": "@{lake.arn}", "static": "x"}, state
        )
        assert outputs == {"url": "d1.cdn.local", "static": "x"}
