"""Error taxonomy for graph building, planning and apply."""

from __future__ import annotations

from collections.abc import Sequence


class StackplanError(Exception):
    """Base class for every error raised by the engine."""


class ConfigError(StackplanError):
    """Raised when a stack or engine config file cannot be loaded."""


# -- Graph build time ----------------------------------------------------------


class ValidationError(StackplanError):
    """Declaration is invalid. Raised before any provider call is made."""

    def __init__(self, message: str, resource: str | None = None) -> None:
        super().__init__(message)
        self.resource = resource


class DuplicateNameError(ValidationError):
    """Two resources share a logical name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Duplicate resource name '{name}'", resource=name)


class DanglingReferenceError(ValidationError):
    """A reference or depends_on entry points to a missing resource."""

    def __init__(self, source: str, target: str) -> None:
        super().__init__(
            f"Resource '{source}' references unknown resource '{target}'",
            resource=source,
        )
        self.target = target


class CycleError(ValidationError):
    """The declaration contains a dependency cycle."""

    def __init__(self, cycle: Sequence[str]) -> None:
        path = " -> ".join(cycle)
        super().__init__(f"Dependency cycle detected: {path}", resource=cycle[0])
        self.cycle = list(cycle)


class UnknownKindError(ValidationError):
    def __init__(self, name: str, kind: str) -> None:
        super().__init__(f"Resource '{name}' has unknown kind '{kind}'", resource=name)
        self.kind = kind


class UnknownAttributeError(ValidationError):
    def __init__(self, source: str, target: str, attr: str, kind: str) -> None:
        super().__init__(
            f"Resource '{source}' references attribute '{attr}' of '{target}', "
            f"which kind '{kind}' does not export",
            resource=source,
        )
        self.target = target
        self.attr = attr


class MissingPropertyError(ValidationError):
    def __init__(self, name: str, kind: str, prop: str) -> None:
        super().__init__(
            f"Resource '{name}' ({kind}) is missing required property '{prop}'",
            resource=name,
        )
        self.prop = prop


class InvalidOverrideError(ValidationError):
    def __init__(self, name: str, path: str, reason: str) -> None:
        super().__init__(
            f"Invalid override '{path}' on resource '{name}': {reason}",
            resource=name,
        )
        self.path = path


# -- Provider calls ------------------------------------------------------------


class ProviderError(StackplanError):
    """A provider call failed for a specific resource and operation."""

    def __init__(
        self, message: str, resource: str | None = None, operation: str | None = None
    ) -> None:
        super().__init__(message)
        self.resource = resource
        self.operation = operation

    def __str__(self) -> str:
        base = super().__str__()
        if self.resource is None:
            return base
        return f"{self.operation or 'call'} '{self.resource}': {base}"


class TransientProviderError(ProviderError):
    """Retryable failure, e.g. throttling."""


class PermanentProviderError(ProviderError):
    """Non-retryable failure. Aborts the remaining plan."""


class StateConflictError(StackplanError):
    """Persisted state disagrees with what the provider reports."""

    def __init__(self, resource: str, detail: str, operation: str | None = None) -> None:
        super().__init__(detail)
        self.resource = resource
        self.detail = detail
        self.operation = operation

    def __str__(self) -> str:
        during = f" during {self.operation}" if self.operation else ""
        return f"State conflict on '{self.resource}'{during}: {self.detail}"


# -- Apply ---------------------------------------------------------------------


class DeletionNotConfirmedError(StackplanError):
    """Plan deletes resources but deletion was not confirmed."""

    def __init__(self, resources: Sequence[str]) -> None:
        names = ", ".join(resources)
        super().__init__(f"Plan deletes resources without confirmation: {names}")
        self.resources = list(resources)


class ApplyError(StackplanError):
    """Apply aborted after a provider failure; applied resources are kept."""

    def __init__(
        self,
        resource: str,
        operation: str,
        cause: BaseException,
        completed: Sequence[str] = (),
    ) -> None:
        super().__init__(f"Apply failed at {operation} '{resource}': {cause}")
        self.resource = resource
        self.operation = operation
        self.cause = cause
        self.completed = list(completed)


class ApplyCancelled(StackplanError):
    """Apply stopped scheduling new operations after a cancellation request."""

    def __init__(self, completed: Sequence[str] = (), pending: Sequence[str] = ()) -> None:
        super().__init__(
            f"Apply cancelled: {len(completed)} operation(s) completed, "
            f"{len(pending)} not started"
        )
        self.completed = list(completed)
        self.pending = list(pending)
