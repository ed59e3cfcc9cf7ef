"""Property references between resources.

Two forms are recognised anywhere inside a property tree:

- mapping form: ``{"ref": "dataLake", "attr": "arn"}`` (``attr`` optional)
- inline form: ``"s3://@{dataLake.name}"`` inside any string

A reference without an attribute resolves to the target's ``id``.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

DEFAULT_ATTR = "id"

# @{name} or @{name.attr}
_INLINE_PATTERN = re.compile(r"@\{([a-zA-Z][a-zA-Z0-9_-]*)(?:\.([a-zA-Z_][a-zA-Z0-9_]*))?\}")


@dataclass(frozen=True)
class Ref:
    target: str
    attr: str = DEFAULT_ATTR

    def __str__(self) -> str:
        return f"{self.target}.{self.attr}"


def _as_mapping_ref(value: dict[str, Any]) -> Ref | None:
    if "ref" not in value or not set(value) <= {"ref", "attr"}:
        return None
    target = value["ref"]
    if not isinstance(target, str):
        return None
    attr = value.get("attr", DEFAULT_ATTR)
    return Ref(target, attr if isinstance(attr, str) else DEFAULT_ATTR)


def iter_refs(value: Any) -> Iterator[Ref]:
    """Yield every reference in a property tree, in document order."""
    if isinstance(value, str):
        for match in _INLINE_PATTERN.finditer(value):
            yield Ref(match.group(1), match.group(2) or DEFAULT_ATTR)
    elif isinstance(value, dict):
        ref = _as_mapping_ref(value)
        if ref is not None:
            yield ref
            return
        for item in value.values():
            yield from iter_refs(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_refs(item)


def collect_refs(value: Any) -> list[Ref]:
    """Unique references in *value*, first occurrence order."""
    seen: dict[Ref, None] = {}
    for ref in iter_refs(value):
        seen.setdefault(ref, None)
    return list(seen)


def resolve_refs(value: Any, lookup: Callable[[Ref], Any]) -> Any:
    """Return a copy of *value* with every reference replaced via *lookup*.

    A mapping reference, or a string consisting of exactly one inline
    reference, is replaced by the looked-up value unchanged; inline
    references embedded in longer strings are interpolated with ``str()``.
    """
    if isinstance(value, str):
        whole = _INLINE_PATTERN.fullmatch(value)
        if whole:
            return lookup(Ref(whole.group(1), whole.group(2) or DEFAULT_ATTR))
        return _INLINE_PATTERN.sub(
            lambda m: str(lookup(Ref(m.group(1), m.group(2) or DEFAULT_ATTR))),
            value,
        )
    if isinstance(value, dict):
        ref = _as_mapping_ref(value)
        if ref is not None:
            return lookup(ref)
        return {k: resolve_refs(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_refs(item, lookup) for item in value]
    return value
