"""Registry of resource kinds: required properties and exported attributes."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class KindSpec:
    kind: str
    service: str
    id_prefix: str
    required: tuple[str, ...] = ()
    attributes: frozenset[str] = field(default_factory=frozenset)

    def exports(self, attr: str) -> bool:
        return attr == "id" or attr in self.attributes


class KindRegistry:
    """Lookup table of known kinds. Stacks may register extra kinds."""

    def __init__(self, specs: list[KindSpec] | None = None) -> None:
        self._specs: dict[str, KindSpec] = {}
        for spec in specs or []:
            self.register(spec)

    def register(self, spec: KindSpec) -> None:
        self._specs[spec.kind] = spec

    def get(self, kind: str) -> KindSpec | None:
        return self._specs.get(kind)

    def __contains__(self, kind: object) -> bool:
        return kind in self._specs

    def kinds(self) -> list[str]:
        return sorted(self._specs)


_NAMED = frozenset({"arn", "name"})

BUILTIN_KINDS: list[KindSpec] = [
    KindSpec(
        "storage.bucket", "s3", "bucket", attributes=_NAMED | {"domain_name"}
    ),
    KindSpec("storage.deployment", "s3", "deploy", required=("bucket", "source")),
    KindSpec("stream.data", "kinesis", "stream", attributes=_NAMED),
    KindSpec(
        "stream.delivery",
        "firehose",
        "delivery",
        required=("source_stream", "destination_bucket"),
        attributes=_NAMED,
    ),
    KindSpec(
        "catalog.database",
        "glue",
        "database",
        required=("database_name",),
        attributes=_NAMED,
    ),
    KindSpec(
        "catalog.security_config",
        "glue",
        "secconf",
        required=("name",),
        attributes=frozenset({"name"}),
    ),
    KindSpec(
        "catalog.crawler",
        "glue",
        "crawler",
        required=("role", "database_name", "targets"),
        attributes=_NAMED,
    ),
    KindSpec("kms.key", "kms", "key", attributes=frozenset({"arn"})),
    KindSpec("iam.role", "iam", "role", required=("assumed_by",), attributes=_NAMED),
    KindSpec(
        "iam.policy", "iam", "policy", required=("role", "statements"), attributes=_NAMED
    ),
    KindSpec(
        "cdn.distribution",
        "cloudfront",
        "dist",
        required=("default_origin",),
        attributes=frozenset({"arn", "domain_name"}),
    ),
    KindSpec(
        "cdn.realtime_log_config",
        "cloudfront",
        "rtlog",
        required=("name", "endpoints", "fields", "sampling_rate"),
        attributes=_NAMED,
    ),
]


def default_registry() -> KindRegistry:
    return KindRegistry(list(BUILTIN_KINDS))
