"""LocalProvider — a file-backed stand-in for a cloud account.

Every resource is one JSON document under
``<directory>/<stack>/<logical name>.json``. Physical identifiers and
attributes (ARNs, names, domain names) are derived deterministically from
the stack name, logical name and kind.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from pathlib import Path
from typing import Any

import structlog

from stackplan.config.models import LocalProviderConfig
from stackplan.errors import PermanentProviderError, StateConflictError
from stackplan.graph.kinds import KindRegistry, KindSpec, default_registry
from stackplan.providers.base import ProviderResult

logger = structlog.get_logger()


class LocalProvider:
    """Simulated provider persisting resources as JSON files."""

    def __init__(
        self,
        config: LocalProviderConfig,
        stack_name: str,
        registry: KindRegistry | None = None,
    ) -> None:
        self._config = config
        self._stack_name = stack_name
        self._registry = registry or default_registry()
        self._root = Path(config.directory) / stack_name

    # -- Naming ----------------------------------------------------------------

    def _spec(self, name: str, kind: str, operation: str) -> KindSpec:
        spec = self._registry.get(kind)
        if spec is None:
            raise PermanentProviderError(
                f"unsupported kind '{kind}'", resource=name, operation=operation
            )
        return spec

    def physical_id(self, name: str, spec: KindSpec) -> str:
        digest = hashlib.sha256(f"{self._stack_name}/{name}/{spec.kind}".encode())
        return f"{spec.id_prefix}-{digest.hexdigest()[:12]}"

    def _attributes(
        self, name: str, spec: KindSpec, physical_id: str, properties: dict[str, Any]
    ) -> dict[str, Any]:
        cfg = self._config
        resource_name = str(
            properties.get("name")
            or properties.get("database_name")
            or f"{self._stack_name}-{name}".lower()
        )
        candidates: dict[str, Any] = {
            "id": physical_id,
            "arn": (
                f"arn:local:{spec.service}:{cfg.region}:{cfg.account_id}:"
                f"{spec.id_prefix}/{physical_id}"
            ),
            "name": resource_name,
        }
        if spec.service == "s3":
            candidates["domain_name"] = f"{resource_name}.s3.{cfg.region}.{cfg.domain_suffix}"
        else:
            candidates["domain_name"] = f"{physical_id}.{cfg.domain_suffix}"
        return {k: v for k, v in candidates.items() if spec.exports(k)}

    # -- Storage ---------------------------------------------------------------

    def _path(self, name: str) -> Path:
        return self._root / f"{name}.json"

    def _read_record(self, name: str) -> dict[str, Any] | None:
        path = self._path(name)
        if not path.exists():
            return None
        return json.loads(path.read_text())  # type: ignore[no-any-return]

    def _write_record(self, name: str, record: dict[str, Any]) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        tmp = self._path(name).with_suffix(".json.tmp")
        tmp.write_text(json.dumps(record, indent=2, sort_keys=True, default=str))
        tmp.replace(self._path(name))

    # -- Sync implementations --------------------------------------------------

    def _create(self, name: str, kind: str, properties: dict[str, Any]) -> ProviderResult:
        spec = self._spec(name, kind, "create")
        existing = self._read_record(name)
        if existing is not None:
            if existing["kind"] != kind or existing["properties"] != properties:
                raise StateConflictError(
                    name,
                    f"provider already holds {existing['kind']} "
                    f"'{existing['physical_id']}' with different properties",
                    operation="create",
                )
            logger.info("local_provider.create_adopted", resource=name, kind=kind)
            return ProviderResult(existing["physical_id"], kind, existing["attributes"])

        physical_id = self.physical_id(name, spec)
        attributes = self._attributes(name, spec, physical_id, properties)
        self._write_record(
            name,
            {
                "kind": kind,
                "physical_id": physical_id,
                "properties": properties,
                "attributes": attributes,
            },
        )
        logger.info("local_provider.created", resource=name, kind=kind, id=physical_id)
        return ProviderResult(physical_id, kind, attributes)

    def _update(
        self, name: str, kind: str, physical_id: str, properties: dict[str, Any]
    ) -> ProviderResult:
        spec = self._spec(name, kind, "update")
        existing = self._read_record(name)
        if existing is None or existing["physical_id"] != physical_id:
            raise PermanentProviderError(
                f"resource '{physical_id}' not found", resource=name, operation="update"
            )
        attributes = self._attributes(name, spec, physical_id, properties)
        existing.update(properties=properties, attributes=attributes)
        self._write_record(name, existing)
        logger.info("local_provider.updated", resource=name, kind=kind, id=physical_id)
        return ProviderResult(physical_id, kind, attributes)

    def _delete(self, name: str, kind: str, physical_id: str) -> None:
        existing = self._read_record(name)
        if existing is None or existing["physical_id"] != physical_id:
            logger.info("local_provider.delete_missing", resource=name, id=physical_id)
            return
        self._path(name).unlink()
        logger.info("local_provider.deleted", resource=name, kind=kind, id=physical_id)

    def _read(self, name: str, physical_id: str) -> ProviderResult | None:
        existing = self._read_record(name)
        if existing is None or existing["physical_id"] != physical_id:
            return None
        return ProviderResult(
            existing["physical_id"], existing["kind"], existing["attributes"]
        )

    # -- Provider protocol -----------------------------------------------------

    async def create(
        self, name: str, kind: str, properties: dict[str, Any]
    ) -> ProviderResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._create, name, kind, properties)

    async def update(
        self, name: str, kind: str, physical_id: str, properties: dict[str, Any]
    ) -> ProviderResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, self._update, name, kind, physical_id, properties
        )

    async def delete(self, name: str, kind: str, physical_id: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._delete, name, kind, physical_id)

    async def read(self, name: str, kind: str, physical_id: str) -> ProviderResult | None:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read, name, physical_id)
