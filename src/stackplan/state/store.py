"""JSON file state store, one document per stack."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

import structlog
from pydantic import ValidationError

from stackplan.errors import ConfigError
from stackplan.state.models import StackState, utcnow

logger = structlog.get_logger()


class StateStore:
    """Loads and atomically saves ``<directory>/<stack>.json``."""

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    def path_for(self, stack_name: str) -> Path:
        return self._directory / f"{stack_name}.json"

    def exists(self, stack_name: str) -> bool:
        return self.path_for(stack_name).exists()

    def load(self, stack_name: str) -> StackState:
        """Return persisted state, or an empty state if none was saved yet."""
        path = self.path_for(stack_name)
        if not path.exists():
            return StackState(stack_name=stack_name)
        try:
            state = StackState.model_validate_json(path.read_text())
        except ValidationError as exc:
            msg = f"Corrupt state file {path}:\n{exc}"
            raise ConfigError(msg) from exc
        if state.stack_name != stack_name:
            msg = (
                f"State file {path} belongs to stack '{state.stack_name}', "
                f"not '{stack_name}'"
            )
            raise ConfigError(msg)
        return state

    def save(self, state: StackState) -> None:
        """Write state via temp file + rename so readers never see a torn file."""
        self._directory.mkdir(parents=True, exist_ok=True)
        state.serial += 1
        state.updated_at = utcnow()
        path = self.path_for(state.stack_name)
        fd, tmp = tempfile.mkstemp(dir=self._directory, prefix=f".{path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(state.model_dump_json(indent=2))
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug("state.saved", stack=state.stack_name, serial=state.serial)

    def delete(self, stack_name: str) -> None:
        self.path_for(stack_name).unlink(missing_ok=True)
        logger.info("state.deleted", stack=stack_name)
