"""
Persistence backends for the project repository.

JsonFilePersistence rewrites the full snapshot on every save with an atomic
temp-file replace. InMemoryPersistence keeps a deep copy, for tests and
ephemeral workspaces.
"""

import copy
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import PersistenceError
from .ports import PersistencePort

logger = logging.getLogger("pm_persistence")

STATE_VERSION = 1


def empty_state() -> Dict[str, Any]:
    return {"version": STATE_VERSION, "projects": []}


class JsonFilePersistence(PersistencePort):
    """Full-snapshot JSON file store."""

    def __init__(self, state_file: Path):
        self._state_file = state_file

    def load(self) -> Dict[str, Any]:
        """Load state from file. A missing or corrupt file yields empty state."""
        if not self._state_file.exists():
            logger.info(f"No existing project file at {self._state_file}, starting fresh")
            return empty_state()

        try:
            data = json.loads(self._state_file.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Failed to load project file {self._state_file}: {e}")
            return empty_state()

        return {
            "version": data.get("version", STATE_VERSION),
            "projects": data.get("projects", []),
        }

    def save(self, state: Dict[str, Any]) -> None:
        """Save state to file atomically."""
        temp_file = self._state_file.with_suffix(".tmp")
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            payload = dict(state)
            payload["last_updated"] = datetime.now(timezone.utc).isoformat()
            temp_file.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
            temp_file.replace(self._state_file)
            logger.debug(f"Saved {len(state.get('projects', []))} projects to {self._state_file}")
        except (OSError, TypeError, ValueError) as e:
            if temp_file.exists():
                temp_file.unlink()
            raise PersistenceError(
                code="SAVE_FAILED",
                message="Failed to save project state",
                error=str(e),
            )


class InMemoryPersistence(PersistencePort):
    """Keeps the last saved snapshot in memory."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._state = copy.deepcopy(initial) if initial else empty_state()
        self.save_count = 0

    def load(self) -> Dict[str, Any]:
        return copy.deepcopy(self._state)

    def save(self, state: Dict[str, Any]) -> None:
        self._state = copy.deepcopy(state)
        self.save_count += 1
