"""
Engine configuration.

Defaults are overridden by environment variables, then by an optional YAML
file named in PM_CONFIG_FILE. Unknown YAML keys are ignored with a warning.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("pm_config")

DEFAULT_CHECK_INTERVAL = 3 * 60  # seconds
DEFAULT_STARTUP_DELAY = 15  # seconds
DEFAULT_STANDUP_INTERVAL_MS = 30 * 60 * 1000
DEFAULT_PROGRESS_THRESHOLD = 5


def _get_data_dir() -> Path:
    """Get the data directory with fallback for local development."""
    configured = os.getenv("PM_DATA_DIR")
    if configured:
        return Path(configured)

    primary = Path.home() / ".pm_engine"
    try:
        primary.mkdir(parents=True, exist_ok=True)
        return primary
    except (OSError, PermissionError):
        pass

    return Path("/tmp/pm_engine")


@dataclass
class EngineConfig:
    """Runtime settings for the repository, loop and adapters."""
    data_dir: Path
    check_interval_seconds: float = DEFAULT_CHECK_INTERVAL
    startup_delay_seconds: float = DEFAULT_STARTUP_DELAY
    default_standup_interval_ms: int = DEFAULT_STANDUP_INTERVAL_MS
    progress_notify_threshold: int = DEFAULT_PROGRESS_THRESHOLD
    webhook_url: Optional[str] = None
    dashboard_url: Optional[str] = None
    http_timeout_seconds: float = 10.0
    log_level: str = "INFO"

    @property
    def projects_file(self) -> Path:
        return self.data_dir / "projects.json"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        config = cls(
            data_dir=_get_data_dir(),
            check_interval_seconds=float(os.getenv("PM_CHECK_INTERVAL", DEFAULT_CHECK_INTERVAL)),
            startup_delay_seconds=float(os.getenv("PM_STARTUP_DELAY", DEFAULT_STARTUP_DELAY)),
            default_standup_interval_ms=int(os.getenv("PM_STANDUP_INTERVAL_MS", DEFAULT_STANDUP_INTERVAL_MS)),
            progress_notify_threshold=int(os.getenv("PM_PROGRESS_THRESHOLD", DEFAULT_PROGRESS_THRESHOLD)),
            webhook_url=os.getenv("PM_WEBHOOK_URL") or None,
            dashboard_url=os.getenv("PM_DASHBOARD_URL") or None,
            http_timeout_seconds=float(os.getenv("PM_HTTP_TIMEOUT", "10.0")),
            log_level=os.getenv("PM_LOG_LEVEL", "INFO").upper(),
        )

        config_file = os.getenv("PM_CONFIG_FILE")
        if config_file:
            config.apply_overrides(read_yaml_file(Path(config_file)))

        return config

    def apply_overrides(self, overrides: Dict[str, Any]) -> None:
        known = {f.name for f in fields(self)}
        for key, value in overrides.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            if key == "data_dir":
                value = Path(value)
            setattr(self, key, value)


def read_yaml_file(file_path: Path) -> Dict[str, Any]:
    """Read and parse a YAML file."""
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")
    with open(file_path, "r") as f:
        return yaml.safe_load(f) or {}
