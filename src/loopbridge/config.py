"""Configuration settings for loopbridge."""

from __future__ import annotations

import json
import logging
import re
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "loopbridge.config.json"


class Settings(BaseSettings):
    """Bridge configuration shared by the controller and the agent."""

    # Control server
    host: str = "127.0.0.1"
    bridge_port: int = 7890  # First port of the candidate range
    port_range_size: int = 10
    base_url: str | None = None  # Dev server URL reported to the agent via /health

    # Controller
    request_timeout: float = 30.0
    file_poll_interval: float = 0.5
    bridge_dir: str = ".bridge"  # Relative to the project root

    # Agent
    agent_poll_interval: float = 3.0
    probe_timeout: float = 1.0
    poll_timeout: float = 3.0
    cache_ttl: float = 60.0

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="LOOPBRIDGE_")


def get_version() -> str:
    """Return the package version string."""
    try:
        return version("loopbridge")
    except PackageNotFoundError:
        return "0.1.0"


def _snake_case(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()


def read_config_file(project_root: Path) -> dict[str, Any]:
    """Read ``loopbridge.config.json`` from *project_root*.

    Keys may be written in camelCase (``bridgePort``) or snake_case. A missing
    file yields ``{}``; an unreadable one is logged and also yields ``{}``.
    """
    path = Path(project_root) / CONFIG_FILENAME
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {path}: expected a JSON object")
        return {}
    return {_snake_case(k): v for k, v in data.items()}


def load_settings(project_root: Path | str, **overrides: Any) -> Settings:
    """Load settings for the project at *project_root*.

    Priority (highest to lowest):
        1. Explicit keyword *overrides*
        2. ``loopbridge.config.json`` in the project root
        3. ``LOOPBRIDGE_*`` environment variables
        4. Built-in defaults
    """
    known = set(Settings.model_fields)
    file_values = {
        k: v for k, v in read_config_file(Path(project_root)).items() if k in known
    }
    return Settings(**{**file_values, **overrides})
