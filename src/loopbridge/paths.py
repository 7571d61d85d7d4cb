"""Bridge directory layout and credential file management.

Directory layout (per project, created on demand):

    <project>/.bridge/
      bridge.json      # Credential of the live control server
      outbox/          # controller -> agent messages (file transport)
      inbox/           # agent -> controller messages (file transport)
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from loopbridge.models.credentials import Credential

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Directory helpers
# ---------------------------------------------------------------------------

_DEFAULT_BRIDGE_DIR = ".bridge"
_CREDENTIAL_FILENAME = "bridge.json"
_OUTBOX_SUBDIR = "outbox"
_INBOX_SUBDIR = "inbox"


def get_bridge_dir(project_root: Path | str, dir_name: str = _DEFAULT_BRIDGE_DIR) -> Path:
    """Return ``<project>/.bridge`` (not created)."""
    return Path(project_root) / dir_name


def get_outbox_dir(bridge_dir: Path) -> Path:
    return bridge_dir / _OUTBOX_SUBDIR


def get_inbox_dir(bridge_dir: Path) -> Path:
    return bridge_dir / _INBOX_SUBDIR


def get_credential_path(bridge_dir: Path) -> Path:
    return bridge_dir / _CREDENTIAL_FILENAME


# ---------------------------------------------------------------------------
# Credential file
# ---------------------------------------------------------------------------


def write_credential(bridge_dir: Path, credential: Credential) -> Path:
    """Write *credential* to ``bridge.json``, creating the bridge directory."""
    bridge_dir.mkdir(parents=True, exist_ok=True)
    path = get_credential_path(bridge_dir)
    path.write_text(
        credential.model_dump_json(by_alias=True, indent=2), encoding="utf-8"
    )
    logger.debug(f"Wrote {path} (port={credential.port})")
    return path


def read_credential(bridge_dir: Path) -> Credential | None:
    """Read ``bridge.json``.

    Returns ``None`` if the file is missing, unparseable, or lacks a numeric
    ``port``/``pid``.
    """
    path = get_credential_path(bridge_dir)
    try:
        return Credential.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except FileNotFoundError:
        return None
    except (OSError, ValueError, ValidationError) as e:
        logger.debug(f"Unreadable credential file {path}: {e}")
        return None


def remove_credential(bridge_dir: Path) -> bool:
    """Delete ``bridge.json``. Returns ``False`` if it was already gone."""
    try:
        get_credential_path(bridge_dir).unlink()
    except FileNotFoundError:
        return False
    return True


# ---------------------------------------------------------------------------
# Process helpers
# ---------------------------------------------------------------------------


def is_process_alive(pid: int) -> bool:
    """Return ``True`` if a process with *pid* exists.

    Uses ``os.kill(pid, 0)`` which checks for existence without sending a
    signal.
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    return True


def format_uptime(seconds: float) -> str:
    """Format a duration as ``42s``, ``3m 5s`` or ``2h 10m``."""
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes = total // 60
    if minutes < 60:
        return f"{minutes}m {total % 60}s"
    hours = minutes // 60
    return f"{hours}h {minutes % 60}m"
