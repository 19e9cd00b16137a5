"""Local config.json: the API key written by setup and the running seller's PID.

Resolution order for the API key:
- LITE_AGENT_API_KEY from the environment / .env file (settings)
- LITE_AGENT_API_KEY stored in config.json
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from acp_seller.config import settings

logger = logging.getLogger(__name__)

API_KEY_FIELD = "LITE_AGENT_API_KEY"
PID_FIELD = "SELLER_PID"


def read_config(path: Path | None = None) -> dict[str, Any]:
    """Return config.json as a dict; a missing or unreadable file is empty."""
    path = path or settings.config_path
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def write_config(config: dict[str, Any], path: Path | None = None) -> None:
    path = path or settings.config_path
    path.write_text(json.dumps(config, indent=2) + "\n", encoding="utf-8")


def resolve_api_key(path: Path | None = None) -> str | None:
    if settings.lite_agent_api_key.strip():
        return settings.lite_agent_api_key.strip()
    key = read_config(path).get(API_KEY_FIELD)
    if isinstance(key, str) and key.strip():
        return key.strip()
    return None


def is_process_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


def read_pid(path: Path | None = None) -> int | None:
    """PID of the recorded seller runtime, or None if it is not running."""
    pid = read_config(path).get(PID_FIELD)
    if isinstance(pid, int) and pid > 0 and is_process_running(pid):
        return pid
    return None


def write_pid(pid: int, path: Path | None = None) -> None:
    config = read_config(path)
    config[PID_FIELD] = pid
    write_config(config, path)


def remove_pid(path: Path | None = None) -> None:
    config = read_config(path)
    if config.pop(PID_FIELD, None) is not None:
        write_config(config, path)
