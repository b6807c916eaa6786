"""Environment variables, defaults and other static configuration."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Mapping, Optional

from .errors import NodePathError

APP_NAME = "keyhold"

PASSWORD_ENV_VAR = "KH_PASSWORD"
PASSWORD_NEW_ENV_VAR = "KH_PASSWORD_NEW"
TOKEN_ENV_VAR = "KH_TOKEN"
RECOVERY_CODE_ENV_VAR = "KH_RECOVERY_CODE"
NODE_PATH_ENV_VAR = "KH_NODE_PATH"
NODE_ID_ENV_VAR = "KH_NODE_ID"
CLIENT_HOST_ENV_VAR = "KH_CLIENT_HOST"
CLIENT_PORT_ENV_VAR = "KH_CLIENT_PORT"

# Any of these being set means an operator has committed to unattended use.
UNATTENDED_ENV_VARS = (PASSWORD_ENV_VAR, TOKEN_ENV_VAR)

STATUS_FILE = "status.json"


def get_env(env: Optional[Mapping[str, str]] = None) -> Mapping[str, str]:
    return os.environ if env is None else env


def is_unattended(env: Optional[Mapping[str, str]] = None) -> bool:
    environ = get_env(env)
    return any(name in environ for name in UNATTENDED_ENV_VARS)


def default_node_path(
    env: Optional[Mapping[str, str]] = None,
    platform: Optional[str] = None,
) -> Path:
    """Platform-specific location of the agent's node state."""

    environ = get_env(env)
    platform = platform or sys.platform
    home = Path(environ.get("HOME") or Path.home())
    if platform.startswith("linux"):
        data_home = environ.get("XDG_DATA_HOME")
        base = Path(data_home) if data_home else home / ".local" / "share"
        return base / APP_NAME
    if platform == "darwin":
        return home / "Library" / "Application Support" / APP_NAME
    if platform in ("win32", "cygwin"):
        local_app_data = environ.get("LOCALAPPDATA")
        base = Path(local_app_data) if local_app_data else home / "AppData" / "Local"
        return base / APP_NAME
    raise NodePathError(f"unsupported platform: {platform}")


def verbose_to_log_level(verbose: int = 0) -> str:
    if verbose >= 2:
        return "DEBUG"
    if verbose == 1:
        return "INFO"
    return "WARNING"
