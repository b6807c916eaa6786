"""Resolution of connection parameters and credentials for CLI commands."""

from __future__ import annotations

import errno as errno_module
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Type

from loguru import logger
from rich.console import Console

from . import auth
from .config import (
    CLIENT_HOST_ENV_VAR,
    CLIENT_PORT_ENV_VAR,
    NODE_ID_ENV_VAR,
    PASSWORD_ENV_VAR,
    PASSWORD_NEW_ENV_VAR,
    RECOVERY_CODE_ENV_VAR,
    TOKEN_ENV_VAR,
    get_env,
)
from .errors import (
    AgentStatusError,
    CLIError,
    ClientOptionsError,
    PasswordFileReadError,
    RecoveryCodeFileReadError,
)
from .status import DEAD, StatusInfo, read_status

PasswordPrompt = Callable[[], Optional[str]]

err_console = Console(stderr=True)

_MISSING_OPTION_MESSAGES = (
    f"missing node ID, provide it with --node-id or {NODE_ID_ENV_VAR}",
    f"missing client host, provide it with --client-host or {CLIENT_HOST_ENV_VAR}",
    f"missing client port, provide it with --client-port or {CLIENT_PORT_ENV_VAR}",
)


@dataclass(frozen=True)
class ClientOptions:
    node_id: str
    client_host: str
    client_port: int


@dataclass(frozen=True)
class ClientStatus:
    status_info: StatusInfo
    node_id: Optional[str]
    client_host: Optional[str]
    client_port: Optional[int]
    explicit: bool = False

    def options(self) -> Optional[ClientOptions]:
        if self.node_id is None or self.client_host is None or self.client_port is None:
            return None
        return ClientOptions(self.node_id, self.client_host, self.client_port)


def _interactive(stream=None) -> bool:
    stream = sys.stdin if stream is None else stream
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def prompt_password(console: Optional[Console] = None) -> Optional[str]:
    """Prompt for an existing password with masked input.

    Returns ``None`` when stdin is not a terminal or the prompt is cancelled.
    """

    if not _interactive():
        return None
    console = console or err_console
    try:
        return console.input("Please enter the password: ", password=True)
    except (KeyboardInterrupt, EOFError):
        return None


def prompt_new_password(console: Optional[Console] = None) -> Optional[str]:
    """Prompt twice for a new password until both entries match."""

    if not _interactive():
        return None
    console = console or err_console
    while True:
        try:
            password = console.input("Enter new password: ", password=True)
            password_confirm = console.input("Confirm new password: ", password=True)
        except (KeyboardInterrupt, EOFError):
            return None
        if password == password_confirm:
            return password
        console.print("Passwords do not match!")


def _read_secret_file(path: "str | Path", error_cls: Type[CLIError]) -> str:
    try:
        return Path(path).read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise error_cls(
            str(exc),
            data={
                "errno": exc.errno,
                "code": errno_module.errorcode.get(exc.errno) if exc.errno else None,
                "strerror": exc.strerror,
                "path": str(exc.filename if exc.filename is not None else path),
            },
        ) from exc


def process_password(
    password_file: "str | Path | None" = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    prompt: Optional[PasswordPrompt] = None,
) -> Optional[str]:
    """Resolve an existing password.

    Order of operations:
    1. Reads ``password_file``
    2. Reads ``KH_PASSWORD``
    3. Prompts for the password

    The result may be an empty string. ``None`` means no password was
    obtained; callers that require one raise ``PasswordMissingError``.
    """

    environ = get_env(env)
    if password_file is not None:
        return _read_secret_file(password_file, PasswordFileReadError)
    if PASSWORD_ENV_VAR in environ:
        return environ[PASSWORD_ENV_VAR]
    return (prompt or prompt_password)()


def process_new_password(
    password_new_file: "str | Path | None" = None,
    *,
    existing: bool = False,
    env: Optional[Mapping[str, str]] = None,
    prompt: Optional[PasswordPrompt] = None,
) -> Optional[str]:
    """Resolve a new password.

    Order of operations:
    1. Reads ``password_new_file``
    2. Reads ``KH_PASSWORD``, unless ``existing`` is set
    3. Reads ``KH_PASSWORD_NEW``
    4. Prompts and confirms the password

    Set ``existing`` when ``KH_PASSWORD`` already authenticates the same
    command, so it is not mistaken for the new password.
    """

    environ = get_env(env)
    if password_new_file is not None:
        return _read_secret_file(password_new_file, PasswordFileReadError)
    if not existing and PASSWORD_ENV_VAR in environ:
        return environ[PASSWORD_ENV_VAR]
    if PASSWORD_NEW_ENV_VAR in environ:
        return environ[PASSWORD_NEW_ENV_VAR]
    return (prompt or prompt_new_password)()


def process_recovery_code(
    recovery_code_file: "str | Path | None" = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    environ = get_env(env)
    if recovery_code_file is not None:
        return _read_secret_file(recovery_code_file, RecoveryCodeFileReadError)
    return environ.get(RECOVERY_CODE_ENV_VAR)


def process_authentication(
    password_file: "str | Path | None" = None,
    *,
    env: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Build call metadata from the non-interactive credential sources.

    Order of operations:
    1. Reads ``password_file``
    2. Reads ``KH_PASSWORD``
    3. Reads ``KH_TOKEN``

    Empty metadata is allowed; the call then proceeds unauthenticated.
    """

    environ = get_env(env)
    if password_file is not None:
        password = _read_secret_file(password_file, PasswordFileReadError)
        return {"authorization": auth.encode_auth_from_password(password)}
    if PASSWORD_ENV_VAR in environ:
        return {"authorization": auth.encode_auth_from_password(environ[PASSWORD_ENV_VAR])}
    if TOKEN_ENV_VAR in environ:
        return {"authorization": auth.encode_auth_from_session(environ[TOKEN_ENV_VAR])}
    return {}


def _missing_options_message(
    node_id: Optional[str], client_host: Optional[str], client_port: Optional[int]
) -> str:
    return "; ".join(
        message
        for option, message in zip((node_id, client_host, client_port), _MISSING_OPTION_MESSAGES)
        if option is None
    )


def process_client_options(
    node_path: "str | Path",
    node_id: Optional[str] = None,
    client_host: Optional[str] = None,
    client_port: Optional[int] = None,
) -> ClientOptions:
    """Resolve where the agent's client service is listening.

    Explicit options win when all three are given. When none are given they
    are read from the LIVE status descriptor under ``node_path``.
    """

    if node_id is not None and client_host is not None and client_port is not None:
        return ClientOptions(node_id, client_host, client_port)
    if node_id is None and client_host is None and client_port is None:
        status_info = read_status(Path(node_path))
        if status_info is None or not status_info.live:
            raise AgentStatusError("agent is not live")
        logger.debug("Using client options from status of {}", node_path)
        return ClientOptions(
            status_info.data["nodeId"],
            status_info.data["clientHost"],
            status_info.data["clientPort"],
        )
    raise ClientOptionsError(_missing_options_message(node_id, client_host, client_port))


def process_client_status(
    node_path: "str | Path",
    node_id: Optional[str] = None,
    client_host: Optional[str] = None,
    client_port: Optional[int] = None,
) -> ClientStatus:
    """Variant of :func:`process_client_options` that always returns the status.

    Use it when the agent lifecycle state decides whether to connect at all.
    """

    explicit = node_id is not None and client_host is not None and client_port is not None
    if not explicit and not (node_id is None and client_host is None and client_port is None):
        raise ClientOptionsError(_missing_options_message(node_id, client_host, client_port))
    status_info = read_status(Path(node_path)) or DEAD
    if explicit:
        return ClientStatus(status_info, node_id, client_host, client_port, explicit=True)
    if status_info.live:
        return ClientStatus(
            status_info,
            status_info.data["nodeId"],
            status_info.data["clientHost"],
            status_info.data["clientPort"],
        )
    return ClientStatus(status_info, None, None, None)
