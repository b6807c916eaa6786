"""Command-line interface for the keyhold agent using Typer + Rich."""

from __future__ import annotations

import asyncio
import enum
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, List, NoReturn, Optional, TypeVar

import rich_click as click  # Must be imported before typer to patch Click
import typer
from click.exceptions import Abort, UsageError
from loguru import logger
from rich.console import Console

from .auth import encode_auth_from_password
from .config import (
    CLIENT_HOST_ENV_VAR,
    CLIENT_PORT_ENV_VAR,
    NODE_ID_ENV_VAR,
    NODE_PATH_ENV_VAR,
    default_node_path,
)
from .errors import (
    AgentStatusError,
    KeyholdError,
    ParseError,
    PasswordMissingError,
    sysexits,
)
from .log import setup_logger
from .output import (
    DictOutput,
    ErrorOutput,
    JsonOutput,
    ListOutput,
    OutputValue,
    RawOutput,
    TableOutput,
    render,
)
from .parsers import parse_host, parse_node_id, parse_port
from .processors import (
    ClientOptions,
    process_authentication,
    process_client_options,
    process_client_status,
    process_new_password,
    process_password,
)
from .protocol.client import AgentClient
from .retry import retry_authentication
from .status import STATUS_DEAD, STATUS_STARTING, STATUS_STOPPING

# Configure rich-click aesthetics
click.rich_click.USE_RICH_MARKUP = True
click.rich_click.SHOW_ARGUMENTS = True
click.rich_click.STYLE_OPTION = "bold cyan"
click.rich_click.STYLE_SWITCH = "bold cyan"
click.rich_click.STYLE_COMMAND = "bold yellow"
click.rich_click.STYLE_HELPTEXT = "dim"
click.rich_click.MAX_WIDTH = 100

console = Console(stderr=True)

T = TypeVar("T")

app = typer.Typer(
    add_completion=True,
    help="Talk to a running keyhold agent through its RPC client service.",
    rich_markup_mode="rich",
)
agent_app = typer.Typer(
    help="Inspect and control the agent process.",
    add_completion=True,
    rich_markup_mode="rich",
)
keys_app = typer.Typer(
    help="Manage the agent's root password.",
    add_completion=True,
    rich_markup_mode="rich",
)
app.add_typer(agent_app, name="agent", rich_help_panel="Agent")
app.add_typer(keys_app, name="keys", rich_help_panel="Keys")


class OutputFormat(str, enum.Enum):
    human = "human"
    json = "json"


@dataclass
class CLIState:
    """Runtime configuration shared across commands."""

    node_path: Optional[Path]
    node_id: Optional[str]
    client_host: Optional[str]
    client_port: Optional[int]
    password_file: Optional[Path]
    format: str = OutputFormat.human.value
    verbose: int = 0


def _show_group_help(ctx: typer.Context, examples: Optional[List[str]] = None) -> NoReturn:
    """Display help text (optionally with examples) and exit."""

    typer.echo(ctx.get_help())
    if examples:
        console.print("\nExamples:", style="bold")
        for example in examples:
            console.print(f"  [dim]{example}[/dim]")
    raise typer.Exit()


def _write(value: OutputValue, *, err: bool = False) -> None:
    typer.echo(render(value), nl=False, err=err)


def _print_error(exc: BaseException, fmt: str) -> None:
    _write(JsonOutput(exc) if fmt == OutputFormat.json.value else ErrorOutput(exc), err=True)


def _human_output(result: Any) -> OutputValue:
    if isinstance(result, dict):
        return DictOutput(result)
    if isinstance(result, list):
        if result and all(isinstance(item, dict) for item in result):
            return TableOutput(result)
        return ListOutput([None if item is None else _scalar_text(item) for item in result])
    if result is None:
        return RawOutput(b"")
    return ListOutput([_scalar_text(result)])


def _scalar_text(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)


def _print_result(state: CLIState, result: Any) -> None:
    if state.format == OutputFormat.json.value:
        _write(JsonOutput(result))
    else:
        _write(_human_output(result))


def _run(state: CLIState, coro: Coroutine[Any, Any, Any]) -> None:
    """Execute an async coroutine with unified error handling."""

    try:
        asyncio.run(coro)
    except KeyholdError as exc:
        logger.debug("Command failed with {}", exc.name)
        _print_error(exc, state.format)
        raise typer.Exit(exc.exit_code)
    except KeyboardInterrupt:  # pragma: no cover - manual interrupt
        console.print("\n[yellow]Interrupted by user[/yellow]")
        raise typer.Exit(130)
    except Exception as exc:  # pragma: no cover - safety net
        logger.opt(exception=exc).debug("Unexpected error")
        _print_error(exc, state.format)
        raise typer.Exit(sysexits.UNKNOWN)


def _parse_option(parser: Callable[[str], T], value: Optional[str], hint: str) -> Optional[T]:
    if value is None:
        return None
    try:
        return parser(value)
    except ParseError as exc:
        raise typer.BadParameter(exc.message, param_hint=hint) from exc


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    node_path: Optional[Path] = typer.Option(  # noqa: B008
        None,
        "--node-path",
        envvar=NODE_PATH_ENV_VAR,
        help="Path to the agent's node state (defaults to the platform data directory).",
        rich_help_panel="Global Options",
    ),
    node_id: Optional[str] = typer.Option(  # noqa: B008
        None,
        "--node-id",
        envvar=NODE_ID_ENV_VAR,
        help="Node ID of the agent to connect to.",
        rich_help_panel="Global Options",
    ),
    client_host: Optional[str] = typer.Option(  # noqa: B008
        None,
        "--client-host",
        envvar=CLIENT_HOST_ENV_VAR,
        help="Client service host address.",
        rich_help_panel="Global Options",
    ),
    client_port: Optional[str] = typer.Option(  # noqa: B008
        None,
        "--client-port",
        envvar=CLIENT_PORT_ENV_VAR,
        help="Client service port.",
        rich_help_panel="Global Options",
    ),
    password_file: Optional[Path] = typer.Option(  # noqa: B008
        None,
        "--password-file",
        help="Path to a file containing the password.",
        rich_help_panel="Global Options",
    ),
    output_format: OutputFormat = typer.Option(  # noqa: B008
        OutputFormat.human,
        "--format",
        "-f",
        help="Output format.",
        rich_help_panel="Global Options",
    ),
    verbose: int = typer.Option(  # noqa: B008
        0,
        "--verbose",
        "-v",
        count=True,
        help="Log verbose messages (repeat for more detail).",
        rich_help_panel="Global Options",
    ),
) -> None:
    """Top-level callback storing shared CLI state."""

    setup_logger(verbose, output_format.value)
    state = CLIState(
        node_path=node_path,
        node_id=_parse_option(parse_node_id, node_id, "'--node-id'"),
        client_host=_parse_option(parse_host, client_host, "'--client-host'"),
        client_port=_parse_option(parse_port, client_port, "'--client-port'"),
        password_file=password_file,
        format=output_format.value,
        verbose=verbose,
    )
    if state.node_path is None:
        try:
            state.node_path = default_node_path()
        except KeyholdError as exc:
            _print_error(exc, state.format)
            raise typer.Exit(exc.exit_code)
    ctx.obj = state

    if ctx.invoked_subcommand is None:
        _show_group_help(ctx)


@agent_app.callback(invoke_without_command=True)
def agent_group(ctx: typer.Context) -> None:
    if ctx.invoked_subcommand is None:
        _show_group_help(ctx, ["keyhold agent status", "keyhold --format json agent status"])


@keys_app.callback(invoke_without_command=True)
def keys_group(ctx: typer.Context) -> None:
    if ctx.invoked_subcommand is None:
        _show_group_help(ctx, ["keyhold keys password --password-new-file ./new-password"])


@agent_app.command("status")
def agent_status(ctx: typer.Context) -> None:
    """Report the agent's lifecycle status, and its details when it is live."""

    _run(ctx.obj, _run_agent_status(ctx.obj))


@agent_app.command("stop")
def agent_stop(ctx: typer.Context) -> None:
    """Ask the agent to shut down."""

    _run(ctx.obj, _run_agent_stop(ctx.obj))


@agent_app.command("unlock")
def agent_unlock(ctx: typer.Context) -> None:
    """Authenticate with the password and print a session token for KH_TOKEN."""

    _run(ctx.obj, _run_agent_unlock(ctx.obj))


@agent_app.command("lock")
def agent_lock(ctx: typer.Context) -> None:
    """Revoke every session token the agent has issued."""

    _run(ctx.obj, _run_agent_lock(ctx.obj))


@keys_app.command("password")
def keys_password(
    ctx: typer.Context,
    password_new_file: Optional[Path] = typer.Option(  # noqa: B008
        None,
        "--password-new-file",
        help="Path to a file containing the new password.",
    ),
) -> None:
    """Change the agent's root password."""

    _run(ctx.obj, _run_keys_password(ctx.obj, password_new_file))


@app.command("call")
def call(
    ctx: typer.Context,
    method: str = typer.Argument(..., help="RPC method name."),
    params: Optional[str] = typer.Argument(None, help="JSON object with call parameters."),
) -> None:
    """Invoke an arbitrary RPC method and print its result."""

    parsed: Dict[str, Any] = {}
    if params:
        try:
            parsed = json.loads(params)
        except ValueError as exc:
            raise typer.BadParameter(f"invalid JSON: {exc}", param_hint="'PARAMS'") from exc
        if not isinstance(parsed, dict):
            raise typer.BadParameter("parameters must be a JSON object", param_hint="'PARAMS'")
    _run(ctx.obj, _run_call(ctx.obj, method, parsed))


def _client_options(state: CLIState) -> ClientOptions:
    return process_client_options(
        state.node_path, state.node_id, state.client_host, state.client_port
    )


async def _connect_client(options: ClientOptions) -> AgentClient:
    client = AgentClient(options.node_id, options.client_host, options.client_port)
    await client.connect()
    return client


async def _run_call(state: CLIState, method: str, params: Dict[str, Any]) -> None:
    options = _client_options(state)
    meta = process_authentication(state.password_file)
    client = await _connect_client(options)
    try:
        result = await retry_authentication(
            lambda auth: client.call(method, params, metadata=auth), meta
        )
    finally:
        await client.close()
    _print_result(state, result)


async def _run_agent_status(state: CLIState) -> None:
    client_status = process_client_status(
        state.node_path, state.node_id, state.client_host, state.client_port
    )
    status_info = client_status.status_info
    # Without explicit options only a LIVE agent can be reached.
    if not client_status.explicit and not status_info.live:
        _print_result(state, {"status": status_info.status, **status_info.data})
        return

    meta = process_authentication(state.password_file)
    client = await _connect_client(client_status.options())
    try:
        response = await retry_authentication(
            lambda auth: client.call("agent_status", metadata=auth), meta
        )
    finally:
        await client.close()
    result: Dict[str, Any] = {"status": "LIVE"}
    if isinstance(response, dict):
        result.update(response)
    _print_result(state, result)


async def _run_agent_stop(state: CLIState) -> None:
    client_status = process_client_status(
        state.node_path, state.node_id, state.client_host, state.client_port
    )
    status = client_status.status_info.status
    if not client_status.explicit:
        if status == STATUS_DEAD:
            console.print("Agent is already dead")
            return
        if status == STATUS_STOPPING:
            console.print("Agent is already stopping")
            return
        if status == STATUS_STARTING:
            raise AgentStatusError("Agent is starting")

    meta = process_authentication(state.password_file)
    client = await _connect_client(client_status.options())
    try:
        await retry_authentication(lambda auth: client.call("agent_stop", metadata=auth), meta)
    finally:
        await client.close()
    console.print("Stopping Agent")


async def _run_agent_unlock(state: CLIState) -> None:
    options = _client_options(state)
    password = process_password(state.password_file)
    if password is None:
        raise PasswordMissingError()
    meta = {"authorization": encode_auth_from_password(password)}
    client = await _connect_client(options)
    try:
        response = await retry_authentication(
            lambda auth: client.call("agent_unlock", metadata=auth), meta
        )
    finally:
        await client.close()
    token = response.get("token") if isinstance(response, dict) else response
    _print_result(state, {"token": token})


async def _run_agent_lock(state: CLIState) -> None:
    options = _client_options(state)
    meta = process_authentication(state.password_file)
    client = await _connect_client(options)
    try:
        await retry_authentication(lambda auth: client.call("agent_lock", metadata=auth), meta)
    finally:
        await client.close()


async def _run_keys_password(state: CLIState, password_new_file: Optional[Path]) -> None:
    options = _client_options(state)
    meta = process_authentication(state.password_file)
    # KH_PASSWORD authenticates this call, so it cannot double as the new password.
    password_new = process_new_password(password_new_file, existing=True)
    if password_new is None:
        raise PasswordMissingError()
    client = await _connect_client(options)
    try:
        await retry_authentication(
            lambda auth: client.call(
                "keys_password_change", {"password": password_new}, metadata=auth
            ),
            meta,
        )
    finally:
        await client.close()


def main_entrypoint() -> None:
    try:
        code = app(standalone_mode=False)
    except UsageError as exc:
        exc.show()
        raise SystemExit(sysexits.USAGE)
    except Abort:
        console.print("\n[yellow]Aborted[/yellow]")
        raise SystemExit(130)
    raise SystemExit(code if isinstance(code, int) else 0)


if __name__ == "__main__":  # pragma: no cover - manual invocation
    main_entrypoint()
