from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from elp_bridge.commands.command_ids import COMMAND_IDS
from elp_bridge.config import load_settings
from elp_bridge.extension import (
    CLIENT_NAME,
    ExtensionContext,
    activate,
    deactivate,
)
from elp_bridge.host import HeadlessHost
from elp_bridge.launch import resolve

app = typer.Typer(add_completion=False)

PACKAGE_ROOT = Path(__file__).resolve().parent


def _overrides(
    server_path: str | None,
    server_args: str | None,
    trace: str | None,
) -> dict[str, object]:
    overrides: dict[str, object] = {}
    if server_path is not None:
        overrides["serverPath"] = server_path
    if server_args is not None:
        overrides["serverArgs"] = server_args
    if trace is not None:
        overrides["traceLevel"] = trace
    return overrides


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _context(
    *,
    root: Path,
    install_root: Path | None,
    user_config: Path | None,
    overrides: dict[str, object],
    poll_interval: float = 1.0,
) -> ExtensionContext:
    workspace_root = root.resolve()
    return ExtensionContext(
        host=HeadlessHost(workspace_root, poll_interval=poll_interval),
        install_root=(install_root or PACKAGE_ROOT).resolve(),
        workspace_root=workspace_root,
        user_settings_path=user_config,
        overrides=overrides,
    )


@app.command("resolve")
def resolve_command(
    root: Path = typer.Option(Path("."), "--root"),
    install_root: Optional[Path] = typer.Option(None, "--install-root"),
    user_config: Optional[Path] = typer.Option(None, "--user-config"),
    server_path: Optional[str] = typer.Option(None, "--server-path"),
    server_args: Optional[str] = typer.Option(None, "--server-args"),
    trace: Optional[str] = typer.Option(None, "--trace"),
) -> None:
    """Print the server command line the current settings resolve to."""
    snapshot = load_settings(
        root.resolve(),
        user_settings_path=user_config,
        overrides=_overrides(server_path, server_args, trace),
    )
    spec = resolve(snapshot.settings, install_root=(install_root or PACKAGE_ROOT).resolve())
    payload = {
        "executable_path": spec.executable_path,
        "arguments": list(spec.arguments),
        "trace_level": spec.trace_level.value,
        "sources": [str(path) for path in snapshot.sources],
        "problems": [problem.message for problem in snapshot.problems],
    }
    typer.echo(json.dumps(payload, indent=2, sort_keys=True))


async def _run_bridge(context: ExtensionContext, duration: float | None) -> int:
    handle = activate(context)
    try:
        session = await handle.wait_started()
        if session is None:
            return 1
        typer.echo(f"{CLIENT_NAME} running (pid {getattr(session.process, 'pid', '?')})")
        if duration is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration)
    finally:
        await deactivate(handle)
    return 0


@app.command("run")
def run_command(
    root: Path = typer.Option(Path("."), "--root"),
    install_root: Optional[Path] = typer.Option(None, "--install-root"),
    user_config: Optional[Path] = typer.Option(None, "--user-config"),
    server_path: Optional[str] = typer.Option(None, "--server-path"),
    server_args: Optional[str] = typer.Option(None, "--server-args"),
    trace: Optional[str] = typer.Option(None, "--trace"),
    duration: Optional[float] = typer.Option(
        None, "--duration", help="Stop after this many seconds instead of waiting for Ctrl-C."
    ),
    poll_interval: float = typer.Option(1.0, "--poll-interval"),
    verbose: bool = typer.Option(False, "--verbose/--quiet"),
) -> None:
    """Start the server session and keep it alive until interrupted."""
    _configure_logging(verbose)
    context = _context(
        root=root,
        install_root=install_root,
        user_config=user_config,
        overrides=_overrides(server_path, server_args, trace),
        poll_interval=poll_interval,
    )
    try:
        code = asyncio.run(_run_bridge(context, duration))
    except KeyboardInterrupt:
        code = 0
    raise typer.Exit(code=code)


async def _exec_bridge(
    context: ExtensionContext,
    command_id: str,
    arguments: list[object],
) -> object:
    handle = activate(context)
    try:
        await handle.wait_started()
        return await context.host.execute_command(command_id, *arguments)
    finally:
        await deactivate(handle)


@app.command("exec")
def exec_command(
    command_id: str = typer.Argument(..., help="One of: " + ", ".join(COMMAND_IDS)),
    arguments: str = typer.Argument("[]", help="Command arguments as a JSON array."),
    root: Path = typer.Option(Path("."), "--root"),
    install_root: Optional[Path] = typer.Option(None, "--install-root"),
    user_config: Optional[Path] = typer.Option(None, "--user-config"),
    server_path: Optional[str] = typer.Option(None, "--server-path"),
    server_args: Optional[str] = typer.Option(None, "--server-args"),
    trace: Optional[str] = typer.Option(None, "--trace"),
    verbose: bool = typer.Option(False, "--verbose/--quiet"),
) -> None:
    """Activate, run one editor command, print its result, deactivate."""
    if command_id not in COMMAND_IDS:
        raise typer.BadParameter(f"unknown command {command_id!r}", param_hint="COMMAND_ID")
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"invalid JSON: {exc}", param_hint="ARGUMENTS") from exc
    if not isinstance(parsed, list):
        raise typer.BadParameter("arguments must be a JSON array", param_hint="ARGUMENTS")
    _configure_logging(verbose)
    context = _context(
        root=root,
        install_root=install_root,
        user_config=user_config,
        overrides=_overrides(server_path, server_args, trace),
    )
    result = asyncio.run(_exec_bridge(context, command_id, parsed))
    if isinstance(result, str):
        typer.echo(result)
    else:
        typer.echo(json.dumps(result, indent=2, sort_keys=True))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
