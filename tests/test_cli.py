from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from elp_bridge import cli
from elp_bridge.config import WORKSPACE_SETTINGS_NAME

runner = CliRunner()


def _resolve(workspace: Path, install_root: Path, *extra: str):
    return runner.invoke(
        cli.app,
        [
            "resolve",
            "--root",
            str(workspace),
            "--install-root",
            str(install_root),
            "--user-config",
            str(workspace.parent / "user-settings.toml"),
            *extra,
        ],
    )


def test_resolve_prints_bundled_command_line(install_root: Path, workspace: Path) -> None:
    result = _resolve(workspace, install_root)
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["executable_path"] == str((install_root / "bin" / "elp").resolve())
    assert payload["arguments"] == ["server"]
    assert payload["trace_level"] == "off"
    assert payload["problems"] == []


def test_resolve_reads_workspace_settings(install_root: Path, workspace: Path) -> None:
    settings = workspace / WORKSPACE_SETTINGS_NAME
    settings.write_text(
        '[elpClient]\nserverPath = "/usr/local/bin/elp"\nserverArgs = "server --log"\n'
        'traceLevel = "bogus"\n',
        encoding="utf-8",
    )
    result = _resolve(workspace, install_root)
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["executable_path"] == "/usr/local/bin/elp"
    assert payload["arguments"] == ["server", "--log"]
    assert payload["trace_level"] == "off"
    assert payload["sources"] == [str(settings.resolve())]
    assert len(payload["problems"]) == 1
    assert "traceLevel" in payload["problems"][0]


def test_resolve_command_line_overrides(install_root: Path, workspace: Path) -> None:
    result = _resolve(workspace, install_root, "--server-path", "elp", "--trace", "messages")
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["executable_path"] == "elp"
    assert payload["trace_level"] == "messages"


def test_exec_rejects_unknown_command(workspace: Path) -> None:
    result = runner.invoke(cli.app, ["exec", "elp.nothing", "--root", str(workspace)])
    assert result.exit_code == 2


def test_exec_rejects_non_array_arguments(workspace: Path) -> None:
    result = runner.invoke(
        cli.app,
        ["exec", "elp.expandMacro", '{"uri": 1}', "--root", str(workspace)],
    )
    assert result.exit_code == 2


def test_exec_show_output_reports_spawn_failure(install_root: Path, workspace: Path) -> None:
    result = runner.invoke(
        cli.app,
        [
            "exec",
            "elp.showOutput",
            "--root",
            str(workspace),
            "--install-root",
            str(install_root),
            "--user-config",
            str(workspace.parent / "user-settings.toml"),
            "--server-path",
            str(workspace / "no-such-elp"),
        ],
    )
    assert result.exit_code == 0, result.output
    assert "SpawnError: server executable not found" in result.output
    assert "Activating debugger" in result.output


def test_exec_with_wrong_arity_reports_error(install_root: Path, workspace: Path) -> None:
    result = runner.invoke(
        cli.app,
        [
            "exec",
            "elp.expandMacro",
            '["file:///a.erl", 1]',
            "--root",
            str(workspace),
            "--install-root",
            str(install_root),
            "--user-config",
            str(workspace.parent / "user-settings.toml"),
            "--server-path",
            str(workspace / "no-such-elp"),
        ],
    )
    assert result.exit_code == 0, result.output
    assert "invalid arguments" in result.output
    assert result.exception is None
