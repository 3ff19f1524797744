from __future__ import annotations

from pathlib import Path

from elp_bridge.config import WORKSPACE_SETTINGS_NAME, load_settings, merge_settings
from elp_bridge.exceptions import ConfigurationError, NeverThrown
from elp_bridge.schema import ClientSettings, TraceLevel, validate_settings
from elp_bridge.timeouts import (
    HANDSHAKE_TIMEOUT_ENV,
    REQUEST_TIMEOUT_ENV,
    SHUTDOWN_TIMEOUT_ENV,
    TimeoutPolicy,
    timeout_policy_from_settings,
)
from tests.lsp_helpers import env_scope


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_match_documented_values() -> None:
    settings = ClientSettings()
    assert settings.version == 1
    assert settings.server_path == ""
    assert settings.server_args == "server"
    assert settings.trace_level is TraceLevel.OFF
    assert (settings.handshake_timeout, settings.request_timeout, settings.shutdown_timeout) == (
        10.0,
        30.0,
        5.0,
    )


def test_validate_settings_drops_only_invalid_keys() -> None:
    settings, problems = validate_settings(
        {"serverPath": "/usr/bin/elp", "handshakeTimeout": -1, "traceLevel": "messages"}
    )
    assert settings.server_path == "/usr/bin/elp"
    assert settings.trace_level is TraceLevel.MESSAGES
    assert settings.handshake_timeout == 10.0
    assert [problem.key for problem in problems] == ["handshakeTimeout"]
    assert not problems[0].fatal
    assert not problems[0].notify_user


def test_validate_settings_rejects_unknown_version() -> None:
    settings, problems = validate_settings({"version": 2, "serverArgs": "server --verbose"})
    assert settings.version == 1
    assert settings.server_args == "server --verbose"
    assert problems and problems[0].key == "version"


def test_validate_settings_non_table_uses_defaults() -> None:
    settings, problems = validate_settings(["serverPath"])  # type: ignore[arg-type]
    assert settings == ClientSettings()
    assert len(problems) == 1


def test_validate_settings_ignores_unknown_keys() -> None:
    settings, problems = validate_settings({"someFutureKey": True})
    assert settings == ClientSettings()
    assert problems == []


def test_merge_settings_later_layers_win_and_none_is_skipped() -> None:
    merged = merge_settings(
        {"serverPath": "user", "serverArgs": "server"},
        None,
        {"serverPath": "workspace", "traceLevel": None},
    )
    assert merged == {"serverPath": "workspace", "serverArgs": "server"}


def test_load_settings_layers_user_then_workspace(tmp_path: Path) -> None:
    user = _write(
        tmp_path / "home" / "settings.toml",
        '[elpClient]\nserverPath = "/user/elp"\ntraceLevel = "verbose"\n',
    )
    workspace = tmp_path / "ws"
    workspace_file = _write(
        workspace / WORKSPACE_SETTINGS_NAME,
        '[elpClient]\nserverPath = "/workspace/elp"\n',
    )
    snapshot = load_settings(workspace, user_settings_path=user)
    assert snapshot.settings.server_path == "/workspace/elp"
    assert snapshot.settings.trace_level is TraceLevel.VERBOSE
    assert snapshot.sources == (user, workspace_file)
    assert snapshot.problems == ()


def test_load_settings_overrides_win_over_files(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    _write(workspace / WORKSPACE_SETTINGS_NAME, '[elpClient]\nserverArgs = "server"\n')
    snapshot = load_settings(
        workspace,
        user_settings_path=tmp_path / "absent.toml",
        overrides={"serverArgs": "server --no-buck"},
    )
    assert snapshot.settings.server_args == "server --no-buck"


def test_load_settings_reports_malformed_file_and_keeps_defaults(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    _write(workspace / WORKSPACE_SETTINGS_NAME, "[elpClient\nserverPath = ")
    snapshot = load_settings(workspace, user_settings_path=tmp_path / "absent.toml")
    assert snapshot.settings == ClientSettings()
    assert snapshot.sources == ()
    assert len(snapshot.problems) == 1
    assert "malformed settings file" in snapshot.problems[0].message


def test_load_settings_reports_non_table_section(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    _write(workspace / WORKSPACE_SETTINGS_NAME, 'elpClient = "oops"\n')
    snapshot = load_settings(workspace, user_settings_path=tmp_path / "absent.toml")
    assert snapshot.settings == ClientSettings()
    assert snapshot.problems[0].key == "elpClient"


def test_timeout_policy_from_settings_env_wins() -> None:
    settings = ClientSettings(handshake_timeout=3.0, request_timeout=7.0)
    with env_scope({HANDSHAKE_TIMEOUT_ENV: "0.5", REQUEST_TIMEOUT_ENV: None}):
        policy = timeout_policy_from_settings(settings)
    assert policy == TimeoutPolicy(handshake_seconds=0.5, request_seconds=7.0, shutdown_seconds=5.0)


def test_invalid_env_timeouts_fall_back_to_settings() -> None:
    settings = ClientSettings(request_timeout=12.0, shutdown_timeout=4.0)
    problems: list[ConfigurationError] = []
    invalid = {HANDSHAKE_TIMEOUT_ENV: "-1", REQUEST_TIMEOUT_ENV: "soon", SHUTDOWN_TIMEOUT_ENV: "nan"}
    with env_scope(invalid):
        policy = timeout_policy_from_settings(settings, problems)
    assert policy == TimeoutPolicy(handshake_seconds=10.0, request_seconds=12.0, shutdown_seconds=4.0)
    assert [problem.key for problem in problems] == [
        HANDSHAKE_TIMEOUT_ENV,
        REQUEST_TIMEOUT_ENV,
        SHUTDOWN_TIMEOUT_ENV,
    ]
    assert all(not problem.fatal for problem in problems)
    assert "'soon'" in problems[1].message


def test_timeout_policy_rejects_non_positive_values() -> None:
    try:
        TimeoutPolicy(shutdown_seconds=0)
    except NeverThrown as exc:
        assert exc.env["field"] == "shutdown_seconds"
    else:
        raise AssertionError("Expected NeverThrown for a zero shutdown timeout")
