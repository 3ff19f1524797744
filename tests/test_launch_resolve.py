from __future__ import annotations

from pathlib import Path

from elp_bridge.launch import (
    ServerLaunchSpec,
    bundled_server_path,
    missing_bundled_server,
    resolve,
    split_server_args,
)
from elp_bridge.schema import ClientSettings, TraceLevel

INSTALL = Path("/opt/elp-bridge")


def test_resolve_empty_server_path_uses_bundled_binary() -> None:
    spec = resolve({"serverPath": "", "serverArgs": "server"}, install_root=INSTALL, platform="linux")
    assert spec == ServerLaunchSpec(
        executable_path=str(INSTALL / "bin" / "elp"),
        arguments=("server",),
    )


def test_resolve_windows_bundled_binary_has_exe_suffix() -> None:
    spec = resolve({}, install_root=INSTALL, platform="win32")
    assert spec.executable_path.endswith("elp.exe")


def test_resolve_explicit_server_path_is_used_verbatim() -> None:
    spec = resolve(
        {"serverPath": "/usr/local/bin/elp", "serverArgs": "server --log-file /tmp/elp.log"},
        install_root=INSTALL,
    )
    assert spec.executable_path == "/usr/local/bin/elp"
    assert spec.arguments == ("server", "--log-file", "/tmp/elp.log")
    assert spec.argv() == ["/usr/local/bin/elp", "server", "--log-file", "/tmp/elp.log"]


def test_resolve_is_pure_and_deterministic() -> None:
    settings = {"serverPath": "elp", "serverArgs": "server", "traceLevel": "verbose"}
    first = resolve(settings, install_root=INSTALL)
    second = resolve(dict(settings), install_root=INSTALL)
    assert first == second
    assert first.trace_level is TraceLevel.VERBOSE


def test_resolve_invalid_settings_fall_back_to_defaults() -> None:
    spec = resolve({"serverArgs": 42, "traceLevel": "loud"}, install_root=INSTALL, platform="linux")
    assert spec.arguments == ("server",)
    assert spec.trace_level is TraceLevel.OFF


def test_resolve_accepts_settings_model() -> None:
    settings = ClientSettings(server_path="elp", server_args="")
    spec = resolve(settings, install_root=INSTALL)
    assert spec.arguments == ()


def test_split_server_args_collapses_whitespace() -> None:
    assert split_server_args("  server   --foo\tbar \n") == ("server", "--foo", "bar")
    assert split_server_args("") == ()


def test_bundled_server_path_layout() -> None:
    assert bundled_server_path(INSTALL, platform="darwin") == INSTALL / "bin" / "elp"


def test_missing_bundled_server_is_fatal_configuration(tmp_path: Path) -> None:
    error = missing_bundled_server(ClientSettings(), install_root=tmp_path, platform="linux")
    assert error is not None
    assert error.fatal
    assert error.notify_user
    assert error.key == "serverPath"


def test_missing_bundled_server_ignored_when_binary_or_path_present(tmp_path: Path) -> None:
    binary = bundled_server_path(tmp_path, platform="linux")
    binary.parent.mkdir(parents=True)
    binary.write_text("#!/bin/sh\n", encoding="utf-8")
    assert missing_bundled_server(ClientSettings(), install_root=tmp_path, platform="linux") is None
    assert (
        missing_bundled_server(
            ClientSettings(server_path="/elsewhere/elp"),
            install_root=tmp_path / "missing",
        )
        is None
    )
