from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import sys
from typing import Mapping

from elp_bridge.exceptions import ConfigurationError
from elp_bridge.schema import ClientSettings, TraceLevel, validate_settings

BUNDLED_SERVER_DIR = "bin"
BUNDLED_SERVER_NAME = "elp"


@dataclass(frozen=True)
class ServerLaunchSpec:
    executable_path: str
    arguments: tuple[str, ...]
    trace_level: TraceLevel = TraceLevel.OFF

    def argv(self) -> list[str]:
        return [self.executable_path, *self.arguments]


def bundled_server_path(install_root: Path, *, platform: str | None = None) -> Path:
    name = BUNDLED_SERVER_NAME
    if (platform or sys.platform).startswith("win"):
        name += ".exe"
    return install_root / BUNDLED_SERVER_DIR / name


def split_server_args(server_args: str) -> tuple[str, ...]:
    return tuple(token for token in server_args.split() if token)


def resolve(
    settings: ClientSettings | Mapping[str, object] | None,
    *,
    install_root: Path,
    platform: str | None = None,
) -> ServerLaunchSpec:
    """Turn a settings snapshot into the command line for the server.

    Pure: the bundled path is derived, not checked for existence.
    """
    resolved, _problems = validate_settings(settings)
    executable = resolved.server_path
    if executable == "":
        executable = str(bundled_server_path(install_root, platform=platform))
    return ServerLaunchSpec(
        executable_path=executable,
        arguments=split_server_args(resolved.server_args),
        trace_level=resolved.trace_level,
    )


def missing_bundled_server(
    settings: ClientSettings,
    *,
    install_root: Path,
    platform: str | None = None,
) -> ConfigurationError | None:
    """Report the one fatal configuration case: no executable to fall back on."""
    if settings.server_path != "":
        return None
    bundled = bundled_server_path(install_root, platform=platform)
    if bundled.is_file():
        return None
    return ConfigurationError(
        f"serverPath is empty and no bundled server exists at {bundled}",
        key="serverPath",
        fatal=True,
    )
