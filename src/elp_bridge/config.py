from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, TypeAlias
import tomllib

from elp_bridge.exceptions import ConfigurationError
from elp_bridge.schema import SETTINGS_SECTION, ClientSettings, validate_settings

WORKSPACE_SETTINGS_NAME = ".elp_bridge.toml"
USER_SETTINGS_REL_PATH = Path(".config") / "elp_bridge" / "settings.toml"

TomlTable: TypeAlias = dict[str, object]


@dataclass(frozen=True)
class SettingsSnapshot:
    """Settings read once from every layer, already validated."""

    settings: ClientSettings
    problems: tuple[ConfigurationError, ...] = ()
    sources: tuple[Path, ...] = ()
    raw: Mapping[str, object] = field(default_factory=dict)


def default_user_settings_path() -> Path:
    return Path.home() / USER_SETTINGS_REL_PATH


def workspace_settings_path(workspace_root: Path) -> Path:
    return workspace_root / WORKSPACE_SETTINGS_NAME


def _load_toml(path: Path) -> tuple[TomlTable, ConfigurationError | None]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}, None
    except OSError as exc:
        return {}, ConfigurationError(f"cannot read settings file {path}: {exc}")
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        return {}, ConfigurationError(f"malformed settings file {path}: {exc}")
    return data, None


def _section(data: TomlTable, path: Path) -> tuple[TomlTable, ConfigurationError | None]:
    section = data.get(SETTINGS_SECTION, {})
    if isinstance(section, dict):
        return section, None
    return {}, ConfigurationError(
        f"[{SETTINGS_SECTION}] in {path} must be a table", key=SETTINGS_SECTION
    )


def merge_settings(*layers: Mapping[str, object] | None) -> TomlTable:
    merged: TomlTable = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            if value is None:
                continue
            merged[str(key)] = value
    return merged


def load_settings(
    workspace_root: Path,
    *,
    user_settings_path: Path | None = None,
    overrides: Mapping[str, object] | None = None,
) -> SettingsSnapshot:
    """Read user then workspace settings; later layers win.

    Unreadable or malformed files contribute nothing and are reported as
    ConfigurationError values on the snapshot.
    """
    user_path = user_settings_path or default_user_settings_path()
    paths = (user_path, workspace_settings_path(workspace_root))
    problems: list[ConfigurationError] = []
    sources: list[Path] = []
    layers: list[TomlTable] = []
    for path in paths:
        data, problem = _load_toml(path)
        if problem is not None:
            problems.append(problem)
            continue
        if not data:
            continue
        section, problem = _section(data, path)
        if problem is not None:
            problems.append(problem)
            continue
        sources.append(path)
        layers.append(section)
    raw = merge_settings(*layers, overrides)
    settings, invalid = validate_settings(raw)
    problems.extend(invalid)
    return SettingsSnapshot(
        settings=settings,
        problems=tuple(problems),
        sources=tuple(sources),
        raw=raw,
    )
