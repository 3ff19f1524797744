from __future__ import annotations

from dataclasses import dataclass
import fnmatch
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlparse

from elp_bridge.rpc import JSONObject

ERLANG_LANGUAGE_ID = "erlang"

# File-name suffixes and exact names the editor treats as Erlang.
ERLANG_SUFFIXES: tuple[str, ...] = (
    ".erl",
    ".hrl",
    ".app.src",
    ".app",
    ".escript",
    ".yrl",
    ".xrl",
)
ERLANG_FILE_NAMES: frozenset[str] = frozenset(
    {
        "rebar.config",
        "rebar.lock",
        "rebar.config.script",
        "sys.config",
        "sys.config.src",
        "sys.ct.config",
        "sys.shell.config",
    }
)

DEFAULT_FILE_EVENT_GLOB = "**/.clientrc"


def language_id_for(path: str | Path) -> str | None:
    name = PurePosixPath(str(path).replace("\\", "/")).name
    if name in ERLANG_FILE_NAMES:
        return ERLANG_LANGUAGE_ID
    if any(name.endswith(suffix) for suffix in ERLANG_SUFFIXES):
        return ERLANG_LANGUAGE_ID
    return None


def uri_scheme(uri: str) -> str:
    return urlparse(uri).scheme or "file"


def uri_path(uri: str) -> str:
    parsed = urlparse(uri)
    if not parsed.scheme:
        return uri
    return unquote(parsed.path)


@dataclass(frozen=True)
class DocumentFilter:
    language: str = ERLANG_LANGUAGE_ID
    scheme: str = "file"

    def matches(self, uri: str, language_id: str | None = None) -> bool:
        if uri_scheme(uri) != self.scheme:
            return False
        effective = language_id or language_id_for(uri_path(uri))
        return effective == self.language

    def to_lsp(self) -> JSONObject:
        return {"scheme": self.scheme, "language": self.language}


@dataclass(frozen=True)
class DocumentSelector:
    filters: tuple[DocumentFilter, ...] = (DocumentFilter(),)

    def matches(self, uri: str, language_id: str | None = None) -> bool:
        return any(item.matches(uri, language_id) for item in self.filters)

    def to_lsp(self) -> list[JSONObject]:
        return [item.to_lsp() for item in self.filters]


def _glob_matches(relative: str, pattern: str) -> bool:
    if fnmatch.fnmatchcase(relative, pattern):
        return True
    # A leading "**/" also matches at the workspace root.
    return pattern.startswith("**/") and fnmatch.fnmatchcase(relative, pattern[3:])


@dataclass(frozen=True)
class SyncConfig:
    """Which filesystem events are forwarded to the server."""

    file_event_globs: tuple[str, ...] = (DEFAULT_FILE_EVENT_GLOB,)

    def matches(self, path: str | Path, *, root: Path | None = None) -> bool:
        candidate = Path(path)
        if root is not None and candidate.is_absolute():
            try:
                candidate = candidate.relative_to(root)
            except ValueError:
                return False
        relative = candidate.as_posix()
        return any(_glob_matches(relative, pattern) for pattern in self.file_event_globs)


class FileChangeType:
    CREATED = 1
    CHANGED = 2
    DELETED = 3


@dataclass(frozen=True)
class FileEvent:
    path: Path
    change: int

    def to_lsp(self) -> JSONObject:
        return {"uri": self.path.resolve().as_uri(), "type": self.change}
