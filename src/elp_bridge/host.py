"""The editor host as seen from the bridge, plus a headless implementation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Protocol, Sequence, TypeAlias

import typer

from elp_bridge.documents import FileChangeType, FileEvent

CommandCallback: TypeAlias = Callable[..., Awaitable[object]]
FileWatchCallback: TypeAlias = Callable[[Sequence[FileEvent]], Awaitable[None]]


class MessageLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class Disposable(Protocol):
    def dispose(self) -> None: ...


class EditorHost(Protocol):
    def register_command(self, command_id: str, callback: CommandCallback) -> Disposable: ...

    def register_debug_adapter(self, debug_type: str, factory: Callable[[], object]) -> Disposable: ...

    def show_message(self, level: MessageLevel, message: str) -> None: ...

    def watch_files(self, glob: str, callback: FileWatchCallback) -> Disposable: ...


@dataclass
class Registration:
    on_dispose: Callable[[], None]
    disposed: bool = False

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        self.on_dispose()


class PollingFileWatcher:
    """Watch a glob under a root by comparing mtimes on a fixed interval."""

    def __init__(
        self,
        root: Path,
        glob: str,
        callback: FileWatchCallback,
        *,
        interval: float = 1.0,
    ) -> None:
        self.root = root
        self.glob = glob
        self._callback = callback
        self._interval = interval
        self._snapshot: dict[Path, int] = {}
        self._task: asyncio.Task[None] | None = None

    def scan(self) -> dict[Path, int]:
        found: dict[Path, int] = {}
        for path in self.root.glob(self.glob):
            try:
                if path.is_file():
                    found[path] = path.stat().st_mtime_ns
            except FileNotFoundError:
                continue
        return found

    def poll(self) -> list[FileEvent]:
        current = self.scan()
        previous = self._snapshot
        events: list[FileEvent] = []
        for path in sorted(current):
            if path not in previous:
                events.append(FileEvent(path, FileChangeType.CREATED))
            elif current[path] != previous[path]:
                events.append(FileEvent(path, FileChangeType.CHANGED))
        for path in sorted(previous):
            if path not in current:
                events.append(FileEvent(path, FileChangeType.DELETED))
        self._snapshot = current
        return events

    def start(self) -> None:
        self._snapshot = self.scan()
        self._task = asyncio.create_task(self._run(), name=f"elp-watch:{self.glob}")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            events = self.poll()
            if events:
                await self._callback(events)

    def dispose(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None


@dataclass
class HeadlessHost:
    """Host used by the command line: commands in a dict, messages echoed."""

    workspace_root: Path
    echo_fn: Callable[..., None] = typer.echo
    poll_interval: float = 1.0
    commands: dict[str, CommandCallback] = field(default_factory=dict)
    debug_adapters: dict[str, Callable[[], object]] = field(default_factory=dict)
    messages: list[tuple[MessageLevel, str]] = field(default_factory=list)

    def register_command(self, command_id: str, callback: CommandCallback) -> Disposable:
        self.commands[command_id] = callback
        return Registration(lambda: self.commands.pop(command_id, None))

    def register_debug_adapter(self, debug_type: str, factory: Callable[[], object]) -> Disposable:
        self.debug_adapters[debug_type] = factory
        return Registration(lambda: self.debug_adapters.pop(debug_type, None))

    def show_message(self, level: MessageLevel, message: str) -> None:
        self.messages.append((level, message))
        self.echo_fn(f"[{level.value}] {message}", err=level is not MessageLevel.INFO)

    def watch_files(self, glob: str, callback: FileWatchCallback) -> Disposable:
        watcher = PollingFileWatcher(
            self.workspace_root,
            glob,
            callback,
            interval=self.poll_interval,
        )
        watcher.start()
        return watcher

    async def execute_command(self, command_id: str, *args: object) -> object:
        callback = self.commands.get(command_id)
        if callback is None:
            raise KeyError(command_id)
        return await callback(*args)
