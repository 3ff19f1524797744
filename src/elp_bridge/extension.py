"""Activation and deactivation of the bridge inside a host editor.

`ElpExtension.init` wires the log channel, settings, supervisor, command
registry and debug activation, schedules the session start, and returns an
`ExtensionHandle` without waiting for the server. `ElpExtension.dispose`
returns only after the session has reached Stopped.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Mapping, Sequence

from elp_bridge.channel import ChannelOpener
from elp_bridge.commands.handlers import register_builtin_commands
from elp_bridge.commands.registry import CommandRegistry
from elp_bridge.config import WORKSPACE_SETTINGS_NAME, SettingsSnapshot, load_settings
from elp_bridge.debug_adapter import DebugActivationBoundary, DebugActivationHandle
from elp_bridge.documents import DocumentSelector, FileEvent, SyncConfig
from elp_bridge.exceptions import AlreadyRunningError, BridgeError, ConfigurationError
from elp_bridge.host import Disposable, EditorHost, MessageLevel
from elp_bridge.launch import ServerLaunchSpec, missing_bundled_server, resolve
from elp_bridge.log_channel import DEFAULT_CHANNEL_NAME, LogChannel
from elp_bridge.session import ClientSession, SessionState
from elp_bridge.supervisor import ProcessLauncher, SessionSupervisor, spawn_server_process
from elp_bridge.timeouts import timeout_policy_from_settings

CLIENT_ID = "elp"
CLIENT_NAME = "Erlang Language Platform"


@dataclass(frozen=True)
class ExtensionContext:
    host: EditorHost
    install_root: Path
    workspace_root: Path
    user_settings_path: Path | None = None
    overrides: Mapping[str, object] = field(default_factory=dict)

    def as_absolute_path(self, relative: str | Path) -> Path:
        return self.install_root / relative


def notify_user(host: EditorHost, error: BridgeError) -> None:
    if not error.notify_user:
        return
    level = MessageLevel.ERROR if error.level >= logging.ERROR else MessageLevel.WARNING
    host.show_message(level, f"{CLIENT_NAME}: {error.message}")


class ExtensionHandle:
    """Everything one activation owns; released by ElpExtension.dispose."""

    def __init__(
        self,
        context: ExtensionContext,
        *,
        log: LogChannel,
        supervisor: SessionSupervisor,
    ) -> None:
        self.context = context
        self.log = log
        self.supervisor = supervisor
        self.registry = CommandRegistry(supervisor.current, log=log, on_error=self.report)
        self.snapshot: SettingsSnapshot | None = None
        self.launch_spec: ServerLaunchSpec | None = None
        self.start_task: asyncio.Task[ClientSession | None] | None = None
        self.debug_task: asyncio.Task[DebugActivationHandle] | None = None
        self.disposables: list[Disposable] = []
        self.disposed = False
        self.extension: ElpExtension | None = None

    @property
    def session(self) -> ClientSession | None:
        return self.supervisor.session

    def report(self, error: BridgeError) -> None:
        notify_user(self.context.host, error)

    def load_settings(self) -> SettingsSnapshot:
        snapshot = load_settings(
            self.context.workspace_root,
            user_settings_path=self.context.user_settings_path,
            overrides=self.context.overrides,
        )
        env_problems: list[ConfigurationError] = []
        timeouts = timeout_policy_from_settings(snapshot.settings, env_problems)
        for problem in (*snapshot.problems, *env_problems):
            self.log.report(problem)
        self.snapshot = snapshot
        self.launch_spec = resolve(snapshot.settings, install_root=self.context.install_root)
        self.supervisor.timeouts = timeouts
        return snapshot

    def _fatal_configuration(self, snapshot: SettingsSnapshot) -> bool:
        error = missing_bundled_server(snapshot.settings, install_root=self.context.install_root)
        if error is None:
            return False
        self.log.report(error)
        self.report(error)
        return True

    async def start_session(self) -> ClientSession | None:
        snapshot = self.snapshot or self.load_settings()
        spec = self.launch_spec
        if spec is None or self._fatal_configuration(snapshot):
            return None
        try:
            return await self.supervisor.start(spec)
        except AlreadyRunningError as exc:
            self.log.report(exc)
            return None
        except BridgeError:
            # The supervisor has already logged and notified.
            return None

    async def wait_started(self) -> ClientSession | None:
        if self.start_task is None:
            return self.supervisor.current()
        return await self.start_task

    async def reload_settings(self, *, force: bool = False) -> ClientSession | None:
        """Re-read settings and restart the session if the launch spec changed."""
        if self.disposed:
            return None
        snapshot = self.load_settings()
        spec = self.launch_spec
        session = self.supervisor.session
        if (
            not force
            and session is not None
            and session.state is SessionState.RUNNING
            and session.launch_spec == spec
        ):
            self.log.info("settings changed; server command line unchanged")
            return session
        if spec is None or self._fatal_configuration(snapshot):
            return None
        try:
            if session is None:
                return await self.supervisor.start(spec)
            self.log.info("restarting server")
            return await self.supervisor.restart(session, spec)
        except AlreadyRunningError as exc:
            self.log.report(exc)
            self.report(exc)
            return None
        except BridgeError:
            # The supervisor has already logged and notified.
            return None

    async def on_file_events(self, events: Sequence[FileEvent]) -> None:
        session = self.supervisor.current()
        if session is None or session.channel is None:
            self.log.debug(f"dropping {len(events)} file event(s); no running server")
            return
        try:
            await session.channel.forward_file_events(events)
        except BridgeError as exc:
            self.log.report(exc)

    async def on_settings_file_events(self, _events: Sequence[FileEvent]) -> None:
        await self.reload_settings()


class ElpExtension:
    """Two-method lifecycle: init(context) -> handle, dispose(handle)."""

    def __init__(
        self,
        *,
        launcher: ProcessLauncher = spawn_server_process,
        channel_opener: ChannelOpener | None = None,
        debug_boundary: DebugActivationBoundary | None = None,
        document_selector: DocumentSelector | None = None,
        sync: SyncConfig | None = None,
    ) -> None:
        self._launcher = launcher
        self._channel_opener = channel_opener
        self._debug_boundary = debug_boundary or DebugActivationBoundary()
        self._document_selector = document_selector or DocumentSelector()
        self._sync = sync or SyncConfig()

    def init(self, context: ExtensionContext) -> ExtensionHandle:
        log = LogChannel(DEFAULT_CHANNEL_NAME)
        supervisor = SessionSupervisor(
            log=log,
            root=context.workspace_root,
            document_selector=self._document_selector,
            sync=self._sync,
            launcher=self._launcher,
            channel_opener=self._channel_opener,
            on_error=lambda error: notify_user(context.host, error),
        )
        handle = ExtensionHandle(context, log=log, supervisor=supervisor)
        handle.extension = self
        handle.load_settings()

        register_builtin_commands(
            handle.registry,
            log=log,
            restart=lambda: handle.reload_settings(force=True),
        )
        handle.disposables.extend(handle.registry.attach(context.host))

        log.info("Activating debugger")
        handle.debug_task = self._debug_boundary.launch(context, log)

        for glob in self._sync.file_event_globs:
            handle.disposables.append(context.host.watch_files(glob, handle.on_file_events))
        handle.disposables.append(
            context.host.watch_files(WORKSPACE_SETTINGS_NAME, handle.on_settings_file_events)
        )

        handle.start_task = asyncio.create_task(handle.start_session(), name="elp-session-start")
        return handle

    async def dispose(self, handle: ExtensionHandle) -> None:
        if handle.disposed:
            return
        handle.disposed = True
        for disposable in reversed(handle.disposables):
            disposable.dispose()
        handle.disposables.clear()
        if handle.start_task is not None:
            try:
                await handle.start_task
            except Exception as exc:  # the supervisor is stopped regardless
                handle.log.error(f"server start failed: {exc!r}")
        await handle.supervisor.stop()
        if handle.debug_task is not None:
            debug_handle = await handle.debug_task
            debug_handle.dispose()
        handle.log.info("deactivated")


def activate(context: ExtensionContext, *, extension: ElpExtension | None = None) -> ExtensionHandle:
    return (extension or ElpExtension()).init(context)


async def deactivate(handle: ExtensionHandle | None) -> None:
    if handle is None:
        return
    await (handle.extension or ElpExtension()).dispose(handle)
