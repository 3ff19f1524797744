"""Process/session supervision for the ELP server.

The supervisor owns zero or one ClientSession per workspace. Lifecycle
operations are serialized by a single asyncio lock: a stop issued while a
start is in flight waits for the spawn and handshake to resolve, then shuts
the fresh session down, so no process is left dangling.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import Awaitable, Callable, TypeAlias

from elp_bridge.channel import ChannelOpener, NotificationCallback, ProtocolChannel, ServerProcess
from elp_bridge.documents import DocumentSelector, SyncConfig
from elp_bridge.exceptions import (
    AlreadyRunningError,
    BridgeError,
    CrashError,
    HandshakeError,
    ShutdownTimeoutError,
    SpawnError,
)
from elp_bridge.launch import ServerLaunchSpec
from elp_bridge.log_channel import LogChannel
from elp_bridge.session import ClientSession, SessionState, transition
from elp_bridge.timeouts import TimeoutPolicy

ProcessLauncher: TypeAlias = Callable[[ServerLaunchSpec, Path | None], Awaitable[ServerProcess]]
ErrorCallback: TypeAlias = Callable[[BridgeError], None]


async def spawn_server_process(spec: ServerLaunchSpec, cwd: Path | None = None) -> ServerProcess:
    """Exec the server with piped stdio; no shell is involved."""
    try:
        return await asyncio.create_subprocess_exec(
            spec.executable_path,
            *spec.arguments,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
        )
    except FileNotFoundError as exc:
        raise SpawnError(
            f"server executable not found: {spec.executable_path}",
            executable=spec.executable_path,
        ) from exc
    except PermissionError as exc:
        raise SpawnError(
            f"server executable is not executable: {spec.executable_path}",
            executable=spec.executable_path,
        ) from exc
    except OSError as exc:
        raise SpawnError(
            f"cannot spawn {spec.executable_path}: {exc}",
            executable=spec.executable_path,
        ) from exc
    except (ValueError, TypeError) as exc:
        # e.g. an embedded NUL byte in the path or an argument
        raise SpawnError(
            f"invalid server command line {spec.argv()!r}: {exc}",
            executable=spec.executable_path,
        ) from exc


class SessionSupervisor:
    def __init__(
        self,
        *,
        log: LogChannel,
        root: Path | None = None,
        document_selector: DocumentSelector | None = None,
        sync: SyncConfig | None = None,
        timeouts: TimeoutPolicy | None = None,
        launcher: ProcessLauncher = spawn_server_process,
        channel_opener: ChannelOpener | None = None,
        on_error: ErrorCallback | None = None,
        on_notification: NotificationCallback | None = None,
    ) -> None:
        self._log = log
        self._root = root
        self.document_selector = document_selector or DocumentSelector()
        self.sync = sync or SyncConfig()
        self.timeouts = timeouts or TimeoutPolicy()
        self._launcher = launcher
        self._channel_opener = channel_opener or ProtocolChannel.open
        self._on_error = on_error
        self._on_notification = on_notification
        self._lock = asyncio.Lock()
        self._session: ClientSession | None = None
        self._start_pending = False
        self._session_tasks: list[asyncio.Task[None]] = []

    @property
    def session(self) -> ClientSession | None:
        return self._session

    def current(self) -> ClientSession | None:
        """The session if it is Running, else None."""
        session = self._session
        if session is not None and session.state is SessionState.RUNNING:
            return session
        return None

    async def start(self, spec: ServerLaunchSpec) -> ClientSession:
        self._reject_if_active()
        if self._start_pending:
            raise AlreadyRunningError("a server start is already in flight")
        self._start_pending = True
        try:
            async with self._lock:
                self._reject_if_active()
                current = self._session
                if current is not None and current.state is SessionState.CRASHED:
                    await self._shutdown(current)
                return await self._launch(spec)
        finally:
            self._start_pending = False

    async def stop(self, session: ClientSession | None = None) -> None:
        if session is not None and session.state is SessionState.STOPPED:
            return
        if session is None and self._session is None and not self._start_pending:
            return
        async with self._lock:
            target = session if session is not None else self._session
            if target is None or target.state is SessionState.STOPPED:
                return
            await self._shutdown(target)

    async def restart(self, session: ClientSession | None, spec: ServerLaunchSpec) -> ClientSession:
        """Stop then start under one lock hold.

        The old process has exited before the new one is spawned.
        """
        async with self._lock:
            for target in (session, self._session):
                if target is not None and target.state is not SessionState.STOPPED:
                    await self._shutdown(target)
            return await self._launch(spec)

    def _reject_if_active(self) -> None:
        current = self._session
        if current is not None and current.state in (SessionState.STARTING, SessionState.RUNNING):
            raise AlreadyRunningError(f"server session is already {current.state.value}")

    def _report(self, error: BridgeError) -> None:
        self._log.report(error)
        if self._on_error is not None:
            self._on_error(error)

    async def _launch(self, spec: ServerLaunchSpec) -> ClientSession:
        session = ClientSession(launch_spec=spec)
        self._session = session
        transition(session, SessionState.STARTING)
        self._log.info(f"starting server: {' '.join(spec.argv())}")
        try:
            await self._connect(session, spec)
        except BaseException:
            if session.state is SessionState.STARTING:
                await self._abandon_start(session)
            raise
        return session

    async def _connect(self, session: ClientSession, spec: ServerLaunchSpec) -> None:
        try:
            process = await self._launcher(spec, self._root)
        except SpawnError as exc:
            self._report(exc)
            raise
        session.process = process
        self._session_tasks = [
            asyncio.create_task(self._drain_stderr(process), name="elp-server-stderr")
        ]
        try:
            channel = await self._channel_opener(
                process,
                self.document_selector,
                self.sync,
                log=self._log,
                root=self._root,
                trace_level=spec.trace_level,
                timeouts=self.timeouts,
                on_notification=self._on_notification,
            )
        except HandshakeError as exc:
            if exc.connection_lost:
                raise await self._on_startup_exit(session) from exc
            self._report(exc)
            raise
        session.channel = channel
        transition(session, SessionState.RUNNING)
        self._session_tasks.append(
            asyncio.create_task(self._watch_exit(session), name="elp-server-exit-watch")
        )
        self._log.info(f"server running (pid {getattr(process, 'pid', '?')})")

    async def _abandon_start(self, session: ClientSession) -> None:
        """Return a half-started session to Stopped and drop it."""
        if session.process is not None:
            await self._terminate(session.process)
            session.exit_code = session.process.returncode
        await self._release(session)
        transition(session, SessionState.STOPPED)
        self._forget(session)

    async def _on_startup_exit(self, session: ClientSession) -> CrashError:
        process = session.process
        if process is not None and not await self._wait_exit(process, self.timeouts.shutdown_seconds):
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
        session.exit_code = process.returncode if process is not None else None
        transition(session, SessionState.CRASHED)
        error = CrashError(
            f"server exited before the handshake completed (exit code {session.exit_code})",
            exit_code=session.exit_code,
        )
        self._report(error)
        return error

    async def _watch_exit(self, session: ClientSession) -> None:
        """Move a Running session to Crashed when its process or channel dies."""
        process = session.process
        if process is None:
            return
        exited = asyncio.ensure_future(process.wait())
        waiters = {exited}
        channel = session.channel
        if channel is not None:
            waiters.add(asyncio.ensure_future(channel.wait_disconnected()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
        if session.state is not SessionState.RUNNING:
            return
        if not exited.done() and channel is not None and channel.connection_lost:
            # EOF on stdout: the process is on its way out
            await self._wait_exit(process, self.timeouts.shutdown_seconds)
        if process.returncode is None:
            reason = "protocol channel failed"
            await self._terminate(process)
        else:
            reason = "server exited unexpectedly"
        if session.state is not SessionState.RUNNING:
            return
        code = process.returncode
        session.exit_code = code
        transition(session, SessionState.CRASHED)
        self._report(
            CrashError(
                f"{reason} (exit code {code}); restart it to continue",
                exit_code=code,
            )
        )

    async def _drain_stderr(self, process: ServerProcess) -> None:
        stream = getattr(process, "stderr", None)
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._log.info(f"[server stderr] {text}")

    async def _shutdown(self, session: ClientSession) -> None:
        if session.state is SessionState.CRASHED:
            await self._release(session)
            transition(session, SessionState.STOPPED)
            self._forget(session)
            self._log.info("acknowledged crashed server session")
            return
        transition(session, SessionState.STOPPING)
        budget = self.timeouts.shutdown_seconds
        channel = session.channel
        if channel is not None:
            try:
                await channel.shutdown(timeout=budget)
            except BridgeError as exc:
                self._log.warning(f"graceful shutdown request failed: {exc.message}")
        process = session.process
        if process is not None:
            if not await self._wait_exit(process, budget):
                self._report(
                    ShutdownTimeoutError(
                        f"server did not exit within {budget:g}s; killing pid {getattr(process, 'pid', '?')}"
                    )
                )
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
            session.exit_code = process.returncode
        await self._release(session)
        transition(session, SessionState.STOPPED)
        self._forget(session)
        self._log.info("server stopped")

    async def _terminate(self, process: ServerProcess) -> None:
        if process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        if not await self._wait_exit(process, self.timeouts.shutdown_seconds):
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    async def _release(self, session: ClientSession) -> None:
        tasks, self._session_tasks = self._session_tasks, []
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if session.channel is not None:
            await session.channel.close()

    def _forget(self, session: ClientSession) -> None:
        if self._session is session:
            self._session = None

    @staticmethod
    async def _wait_exit(process: ServerProcess, timeout: float) -> bool:
        try:
            await asyncio.wait_for(process.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True
