from __future__ import annotations

import asyncio
from contextlib import contextmanager
import json
import os
from pathlib import Path
from typing import Callable, Iterator

from elp_bridge.documents import DocumentSelector, SyncConfig
from elp_bridge.host import MessageLevel, Registration
from elp_bridge.launch import ServerLaunchSpec
from elp_bridge.log_channel import LogChannel
from elp_bridge.rpc import encode_message
from elp_bridge.supervisor import ProcessLauncher, SessionSupervisor
from elp_bridge.timeouts import TimeoutPolicy

FAST_TIMEOUTS = TimeoutPolicy(handshake_seconds=2.0, request_seconds=2.0, shutdown_seconds=2.0)

DEFAULT_INITIALIZE_RESULT = {
    "capabilities": {"textDocumentSync": 1, "hoverProvider": True},
    "serverInfo": {"name": "elp", "version": "test"},
}


def rpc_message(payload: dict) -> bytes:
    body = json.dumps(payload).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("utf-8")
    return header + body


def extract_rpc_messages(buffer: bytes) -> tuple[list[dict], int]:
    """Parse complete frames; returns them with the number of bytes consumed."""
    messages: list[dict] = []
    offset = 0
    while True:
        header_end = buffer.find(b"\r\n\r\n", offset)
        if header_end < 0:
            break
        header = buffer[offset:header_end].decode("utf-8")
        length = None
        for line in header.split("\r\n"):
            if line.lower().startswith("content-length:"):
                length = int(line.split(":", 1)[1].strip())
                break
        if length is None:
            break
        body_start = header_end + 4
        body_end = body_start + length
        if body_end > len(buffer):
            break
        messages.append(json.loads(buffer[body_start:body_end].decode("utf-8")))
        offset = body_end
    return messages, offset


class _ScriptedStdin:
    def __init__(self, server: "ScriptedServer") -> None:
        self._server = server
        self._buffer = b""
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("server stdin is closed")
        self._buffer += data
        messages, consumed = extract_rpc_messages(self._buffer)
        self._buffer = self._buffer[consumed:]
        for message in messages:
            self._server.receive(message)

    async def drain(self) -> None:
        if self.closed:
            raise ConnectionResetError("server stdin is closed")

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


class ScriptedServer:
    """In-memory LSP server answering client frames through a StreamReader.

    Must be created inside a running event loop.
    """

    def __init__(
        self,
        *,
        initialize_result: object = DEFAULT_INITIALIZE_RESULT,
        results: dict[str, object] | None = None,
        silent: set[str] | None = None,
        held: set[str] | None = None,
        exit_on: dict[str, int] | None = None,
        exit_on_exit: bool = True,
    ) -> None:
        self.stdout = asyncio.StreamReader()
        self.stdin = _ScriptedStdin(self)
        self.received: list[dict] = []
        self.results: dict[str, object] = {"initialize": initialize_result, "shutdown": None}
        self.results.update(results or {})
        self.handlers: dict[str, Callable[[dict], object]] = {}
        self.silent = set(silent or ())
        self.held = set(held or ())
        self.exit_on = dict(exit_on or {})
        self.exit_on_exit = exit_on_exit
        self.deferred: list[dict] = []
        self.process: "FakeProcess | None" = None
        self._eof = False

    def methods(self) -> list[str]:
        return [str(message.get("method")) for message in self.received if "method" in message]

    def feed(self, message: dict) -> None:
        if self._eof:
            return
        self.stdout.feed_data(encode_message(message))

    def close_stdout(self) -> None:
        if not self._eof:
            self._eof = True
            self.stdout.feed_eof()

    def receive(self, message: dict) -> None:
        self.received.append(message)
        method = message.get("method")
        if method in self.exit_on and self.process is not None:
            self.process.exit(self.exit_on[method])
            return
        if method == "exit" and self.exit_on_exit and self.process is not None:
            asyncio.get_running_loop().call_soon(self.process.exit, 0)
            return
        if "id" not in message or method is None:
            return
        if method in self.silent:
            return
        if method in self.held:
            self.deferred.append(message)
            return
        self.respond(message)

    def respond(self, message: dict) -> None:
        method = message["method"]
        handler = self.handlers.get(method)
        if handler is not None:
            result = handler(message.get("params"))
        else:
            result = self.results.get(method)
        self.feed({"jsonrpc": "2.0", "id": message["id"], "result": result})

    def release(self, method: str) -> None:
        self.held.discard(method)
        pending = [message for message in self.deferred if message.get("method") == method]
        self.deferred = [message for message in self.deferred if message.get("method") != method]
        for message in pending:
            self.respond(message)


class FakeProcess:
    def __init__(self, server: ScriptedServer, *, pid: int = 4242) -> None:
        self.server = server
        server.process = self
        self.pid = pid
        self.stdin = server.stdin
        self.stdout = server.stdout
        self.stderr = asyncio.StreamReader()
        self.returncode: int | None = None
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdin.closed = True
        self.server.close_stdout()
        self.stderr.feed_eof()
        self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)


class FakeLauncher:
    def __init__(self, server_factory: Callable[[], ScriptedServer] | None = None) -> None:
        self._server_factory = server_factory or ScriptedServer
        self.specs: list[ServerLaunchSpec] = []
        self.processes: list[FakeProcess] = []
        self.previous_exited: list[bool] = []

    async def __call__(self, spec: ServerLaunchSpec, cwd: Path | None) -> FakeProcess:
        self.previous_exited.append(all(p.returncode is not None for p in self.processes))
        process = FakeProcess(self._server_factory(), pid=4242 + len(self.processes))
        self.specs.append(spec)
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


def make_supervisor(
    launcher: ProcessLauncher,
    *,
    log: LogChannel | None = None,
    timeouts: TimeoutPolicy = FAST_TIMEOUTS,
    errors: list | None = None,
    root: Path | None = None,
) -> SessionSupervisor:
    return SessionSupervisor(
        log=log or LogChannel("test"),
        root=root,
        document_selector=DocumentSelector(),
        sync=SyncConfig(),
        timeouts=timeouts,
        launcher=launcher,
        on_error=errors.append if errors is not None else None,
    )


def spec(executable: str = "/opt/elp/bin/elp", *arguments: str) -> ServerLaunchSpec:
    return ServerLaunchSpec(executable_path=executable, arguments=arguments or ("server",))


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def settle_until(predicate: Callable[[], bool], rounds: int = 100) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached while the loop settled")


class FakeHost:
    def __init__(self, *, fail_debug: bool = False) -> None:
        self.commands: dict[str, Callable] = {}
        self.debug_adapters: dict[str, Callable[[], object]] = {}
        self.messages: list[tuple[MessageLevel, str]] = []
        self.watchers: dict[str, Callable] = {}
        self.fail_debug = fail_debug

    def register_command(self, command_id, callback):
        self.commands[command_id] = callback
        return Registration(lambda: self.commands.pop(command_id, None))

    def register_debug_adapter(self, debug_type, factory):
        if self.fail_debug:
            raise RuntimeError("debug adapters unsupported")
        self.debug_adapters[debug_type] = factory
        return Registration(lambda: self.debug_adapters.pop(debug_type, None))

    def show_message(self, level, message):
        self.messages.append((level, message))

    def watch_files(self, glob, callback):
        self.watchers[glob] = callback
        return Registration(lambda: self.watchers.pop(glob, None))


@contextmanager
def env_scope(values: dict[str, str | None]) -> Iterator[None]:
    previous = {key: os.environ.get(key) for key in values}

    def _apply(mapping: dict[str, str | None]) -> None:
        for key, value in mapping.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    _apply(values)
    try:
        yield
    finally:
        _apply(previous)
