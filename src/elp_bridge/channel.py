"""LSP protocol channel over a spawned server's standard streams.

The channel owns the reader task, correlates responses with pending requests,
answers the handful of server-initiated requests an editor client must
support, and applies the document selector and file-event synchronization
policy before anything is sent to the server.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime
import itertools
import json
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol, TypeAlias

from elp_bridge import __version__
from elp_bridge.documents import (
    DocumentSelector,
    FileEvent,
    SyncConfig,
    language_id_for,
    uri_path,
)
from elp_bridge.exceptions import (
    ChannelClosedError,
    HandshakeError,
    ProtocolError,
    RequestTimeoutError,
)
from elp_bridge.log_channel import LogChannel
from elp_bridge.rpc import (
    INTERNAL_ERROR,
    METHOD_NOT_FOUND,
    JSONObject,
    JSONValue,
    encode_message,
    error_message,
    is_request,
    is_response,
    notification_message,
    read_message,
    request_message,
    response_message,
    write_message,
)
from elp_bridge.schema import TraceLevel
from elp_bridge.timeouts import TimeoutPolicy

CLIENT_NAME = "elp-bridge"

NotificationCallback: TypeAlias = Callable[[str, JSONValue], None]

# window/logMessage and window/showMessage severity -> logging level.
_MESSAGE_TYPE_LEVELS: dict[int, int] = {
    1: logging.ERROR,
    2: logging.WARNING,
    3: logging.INFO,
    4: logging.DEBUG,
}


def _message_level(payload: Mapping[str, Any], default: int) -> int:
    kind = payload.get("type", default)
    if isinstance(kind, bool) or not isinstance(kind, int):
        return logging.INFO
    return _MESSAGE_TYPE_LEVELS.get(kind, logging.INFO)


class ServerProcess(Protocol):
    stdin: Any
    stdout: Any
    stderr: Any
    pid: int
    returncode: int | None

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


def client_capabilities() -> JSONObject:
    return {
        "workspace": {
            "configuration": True,
            "didChangeWatchedFiles": {"dynamicRegistration": False},
            "workspaceFolders": True,
        },
        "textDocument": {
            "synchronization": {
                "dynamicRegistration": False,
                "didSave": True,
                "willSave": False,
            },
        },
        "window": {"workDoneProgress": True, "showMessage": {}},
    }


def initialize_params(root: Path | None, trace_level: TraceLevel) -> JSONObject:
    params: JSONObject = {
        "processId": os.getpid(),
        "clientInfo": {"name": CLIENT_NAME, "version": __version__},
        "capabilities": client_capabilities(),
        "trace": trace_level.value,
        "rootUri": None,
        "workspaceFolders": None,
    }
    if root is not None:
        resolved = root.resolve()
        params["rootUri"] = resolved.as_uri()
        params["rootPath"] = str(resolved)
        params["workspaceFolders"] = [{"uri": resolved.as_uri(), "name": resolved.name}]
    return params


class ProtocolChannel:
    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: Any,
        *,
        log: LogChannel,
        document_selector: DocumentSelector | None = None,
        sync: SyncConfig | None = None,
        trace_level: TraceLevel = TraceLevel.OFF,
        timeouts: TimeoutPolicy | None = None,
        root: Path | None = None,
        on_notification: NotificationCallback | None = None,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._log = log
        self.document_selector = document_selector or DocumentSelector()
        self.sync = sync or SyncConfig()
        self.trace_level = trace_level
        self._timeouts = timeouts or TimeoutPolicy()
        self._root = root
        self._on_notification = on_notification
        self._open_documents: set[str] = set()
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[JSONValue]] = {}
        self._reader_task: asyncio.Task[None] | None = None
        self._disconnected = asyncio.Event()
        self._closed = False
        self._connection_lost = False
        self.server_capabilities: JSONObject = {}
        self.server_info: JSONObject = {}
        self._server_requests: dict[str, Callable[[JSONValue], JSONValue]] = {
            "workspace/configuration": _configuration_result,
            "client/registerCapability": _null_result,
            "client/unregisterCapability": _null_result,
            "window/workDoneProgress/create": _null_result,
            "window/showMessageRequest": self._show_message_request,
        }

    @classmethod
    async def open(
        cls,
        process: ServerProcess,
        document_selector: DocumentSelector,
        sync: SyncConfig,
        *,
        log: LogChannel,
        root: Path | None = None,
        trace_level: TraceLevel = TraceLevel.OFF,
        timeouts: TimeoutPolicy | None = None,
        on_notification: NotificationCallback | None = None,
    ) -> "ProtocolChannel":
        if process.stdout is None or process.stdin is None:
            raise HandshakeError("server process has no stdio pipes")
        channel = cls(
            process.stdout,
            process.stdin,
            log=log,
            document_selector=document_selector,
            sync=sync,
            trace_level=trace_level,
            timeouts=timeouts,
            root=root,
            on_notification=on_notification,
        )
        channel.start()
        await channel.initialize()
        return channel

    @property
    def closed(self) -> bool:
        return self._closed or self._disconnected.is_set()

    @property
    def connection_lost(self) -> bool:
        return self._connection_lost

    def start(self) -> None:
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop(), name="elp-lsp-reader")

    async def wait_disconnected(self) -> None:
        await self._disconnected.wait()

    async def initialize(self) -> JSONObject:
        budget = self._timeouts.handshake_seconds
        try:
            result = await self.request(
                "initialize",
                initialize_params(self._root, self.trace_level),
                timeout=budget,
            )
        except RequestTimeoutError as exc:
            await self.close()
            raise HandshakeError(f"initialize timed out after {budget:g}s") from exc
        except ChannelClosedError as exc:
            # EOF on stdout or a broken stdin pipe: the server is gone.
            await self.close()
            raise HandshakeError(
                f"server closed the connection during initialize: {exc.message}",
                connection_lost=True,
            ) from exc
        except ProtocolError as exc:
            await self.close()
            raise HandshakeError(f"initialize failed: {exc.message}") from exc
        capabilities = result.get("capabilities") if isinstance(result, dict) else None
        if not isinstance(capabilities, dict):
            await self.close()
            raise HandshakeError("malformed initialize response: missing capabilities")
        self.server_capabilities = capabilities
        server_info = result.get("serverInfo")
        self.server_info = server_info if isinstance(server_info, dict) else {}
        await self.notify("initialized", {})
        name = self.server_info.get("name", "server")
        version = self.server_info.get("version")
        self._log.info(f"initialized {name}" + (f" {version}" if version else ""))
        return result

    async def request(
        self,
        method: str,
        params: JSONValue = None,
        *,
        timeout: float | None = None,
    ) -> JSONValue:
        """Send a request and wait for its result, bounded by a timeout.

        A timeout or caller cancellation sends `$/cancelRequest` for the id.
        """
        if self.closed:
            raise ChannelClosedError(f"cannot send {method}: channel is closed")
        request_id = next(self._ids)
        future: asyncio.Future[JSONValue] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        budget = timeout if timeout is not None else self._timeouts.request_seconds
        try:
            self._trace_outgoing("request", method, params, request_id)
            await self._write(request_message(request_id, method, params), method)
            try:
                return await asyncio.wait_for(future, budget)
            except asyncio.TimeoutError as exc:
                self._send_cancel(request_id)
                raise RequestTimeoutError(f"{method} timed out after {budget:g}s") from exc
            except asyncio.CancelledError:
                self._send_cancel(request_id)
                raise
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: JSONValue = None) -> None:
        if self.closed:
            raise ChannelClosedError(f"cannot send {method}: channel is closed")
        self._trace_outgoing("notification", method, params)
        await self._write(notification_message(method, params), method)

    async def did_open(
        self,
        uri: str,
        text: str,
        *,
        language_id: str | None = None,
        version: int = 1,
    ) -> bool:
        language = language_id or language_id_for(uri_path(uri))
        if not self.document_selector.matches(uri, language):
            return False
        await self.notify(
            "textDocument/didOpen",
            {
                "textDocument": {
                    "uri": uri,
                    "languageId": language,
                    "version": version,
                    "text": text,
                }
            },
        )
        self._open_documents.add(uri)
        return True

    async def did_change(self, uri: str, text: str, *, version: int) -> bool:
        if uri not in self._open_documents:
            return False
        await self.notify(
            "textDocument/didChange",
            {
                "textDocument": {"uri": uri, "version": version},
                "contentChanges": [{"text": text}],
            },
        )
        return True

    async def did_save(self, uri: str) -> bool:
        if uri not in self._open_documents:
            return False
        await self.notify("textDocument/didSave", {"textDocument": {"uri": uri}})
        return True

    async def did_close(self, uri: str) -> bool:
        if uri not in self._open_documents:
            return False
        self._open_documents.discard(uri)
        await self.notify("textDocument/didClose", {"textDocument": {"uri": uri}})
        return True

    async def forward_file_events(self, events: Iterable[FileEvent]) -> int:
        changes = [
            event.to_lsp()
            for event in events
            if self.sync.matches(event.path, root=self._root)
        ]
        if not changes:
            return 0
        await self.notify("workspace/didChangeWatchedFiles", {"changes": changes})
        return len(changes)

    async def shutdown(self, *, timeout: float | None = None) -> None:
        budget = timeout if timeout is not None else self._timeouts.shutdown_seconds
        await self.request("shutdown", None, timeout=budget)
        await self.notify("exit")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        task = self._reader_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._fail_pending(ChannelClosedError("channel closed"))
        self._disconnected.set()
        close = getattr(self._writer, "close", None)
        if close is None:
            return
        close()
        wait_closed = getattr(self._writer, "wait_closed", None)
        if wait_closed is None:
            return
        try:
            await wait_closed()
        except (ConnectionError, OSError) as exc:
            self._log.debug(f"server stdin closed with error: {exc}")

    async def _write(self, message: JSONObject, method: str) -> None:
        try:
            await write_message(self._writer, message)
        except (ConnectionError, OSError) as exc:
            raise ChannelClosedError(f"cannot send {method}: {exc}") from exc

    def _send_cancel(self, request_id: int) -> None:
        if self.closed:
            return
        try:
            self._writer.write(
                encode_message(notification_message("$/cancelRequest", {"id": request_id}))
            )
        except (ConnectionError, OSError) as exc:
            self._log.debug(f"cannot cancel request {request_id}: {exc}")

    def _fail_pending(self, error: ProtocolError) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _read_loop(self) -> None:
        error: ProtocolError = ChannelClosedError("server closed the connection")
        try:
            while True:
                message = await read_message(self._reader)
                if message is None:
                    self._connection_lost = True
                    return
                await self._dispatch(message)
        except ChannelClosedError as exc:
            error = exc
        except ProtocolError as exc:
            error = exc
            self._log.report(exc)
        except Exception as exc:
            error = ProtocolError(f"LSP reader failed: {exc!r}")
            self._log.report(error)
        finally:
            self._fail_pending(error)
            self._disconnected.set()

    async def _dispatch(self, message: JSONObject) -> None:
        if is_response(message):
            self._resolve(message)
            return
        method = message.get("method")
        if not isinstance(method, str):
            self._log.warning(f"dropping message without a method: {message!r}")
            return
        params = message.get("params")
        if is_request(message):
            await self._answer(message.get("id"), method, params)
            return
        self._trace_incoming("notification", method, params)
        self._handle_notification(method, params)

    def _resolve(self, message: JSONObject) -> None:
        request_id = message.get("id")
        future = self._pending.get(request_id) if isinstance(request_id, int) else None
        if future is None or future.done():
            self._log.debug(f"dropping response for unknown request {request_id!r}")
            return
        error = message.get("error")
        self._trace_incoming("response", str(request_id), message.get("result", error))
        if error is not None:
            code = error.get("code") if isinstance(error, dict) else None
            text = error.get("message") if isinstance(error, dict) else error
            future.set_exception(
                ProtocolError(
                    f"LSP error {code}: {text}",
                    code=code if isinstance(code, int) else None,
                )
            )
            return
        future.set_result(message.get("result"))

    async def _answer(self, request_id: JSONValue, method: str, params: JSONValue) -> None:
        self._trace_incoming("request", method, params)
        handler = self._server_requests.get(method)
        if handler is None:
            reply = error_message(request_id, METHOD_NOT_FOUND, f"Unhandled method {method}")
        else:
            try:
                reply = response_message(request_id, handler(params))
            except Exception as exc:
                self._log.error(f"handler for server request {method} failed: {exc!r}")
                reply = error_message(request_id, INTERNAL_ERROR, f"{method} failed: {exc}")
        await self._write(reply, method)

    def _handle_notification(self, method: str, params: JSONValue) -> None:
        if method in ("window/logMessage", "window/showMessage"):
            payload = params if isinstance(params, Mapping) else {}
            level = _message_level(payload, 4)
            self._log.append(str(payload.get("message", "")), level=level)
            return
        if method == "$/logTrace":
            payload = params if isinstance(params, Mapping) else {}
            self._log.append(f"[Server trace] {payload.get('message', '')}")
            return
        if self._on_notification is None:
            return
        try:
            self._on_notification(method, params)
        except Exception as exc:  # external collaborator boundary
            self._log.error(f"notification handler for {method} failed: {exc!r}")

    def _show_message_request(self, params: JSONValue) -> JSONValue:
        payload = params if isinstance(params, Mapping) else {}
        level = _message_level(payload, 3)
        self._log.append(str(payload.get("message", "")), level=level)
        return None

    def _trace_outgoing(
        self,
        kind: str,
        method: str,
        params: JSONValue,
        request_id: int | None = None,
    ) -> None:
        if self.trace_level is TraceLevel.OFF:
            return
        label = f"{method} - ({request_id})" if request_id is not None else method
        self._trace(f"Sending {kind} '{label}'.", params)

    def _trace_incoming(self, kind: str, label: str, payload: JSONValue) -> None:
        if self.trace_level is TraceLevel.OFF:
            return
        self._trace(f"Received {kind} '{label}'.", payload)

    def _trace(self, line: str, payload: JSONValue) -> None:
        stamp = datetime.now().strftime("%H:%M:%S")
        text = f"[Trace - {stamp}] {line}"
        if self.trace_level is TraceLevel.VERBOSE and payload is not None:
            text += "\n" + json.dumps(payload, indent=4, sort_keys=True)
        self._log.info(text)


def _null_result(_params: JSONValue) -> JSONValue:
    return None


def _configuration_result(params: JSONValue) -> JSONValue:
    items = params.get("items") if isinstance(params, dict) else None
    if not isinstance(items, list):
        return []
    return [None for _ in items]


ChannelOpener: TypeAlias = Callable[..., Awaitable[ProtocolChannel]]
