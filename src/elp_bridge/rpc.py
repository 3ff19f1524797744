"""JSON-RPC framing for the LSP stdio transport.

Each message is a `Content-Length` header block terminated by a blank line,
followed by exactly that many bytes of UTF-8 JSON.
"""

from __future__ import annotations

import asyncio
import json
from typing import Protocol, TypeAlias

from elp_bridge.exceptions import ProtocolError

JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
JSONObject: TypeAlias = dict[str, JSONValue]

HEADER_SEPARATOR = b"\r\n\r\n"
JSONRPC_VERSION = "2.0"

# Standard JSON-RPC / LSP error codes.
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603
REQUEST_CANCELLED = -32800


class MessageWriter(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...


def encode_message(message: JSONObject) -> bytes:
    payload = json.dumps(message, separators=(",", ":")).encode("utf-8")
    header = f"Content-Length: {len(payload)}\r\n\r\n".encode("ascii")
    return header + payload


async def write_message(writer: MessageWriter, message: JSONObject) -> None:
    writer.write(encode_message(message))
    await writer.drain()


def _content_length(header: bytes) -> int:
    for line in header.split(b"\r\n"):
        if line.lower().startswith(b"content-length:"):
            try:
                return int(line.split(b":", 1)[1].strip())
            except ValueError:
                return -1
    return 0


async def read_message(reader: asyncio.StreamReader) -> JSONObject | None:
    """Read one framed message; None means the stream ended cleanly."""
    try:
        header = await reader.readuntil(HEADER_SEPARATOR)
    except asyncio.IncompleteReadError as exc:
        if not exc.partial:
            return None
        raise ProtocolError("LSP stream closed inside a header") from exc
    except asyncio.LimitOverrunError as exc:
        raise ProtocolError("LSP header exceeds the stream limit") from exc
    length = _content_length(header[: -len(HEADER_SEPARATOR)])
    if length <= 0:
        raise ProtocolError("Invalid LSP Content-Length")
    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise ProtocolError("LSP stream closed") from exc
    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ProtocolError("Malformed LSP message body") from exc
    if not isinstance(message, dict):
        raise ProtocolError("Invalid LSP message payload")
    return message


def request_message(request_id: int, method: str, params: JSONValue = None) -> JSONObject:
    message: JSONObject = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def notification_message(method: str, params: JSONValue = None) -> JSONObject:
    message: JSONObject = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    return message


def response_message(request_id: JSONValue, result: JSONValue = None) -> JSONObject:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def error_message(request_id: JSONValue, code: int, text: str) -> JSONObject:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": code, "message": text},
    }


def is_response(message: JSONObject) -> bool:
    return "id" in message and "method" not in message


def is_request(message: JSONObject) -> bool:
    return "id" in message and "method" in message
