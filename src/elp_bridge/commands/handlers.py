from __future__ import annotations

from typing import Awaitable, Callable

from elp_bridge.commands.command_ids import (
    EXPAND_MACRO_COMMAND,
    EXPAND_MACRO_METHOD,
    RESTART_SERVER_COMMAND,
    SHOW_OUTPUT_COMMAND,
)
from elp_bridge.commands.registry import CommandRegistry
from elp_bridge.exceptions import CommandArgumentError, SessionNotRunningError
from elp_bridge.log_channel import LogChannel
from elp_bridge.rpc import JSONValue
from elp_bridge.session import ClientSession


async def expand_macro(
    session: ClientSession | None,
    uri: str,
    line: int,
    character: int,
) -> JSONValue:
    if not isinstance(uri, str) or not all(
        isinstance(value, int) and not isinstance(value, bool) for value in (line, character)
    ):
        raise CommandArgumentError(
            f"{EXPAND_MACRO_COMMAND}: expected (uri, line, character), got {(uri, line, character)!r}"
        )
    if session is None:
        raise SessionNotRunningError(f"{EXPAND_MACRO_COMMAND} needs a running server")
    return await session.request(
        EXPAND_MACRO_METHOD,
        {
            "textDocument": {"uri": uri},
            "position": {"line": line, "character": character},
        },
    )


def register_builtin_commands(
    registry: CommandRegistry,
    *,
    log: LogChannel,
    restart: Callable[[], Awaitable[ClientSession | None]],
) -> None:
    async def _restart(_session: ClientSession | None) -> str | None:
        session = await restart()
        return session.state.value if session is not None else None

    def _show_output(_session: ClientSession | None) -> str:
        return log.text()

    registry.register(EXPAND_MACRO_COMMAND, expand_macro)
    registry.register(RESTART_SERVER_COMMAND, _restart)
    registry.register(SHOW_OUTPUT_COMMAND, _show_output)
