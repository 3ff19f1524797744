from __future__ import annotations

from dataclasses import dataclass
from functools import partial
import inspect
from typing import Callable, TypeAlias

from elp_bridge.exceptions import BridgeError, CommandArgumentError
from elp_bridge.host import Disposable, EditorHost
from elp_bridge.invariants import never
from elp_bridge.log_channel import LogChannel
from elp_bridge.session import ClientSession

CommandHandler: TypeAlias = Callable[..., object]
SessionProvider: TypeAlias = Callable[[], "ClientSession | None"]
ErrorCallback: TypeAlias = Callable[[BridgeError], None]


@dataclass(frozen=True)
class CommandBinding:
    id: str
    handler: CommandHandler

    def check_arguments(self, session: ClientSession | None, args: tuple[object, ...]) -> None:
        try:
            signature = inspect.signature(self.handler)
        except (TypeError, ValueError):
            return
        try:
            signature.bind(session, *args)
        except TypeError as exc:
            raise CommandArgumentError(f"{self.id}: invalid arguments: {exc}") from exc


class CommandRegistry:
    """Editor command ids bound to handlers.

    A handler is called as `handler(session, *args)` where `session` is the
    Running ClientSession or None when no session is Running.
    """

    def __init__(
        self,
        session_provider: SessionProvider,
        *,
        log: LogChannel,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self._session_provider = session_provider
        self._log = log
        self._on_error = on_error
        self._bindings: dict[str, CommandBinding] = {}

    def __contains__(self, command_id: object) -> bool:
        return command_id in self._bindings

    def register(self, command_id: str, handler: CommandHandler) -> CommandBinding:
        if not command_id:
            never("empty command id")
        if command_id in self._bindings:
            never("duplicate command registration", command_id=command_id)
        binding = CommandBinding(id=command_id, handler=handler)
        self._bindings[command_id] = binding
        return binding

    def bindings(self) -> tuple[CommandBinding, ...]:
        return tuple(self._bindings[key] for key in sorted(self._bindings))

    def attach(self, host: EditorHost) -> list[Disposable]:
        return [
            host.register_command(binding.id, partial(self.execute, binding.id))
            for binding in self.bindings()
        ]

    async def execute(self, command_id: str, *args: object) -> object:
        binding = self._bindings.get(command_id)
        if binding is None:
            never("unknown command", command_id=command_id)
        session = self._session_provider()
        try:
            binding.check_arguments(session, args)
            result = binding.handler(session, *args)
            if inspect.isawaitable(result):
                result = await result
        except BridgeError as exc:
            self._log.report(exc)
            if self._on_error is not None:
                self._on_error(exc)
            return None
        return result
