"""Activation entry point for the Erlang debug adapter (DAP).

The adapter itself is an external program; this module only registers how to
launch it with the host. Activation is its own failure domain: errors are
logged and recorded on the handle, never raised into the LSP lifecycle.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from elp_bridge.host import Disposable
from elp_bridge.log_channel import LogChannel

if TYPE_CHECKING:
    from elp_bridge.extension import ExtensionContext

DEBUG_TYPE = "erlang"
DEBUG_ADAPTER_REL_PATH = Path("bin") / "els_dap"


@dataclass(frozen=True)
class DebugAdapterExecutable:
    command: str
    args: tuple[str, ...] = ()


@dataclass
class DebugActivationHandle:
    debug_type: str
    registration: Disposable | None = None
    error: Exception | None = None

    @property
    def active(self) -> bool:
        return self.registration is not None

    def dispose(self) -> None:
        registration, self.registration = self.registration, None
        if registration is not None:
            registration.dispose()


class DebugActivationBoundary:
    def __init__(
        self,
        *,
        debug_type: str = DEBUG_TYPE,
        adapter_path: Path = DEBUG_ADAPTER_REL_PATH,
        adapter_args: tuple[str, ...] = (),
    ) -> None:
        self.debug_type = debug_type
        self.adapter_path = adapter_path
        self.adapter_args = adapter_args

    def descriptor(self, context: "ExtensionContext") -> DebugAdapterExecutable:
        return DebugAdapterExecutable(
            command=str(context.as_absolute_path(self.adapter_path)),
            args=self.adapter_args,
        )

    def activate(self, context: "ExtensionContext", log: LogChannel) -> DebugActivationHandle:
        handle = DebugActivationHandle(self.debug_type)
        try:
            executable = self.descriptor(context)
            if not Path(executable.command).is_file():
                log.warning(f"debug adapter not found at {executable.command}")
            handle.registration = context.host.register_debug_adapter(
                self.debug_type, lambda: executable
            )
        except Exception as exc:  # external collaborator boundary
            handle.error = exc
            log.error(f"debug adapter activation failed: {exc}")
            return handle
        log.info(f"debug adapter registered for '{self.debug_type}'")
        return handle

    def launch(
        self, context: "ExtensionContext", log: LogChannel
    ) -> asyncio.Task[DebugActivationHandle]:
        async def _activate() -> DebugActivationHandle:
            return self.activate(context, log)

        return asyncio.create_task(_activate(), name="elp-debug-activation")
