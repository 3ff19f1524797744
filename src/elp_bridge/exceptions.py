"""Error taxonomy for the ELP editor bridge."""

from __future__ import annotations

import logging


class NeverRaise(RuntimeError):
    """Sentinel exception for code paths that must be unreachable.

    Raising this exception signals a programming error in the bridge itself
    (an illegal session transition, a duplicate command id). It is never
    converted into a log entry; it propagates to the caller.
    """

    def __init__(self, message: str, *, env: dict[str, object] | None = None):
        super().__init__(message)
        self.reason = message
        self.env = dict(env or {})


class NeverThrown(NeverRaise):
    """Alias for NeverRaise used by the explicit never() marker."""


class BridgeError(RuntimeError):
    """Base class for failures below the editor-command boundary.

    Every subclass is caught at the boundary and turned into a log channel
    entry plus a non-blocking user notification.
    """

    level: int = logging.ERROR
    notify_user: bool = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def kind(self) -> str:
        return type(self).__name__


class ConfigurationError(BridgeError):
    """Malformed settings. Defaults are substituted, so this is non-fatal."""

    level = logging.WARNING
    notify_user = False

    def __init__(self, message: str, *, key: str | None = None, fatal: bool = False):
        super().__init__(message)
        self.key = key
        self.fatal = fatal
        if fatal:
            self.level = logging.ERROR
            self.notify_user = True


class SpawnError(BridgeError):
    """The server executable is missing or cannot be executed."""

    def __init__(self, message: str, *, executable: str = "") -> None:
        super().__init__(message)
        self.executable = executable


class HandshakeError(BridgeError):
    """LSP capability negotiation failed."""

    def __init__(self, message: str, *, connection_lost: bool = False) -> None:
        super().__init__(message)
        self.connection_lost = connection_lost


class CrashError(BridgeError):
    """The server process exited while the session expected it alive."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class ShutdownTimeoutError(BridgeError):
    """Graceful shutdown did not complete; the process was killed."""

    level = logging.WARNING
    notify_user = False


class AlreadyRunningError(BridgeError):
    level = logging.WARNING


class CommandArgumentError(BridgeError):
    """Editor command invoked with arguments its handler cannot accept."""

    level = logging.WARNING


class SessionNotRunningError(BridgeError):
    """A request was issued against a session that is not Running."""

    level = logging.WARNING


class ProtocolError(BridgeError):
    """Malformed frame or an LSP error response."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class ChannelClosedError(ProtocolError):
    pass


class RequestTimeoutError(ProtocolError):
    level = logging.WARNING
