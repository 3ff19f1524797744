"""Editor-side bridge to the Erlang Language Platform server."""

__version__ = "0.1.0"

from elp_bridge.exceptions import (  # noqa: E402
    AlreadyRunningError,
    BridgeError,
    CommandArgumentError,
    ConfigurationError,
    CrashError,
    HandshakeError,
    NeverRaise,
    NeverThrown,
    ShutdownTimeoutError,
    SpawnError,
)
from elp_bridge.invariants import never  # noqa: E402

__all__ = [
    "__version__",
    "AlreadyRunningError",
    "BridgeError",
    "CommandArgumentError",
    "ConfigurationError",
    "CrashError",
    "HandshakeError",
    "NeverRaise",
    "NeverThrown",
    "ShutdownTimeoutError",
    "SpawnError",
    "never",
]
