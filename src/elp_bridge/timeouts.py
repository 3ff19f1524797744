from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import os

from elp_bridge.exceptions import ConfigurationError
from elp_bridge.invariants import never
from elp_bridge.schema import ClientSettings

HANDSHAKE_TIMEOUT_ENV = "ELP_BRIDGE_HANDSHAKE_TIMEOUT_SECONDS"
REQUEST_TIMEOUT_ENV = "ELP_BRIDGE_REQUEST_TIMEOUT_SECONDS"
SHUTDOWN_TIMEOUT_ENV = "ELP_BRIDGE_SHUTDOWN_TIMEOUT_SECONDS"

TIMEOUT_ENV_KEYS: tuple[str, ...] = (
    HANDSHAKE_TIMEOUT_ENV,
    REQUEST_TIMEOUT_ENV,
    SHUTDOWN_TIMEOUT_ENV,
)


@dataclass(frozen=True)
class TimeoutPolicy:
    handshake_seconds: float = 10.0
    request_seconds: float = 30.0
    shutdown_seconds: float = 5.0

    def __post_init__(self) -> None:
        for name in ("handshake_seconds", "request_seconds", "shutdown_seconds"):
            value = float(getattr(self, name))
            if value <= 0:
                never("invalid timeout", field=name, seconds=getattr(self, name))
            object.__setattr__(self, name, value)


def env_text(name: str, *, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_seconds(name: str, problems: list[ConfigurationError]) -> float | None:
    raw = env_text(name)
    if not raw:
        return None
    try:
        seconds: Decimal | None = Decimal(raw)
    except (InvalidOperation, ValueError):
        seconds = None
    if seconds is None or not seconds.is_finite() or seconds <= 0:
        problems.append(
            ConfigurationError(
                f"{name}={raw!r} is not a positive number of seconds; using the configured value",
                key=name,
            )
        )
        return None
    return float(seconds)


def timeout_policy_from_settings(
    settings: ClientSettings,
    problems: list[ConfigurationError] | None = None,
) -> TimeoutPolicy:
    """Build the timeout policy, letting environment variables win.

    An unusable env value is appended to `problems` and the settings value
    applies instead.
    """
    found: list[ConfigurationError] = [] if problems is None else problems
    handshake = _env_seconds(HANDSHAKE_TIMEOUT_ENV, found)
    request = _env_seconds(REQUEST_TIMEOUT_ENV, found)
    shutdown = _env_seconds(SHUTDOWN_TIMEOUT_ENV, found)
    return TimeoutPolicy(
        handshake_seconds=handshake if handshake is not None else settings.handshake_timeout,
        request_seconds=request if request is not None else settings.request_timeout,
        shutdown_seconds=shutdown if shutdown is not None else settings.shutdown_timeout,
    )
