"""Invariant markers for the ELP editor bridge."""

from __future__ import annotations

from typing import NoReturn, TypeVar

from elp_bridge.exceptions import NeverThrown

T = TypeVar("T")


def _render_env(env: dict[str, object]) -> str:
    return ", ".join(f"{key}={env[key]!r}" for key in sorted(env))


def never(reason: str = "", **env: object) -> NoReturn:
    """Mark a code path as intentionally unreachable.

    Reaching it is a programming error; the env payload is attached to the
    raised exception and rendered into its message.
    """
    message = reason or "never() marker reached"
    if env:
        message = f"{message} ({_render_env(env)})"
    raise NeverThrown(message, env=env)


def require_not_none(value: T | None, *, reason: str = "", **env: object) -> T:
    if value is None:
        never(reason or "required value is None", **env)
    return value
