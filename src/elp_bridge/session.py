from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from elp_bridge.exceptions import SessionNotRunningError
from elp_bridge.invariants import never
from elp_bridge.launch import ServerLaunchSpec
from elp_bridge.rpc import JSONValue

if TYPE_CHECKING:
    from elp_bridge.channel import ProtocolChannel, ServerProcess


class SessionState(str, Enum):
    STOPPED = "Stopped"
    STARTING = "Starting"
    RUNNING = "Running"
    STOPPING = "Stopping"
    CRASHED = "Crashed"


# Starting -> Stopped covers spawn and handshake failures.
_ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.STOPPED: frozenset({SessionState.STARTING}),
    SessionState.STARTING: frozenset(
        {
            SessionState.RUNNING,
            SessionState.STOPPING,
            SessionState.CRASHED,
            SessionState.STOPPED,
        }
    ),
    SessionState.RUNNING: frozenset({SessionState.STOPPING, SessionState.CRASHED}),
    SessionState.STOPPING: frozenset({SessionState.STOPPED}),
    SessionState.CRASHED: frozenset({SessionState.STOPPED}),
}


@dataclass(eq=False)
class ClientSession:
    """One server process paired with its protocol channel.

    Only the supervisor moves a session between states; everything else reads
    `state` and issues traffic through `request`/`notify`, which fail fast
    unless the session is Running.
    """

    launch_spec: ServerLaunchSpec
    state: SessionState = SessionState.STOPPED
    process: "ServerProcess | None" = None
    channel: "ProtocolChannel | None" = None
    exit_code: int | None = None
    history: list[SessionState] = field(default_factory=lambda: [SessionState.STOPPED])

    @property
    def running(self) -> bool:
        return self.state is SessionState.RUNNING

    def _active_channel(self, method: str) -> "ProtocolChannel":
        if self.state is not SessionState.RUNNING or self.channel is None:
            raise SessionNotRunningError(
                f"cannot send {method}: session is {self.state.value}"
            )
        return self.channel

    async def request(
        self,
        method: str,
        params: JSONValue = None,
        *,
        timeout: float | None = None,
    ) -> JSONValue:
        return await self._active_channel(method).request(method, params, timeout=timeout)

    async def notify(self, method: str, params: JSONValue = None) -> None:
        await self._active_channel(method).notify(method, params)


def transition(session: ClientSession, target: SessionState) -> None:
    if target not in _ALLOWED_TRANSITIONS[session.state]:
        never(
            "illegal session transition",
            current=session.state.value,
            target=target.value,
        )
    session.state = target
    session.history.append(target)
