from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from elp_bridge.exceptions import BridgeError

LOGGER_NAME = "elp_bridge"
DEFAULT_CHANNEL_NAME = "Erlang ELP"

logger = logging.getLogger(LOGGER_NAME)


@dataclass(frozen=True)
class LogEntry:
    timestamp: datetime
    level: int
    message: str

    def render(self) -> str:
        stamp = self.timestamp.strftime("%H:%M:%S.%f")[:-3]
        return f"[{logging.getLevelName(self.level)} - {stamp}] {self.message}"


class LogChannel:
    """Append-only sink for client-side status messages.

    Entries are kept in memory for the output view and mirrored to the
    `elp_bridge` logger. After dispose() entries still reach the logger but
    are no longer recorded.
    """

    def __init__(self, name: str = DEFAULT_CHANNEL_NAME, *, sink: logging.Logger | None = None):
        self.name = name
        self._sink = sink or logger
        self._entries: list[LogEntry] = []
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def append(self, message: str, *, level: int = logging.INFO) -> LogEntry:
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc),
            level=level,
            message=message,
        )
        if not self._disposed:
            self._entries.append(entry)
        self._sink.log(level, "[%s] %s", self.name, message)
        return entry

    def debug(self, message: str) -> LogEntry:
        return self.append(message, level=logging.DEBUG)

    def info(self, message: str) -> LogEntry:
        return self.append(message, level=logging.INFO)

    def warning(self, message: str) -> LogEntry:
        return self.append(message, level=logging.WARNING)

    def error(self, message: str) -> LogEntry:
        return self.append(message, level=logging.ERROR)

    def report(self, error: BridgeError) -> LogEntry:
        return self.append(f"{error.kind}: {error.message}", level=error.level)

    def entries(self) -> tuple[LogEntry, ...]:
        return tuple(self._entries)

    def text(self) -> str:
        return "\n".join(entry.render() for entry in self._entries)

    def dispose(self) -> None:
        self._disposed = True
