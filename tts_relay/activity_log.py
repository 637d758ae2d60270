"""User-visible operational log: timestamped, leveled, exportable."""

import logging
from datetime import datetime, timezone

from tts_relay.models import LogEntry

logger = logging.getLogger(__name__)

LEVELS = ("info", "success", "warning", "error")

# success is a user-facing level; stdlib logging sees it as INFO
_STDLIB_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class ActivityLog:
    """Append-only list of LogEntry objects.

    Every entry is mirrored to the stdlib logger so --verbose runs show
    the same events on stderr.
    """

    def __init__(self, entries: list[LogEntry] | None = None, clock=_now):
        self._entries = list(entries or [])
        self._clock = clock

    @property
    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, message: str, level: str = "info") -> LogEntry:
        if level not in LEVELS:
            raise ValueError(f"Unknown log level: {level}")
        entry = LogEntry(timestamp=self._clock(), level=level, message=message)
        self._entries.append(entry)
        logger.log(_STDLIB_LEVELS[level], message)
        return entry

    def info(self, message: str) -> LogEntry:
        return self.add(message, "info")

    def success(self, message: str) -> LogEntry:
        return self.add(message, "success")

    def warning(self, message: str) -> LogEntry:
        return self.add(message, "warning")

    def error(self, message: str) -> LogEntry:
        return self.add(message, "error")

    def clear(self) -> None:
        self._entries.clear()

    def export_text(self) -> str:
        """One "[timestamp] [level] message" line per entry."""
        return "\n".join(format_entry(e) for e in self._entries)


def format_entry(entry: LogEntry) -> str:
    return f"[{entry.timestamp}] [{entry.level}] {entry.message}"
