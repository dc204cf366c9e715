"""Rolling in-memory log of recent session traffic."""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable


DEFAULT_MAX_ENTRIES = 80
ROOT_LOGGER = "mixlink"


@dataclass(slots=True)
class CommsLogEntry:
    """A single captured log line."""

    timestamp: float
    level: str
    source: str
    message: str
    levelno: int = logging.INFO

    @property
    def is_error(self) -> bool:
        return self.levelno >= logging.ERROR

    def to_dict(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "level": self.level,
            "source": self.source,
            "message": self.message,
        }


class CommsLog(logging.Handler):
    """Logging handler keeping the most recent ``max_entries`` records.

    When ``path`` is given every record is also appended to it as a JSON line.
    """

    def __init__(
        self,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        path: Path | str | None = None,
        level: int = logging.DEBUG,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        super().__init__(level=level)
        self._entries: Deque[CommsLogEntry] = deque(maxlen=max_entries)
        self._entries_lock = threading.Lock()
        self._path: Path | None = Path(path) if path is not None else None
        self._attached_to: logging.Logger | None = None
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)

    # ------------------------------ properties -----------------------------
    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def max_entries(self) -> int:
        assert self._entries.maxlen is not None
        return self._entries.maxlen

    # ------------------------------ operations -----------------------------
    def set_max_entries(self, max_entries: int) -> None:
        """Resize the buffer, dropping the oldest entries that no longer fit."""

        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        with self._entries_lock:
            self._entries = deque(self._entries, maxlen=max_entries)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = CommsLogEntry(
                timestamp=record.created,
                level=record.levelname,
                source=record.name,
                message=record.getMessage(),
                levelno=record.levelno,
            )
        except Exception:
            self.handleError(record)
            return
        with self._entries_lock:
            self._entries.append(entry)
        if self._path is not None:
            try:
                with self._path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
            except OSError:
                self.handleError(record)

    def tail(self, limit: int | None = None, *, level: str | None = None) -> list[CommsLogEntry]:
        """Return the most recent entries, optionally only those at ``level`` or above."""

        with self._entries_lock:
            entries: Iterable[CommsLogEntry] = list(self._entries)
        if level is not None:
            threshold = logging.getLevelName(level.upper())
            if isinstance(threshold, int):
                entries = [entry for entry in entries if entry.levelno >= threshold]
        entries = list(entries)
        if limit is not None:
            limit_value = max(1, int(limit))
            entries = entries[-limit_value:]
        return entries

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()

    def attach(self, logger_name: str = ROOT_LOGGER) -> "CommsLog":
        """Install this handler on ``logger_name`` (the whole package by default)."""

        self.detach()
        target = logging.getLogger(logger_name)
        target.addHandler(self)
        if target.level == logging.NOTSET or target.level > self.level:
            target.setLevel(self.level)
        self._attached_to = target
        return self

    def detach(self) -> None:
        if self._attached_to is not None:
            self._attached_to.removeHandler(self)
            self._attached_to = None


__all__ = ["CommsLog", "CommsLogEntry", "DEFAULT_MAX_ENTRIES"]
