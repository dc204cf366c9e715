"""Periodic polling and filtering of peer connection statistics."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence


logger = logging.getLogger(__name__)


DEFAULT_STATS_INTERVAL = 1.0

DEFAULT_STATS_FILTER: Mapping[str, tuple[str, ...]] = {
    "remote-inbound-rtp": ("id", "type", "timestamp", "roundTripTime", "jitter"),
    "inbound-rtp": (
        "id",
        "type",
        "timestamp",
        "jitterBufferDelay",
        "jitterBufferEmittedCount",
        "bytesReceived",
    ),
}

StatsSample = list[dict[str, Any]]
StatsObserver = Callable[[StatsSample, StatsSample], None]
StatsSource = Callable[[], Awaitable[Any]]


def _field(report: Any, name: str) -> Any:
    if isinstance(report, Mapping):
        return report.get(name)
    return getattr(report, name, None)


def _reports(snapshot: Any) -> Iterable[Any]:
    if snapshot is None:
        return ()
    if isinstance(snapshot, Mapping):
        return snapshot.values()
    return snapshot


def filter_stats(snapshot: Any, stats_filter: Mapping[str, Sequence[str]]) -> StatsSample:
    """Project every report whose type is listed in ``stats_filter`` onto its allowed fields."""

    sample: StatsSample = []
    for report in _reports(snapshot):
        fields = stats_filter.get(_field(report, "type"))
        if fields is None:
            continue
        sample.append({name: _field(report, name) for name in fields})
    return sample


class StatsWatcher:
    """Poll a stats source while at least one observer is registered.

    Each observer is called with ``(current, previous)`` filtered samples.
    """

    def __init__(
        self,
        stats_source: StatsSource,
        *,
        stats_filter: Mapping[str, Sequence[str]] | None = None,
        interval: float = DEFAULT_STATS_INTERVAL,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._stats_source = stats_source
        self._filter = dict(stats_filter if stats_filter is not None else DEFAULT_STATS_FILTER)
        self._interval = float(interval)
        self._observers: list[StatsObserver] = []
        self._previous: StatsSample = []
        self._task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    # ------------------------------ properties -----------------------------
    @property
    def is_running(self) -> bool:
        return self._task is not None

    @property
    def observers(self) -> list[StatsObserver]:
        return list(self._observers)

    @property
    def previous_sample(self) -> StatsSample:
        return list(self._previous)

    # ------------------------------ operations -----------------------------
    def add_observer(self, observer: StatsObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)
        self._previous = []
        self._start()

    def remove_observer(self, observer: StatsObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)
        self._previous = []
        if not self._observers:
            self.stop()

    def resume(self) -> None:
        """Start polling again for the registered observers, if any."""

        self._previous = []
        self._start()

    def stop(self) -> None:
        task = self._task
        if task is None:
            return
        assert self._stop_event is not None
        self._stop_event.set()
        task.cancel()
        self._task = None
        self._stop_event = None
        logger.debug("Stats polling stopped")

    async def poll_once(self) -> StatsSample:
        """Take one sample, notify observers and remember it as the previous sample."""

        try:
            snapshot = await self._stats_source()
        except Exception:
            logger.exception("Unable to collect connection statistics")
            return []
        current = filter_stats(snapshot, self._filter)
        if current:
            previous = self._previous
            for observer in list(self._observers):
                try:
                    observer(current, previous)
                except Exception:
                    logger.exception("Stats observer raised an exception")
        self._previous = current
        return current

    # ----------------------------- implementation --------------------------
    def _start(self) -> None:
        if self._task is not None or not self._observers:
            return
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._task = loop.create_task(self._run(self._stop_event))
        logger.debug("Stats polling started every %.3fs", self._interval)

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                await self.poll_once()


__all__ = [
    "DEFAULT_STATS_FILTER",
    "DEFAULT_STATS_INTERVAL",
    "StatsObserver",
    "StatsSample",
    "StatsWatcher",
    "filter_stats",
]
