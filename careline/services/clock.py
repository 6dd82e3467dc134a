"""
Time sources for the engine.

Services never read the wall clock or sleep directly: they receive a Clock for
"now" and a Ticker for "wait until the next run", so tests can drive the
schedulers deterministically.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(UTC)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        start = start or datetime.now(UTC)
        if start.tzinfo is None:
            raise ValueError("ManualClock needs a timezone-aware start time")
        self._now = start.astimezone(UTC)

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> datetime:
        self._now += delta
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment.astimezone(UTC)


class Ticker(Protocol):
    async def wait(self) -> bool:
        """Block until the next tick. False means the loop should stop."""
        ...

    def stop(self) -> None: ...


class IntervalTicker:
    """Ticks every `interval_seconds`; stop() wakes a pending wait immediately."""

    def __init__(self, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self._stopped = asyncio.Event()

    async def wait(self) -> bool:
        if self._stopped.is_set():
            return False
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
        except TimeoutError:
            return True
        return False

    def stop(self) -> None:
        self._stopped.set()
