"""Clock abstractions and the periodic task scheduler.

- ``WallClock``     : real UTC wall time (production).
- ``SimulatedClock``: time that only moves when told to (tests, replays).
- ``Scheduler``     : periodic task registry driven by either clock.

Every periodic job in the core (indicator/risk recompute, retention sweep,
overseer scan, saved-search alerts) is registered through
``Scheduler.schedule`` and receives a ``CancelToken``. ``run_pending()``
executes whatever is due at the clock's current time, so tests advance a
``SimulatedClock`` and call it directly::

    clock = SimulatedClock(start=datetime(2024, 1, 1, tzinfo=UTC))
    scheduler = Scheduler(clock)
    token = scheduler.schedule(timedelta(minutes=5), store.recompute_indicators)

    clock.advance(timedelta(minutes=5))
    scheduler.run_pending()       # recompute ran once
    token.cancel()

In production ``start()`` spawns an asyncio loop that calls ``run_pending()``
every ``tick`` seconds.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from stagalgo.logging import get_logger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Protocol / abstract base
# ---------------------------------------------------------------------------


class ClockProtocol(ABC):
    """Abstract clock interface, real or simulated time."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current UTC datetime (timezone-aware)."""
        ...

    @abstractmethod
    def monotonic(self) -> float:
        """Return a monotonically increasing time value in seconds."""
        ...


class WallClock(ClockProtocol):
    """Real wall clock backed by the system UTC time."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()


class SimulatedClock(ClockProtocol):
    """Deterministically controllable clock.

    Time does not advance on its own; callers move it with ``advance()`` or
    ``set_time()``.

    Args:
        start: Initial datetime. Must be timezone-aware. Defaults to the real
               UTC ``now()`` at construction time.
    """

    def __init__(self, start: datetime | None = None) -> None:
        if start is not None and start.tzinfo is None:
            raise ValueError(
                "SimulatedClock requires a timezone-aware datetime.  "
                "Pass e.g. datetime(2024, 1, 1, tzinfo=UTC)."
            )
        self._current: datetime = start if start is not None else datetime.now(UTC)
        self._offset_s: float = 0.0

    def now(self) -> datetime:
        return self._current

    def monotonic(self) -> float:
        return self._offset_s

    def advance(self, delta: timedelta) -> None:
        """Move the clock forward (or backward) by ``delta``."""
        self._current += delta
        self._offset_s += delta.total_seconds()

    def set_time(self, dt: datetime) -> None:
        """Jump the clock to an exact datetime.

        Raises:
            ValueError: If ``dt`` is naive (no tzinfo).
        """
        if dt.tzinfo is None:
            raise ValueError("set_time requires a timezone-aware datetime.")
        self._offset_s += (dt - self._current).total_seconds()
        self._current = dt


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

_AnyCallable = Callable[[], Any]


class CancelToken:
    """Handle returned by ``Scheduler.schedule``; ``cancel()`` stops the job."""

    __slots__ = ("name", "_cancelled")

    def __init__(self, name: str) -> None:
        self.name = name
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class _Job:
    name: str
    interval: timedelta
    callback: _AnyCallable
    next_run: datetime
    token: CancelToken
    runs: int = 0
    failures: int = 0


class Scheduler:
    """Periodic job runner driven by a ``ClockProtocol``.

    A job that raises is logged and stays scheduled. Missed intervals are not
    replayed: after a run the next due time is moved past the current time.
    """

    def __init__(self, clock: ClockProtocol, tick_seconds: float = 1.0) -> None:
        self._clock = clock
        self._tick_seconds = tick_seconds
        self._jobs: list[_Job] = []
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Task[Any]] = set()

    @property
    def clock(self) -> ClockProtocol:
        return self._clock

    @property
    def running(self) -> bool:
        return self._running

    # ── Scheduling API ──────────────────────────────────────────────────────

    def schedule(
        self,
        interval: timedelta,
        callback: _AnyCallable,
        *,
        name: str | None = None,
        run_immediately: bool = False,
    ) -> CancelToken:
        """Run ``callback`` every ``interval`` of clock time.

        Args:
            interval: Time between invocations. Must be positive.
            callback: Callable taking no arguments. A returned coroutine is
                      scheduled on the running event loop.
            name:     Label used in logs; defaults to the callable's name.
            run_immediately: Make the first run due now instead of after
                      one interval.

        Returns:
            Token whose ``cancel()`` removes the job.
        """
        if interval <= timedelta(0):
            raise ValueError(f"interval must be positive, got {interval}")
        job_name = name or getattr(callback, "__name__", "job")
        token = CancelToken(job_name)
        now = self._clock.now()
        self._jobs.append(
            _Job(
                name=job_name,
                interval=interval,
                callback=callback,
                next_run=now if run_immediately else now + interval,
                token=token,
            )
        )
        logger.debug(f"Scheduled {job_name} every {interval.total_seconds():.0f}s")
        return token

    def run_pending(self) -> int:
        """Run every job that is due at the clock's current time.

        Returns:
            Number of jobs invoked.
        """
        now = self._clock.now()
        invoked = 0
        for job in list(self._jobs):
            if job.token.cancelled:
                self._jobs.remove(job)
                continue
            if job.next_run > now:
                continue
            self._invoke(job)
            invoked += 1
            while job.next_run <= now:
                job.next_run += job.interval
        return invoked

    def cancel_all(self) -> None:
        for job in self._jobs:
            job.token.cancel()
        self._jobs.clear()

    def jobs(self) -> list[dict[str, Any]]:
        """Describe the active jobs (name, interval, next run, counters)."""
        return [
            {
                "name": job.name,
                "interval_seconds": job.interval.total_seconds(),
                "next_run": job.next_run.isoformat(),
                "runs": job.runs,
                "failures": job.failures,
            }
            for job in self._jobs
            if not job.token.cancelled
        ]

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the asyncio loop that drives ``run_pending``."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Scheduler started")

    async def stop(self) -> None:
        """Stop the loop and wait for in-flight coroutine jobs."""
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                logger.debug("Scheduler loop cancelled")
            self._task = None
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            self.run_pending()
            await asyncio.sleep(self._tick_seconds)

    # ── Internals ───────────────────────────────────────────────────────────

    def _invoke(self, job: _Job) -> None:
        job.runs += 1
        try:
            result = job.callback()
        except Exception:
            job.failures += 1
            logger.error(f"Scheduled job {job.name} raised an exception", exc_info=True)
            return

        if asyncio.iscoroutine(result):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                result.close()
                job.failures += 1
                logger.error(f"Scheduled job {job.name} returned a coroutine outside an event loop")
                return
            task = loop.create_task(result)
            self._pending.add(task)
            task.add_done_callback(lambda t, j=job: self._on_task_done(t, j))

    def _on_task_done(self, task: asyncio.Task[Any], job: _Job) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            job.failures += 1
            logger.error(f"Scheduled job {job.name} raised an exception", exc_info=exc)
