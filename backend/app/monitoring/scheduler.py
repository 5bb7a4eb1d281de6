"""
scheduler.py — Fixed-interval sweep runner with a cancellation token.

    runner = ScanScheduler(orchestrator.run_sweep, interval=timedelta(minutes=5))
    await runner.start()      # background task, first sweep immediately
    ...
    await runner.stop()       # sets the token, waits for the sweep to finish

The cancellation token is an ``asyncio.Event`` shared with the running
sweep: the scanner checks it between users, so ``stop`` never interrupts a
write. Tests drive sweeps synchronously with ``run_once``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from backend.app.monitoring.safety_scanner import ScanSummary

logger = logging.getLogger(__name__)

SweepFn = Callable[[Optional[asyncio.Event]], Awaitable[ScanSummary]]


class ScanScheduler:
    """
    Runs a sweep every ``interval``.

    Parameters
    ----------
    sweep : callable
        ``async sweep(cancel_event) -> ScanSummary``; must not raise.
    interval : timedelta
        Pause between the end of one sweep and the start of the next.
    history_size : int
        How many recent summaries ``status()`` reports.
    """

    def __init__(
        self,
        sweep: SweepFn,
        *,
        interval: timedelta = timedelta(minutes=5),
        history_size: int = 20,
    ) -> None:
        self._sweep = sweep
        self.interval = interval
        self._cancel = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._history: Deque[ScanSummary] = deque(maxlen=history_size)
        self.sweeps_run = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_summary(self) -> Optional[ScanSummary]:
        return self._history[-1] if self._history else None

    @property
    def history(self) -> List[ScanSummary]:
        return list(self._history)

    async def run_once(self) -> ScanSummary:
        """One sweep now; concurrent callers queue behind the running sweep."""
        # Outside the loop a stale (set) token would cancel the sweep at once
        token = self._cancel if self.is_running else asyncio.Event()
        async with self._lock:
            summary = await self._sweep(token)
            self._history.append(summary)
            self.sweeps_run += 1
            return summary

    async def start(self) -> None:
        if self.is_running:
            return
        self._cancel = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="safety-scan-loop")
        logger.info("Scan scheduler started (every %.0fs)", self.interval.total_seconds())

    async def stop(self) -> None:
        """Signal cancellation and wait for the in-flight sweep to wind down."""
        self._cancel.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Scan scheduler stopped after %d sweeps", self.sweeps_run)

    async def _run_loop(self) -> None:
        while not self._cancel.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Sweep crashed; next attempt in %.0fs", self.interval.total_seconds())
            try:
                await asyncio.wait_for(self._cancel.wait(), timeout=self.interval.total_seconds())
            except asyncio.TimeoutError:
                continue

    def status(self) -> Dict[str, Any]:
        last = self.last_summary
        return {
            "running": self.is_running,
            "interval_seconds": self.interval.total_seconds(),
            "sweeps_run": self.sweeps_run,
            "last_sweep": last.to_dict() if last else None,
            "recent": [s.to_dict() for s in self._history],
        }
