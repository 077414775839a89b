"""Background poll scheduling.

Passes run on a fixed interval with an explicit start/stop lifecycle. A
``PollGuard`` keeps passes for the same scheduling context from overlapping,
whether they come from the timer or from an on-demand request.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONTEXT = "default"


class PollGuard:
    """One lock per scheduling context; a busy context skips instead of waiting.

    Only contexts with a pass in flight hold a lock; it is dropped on release.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def is_running(self, context: str = DEFAULT_CONTEXT) -> bool:
        lock = self._locks.get(context)
        return lock is not None and lock.locked()

    async def run_exclusive(
        self, context: str, factory: Callable[[], Awaitable[T]]
    ) -> Optional[T]:
        """Run ``factory()`` unless a pass is already running for ``context``.

        Returns None when skipped.
        """

        if self.is_running(context):
            LOGGER.warning("Poll already in progress for %s; skipping", context)
            return None
        # Nobody ever waits on these locks, so acquiring never blocks.
        lock = self._locks.setdefault(context, asyncio.Lock())
        try:
            async with lock:
                return await factory()
        finally:
            if self._locks.get(context) is lock and not lock.locked():
                del self._locks[context]


class PollScheduler:
    """Runs a poll pass every ``interval_seconds`` until stopped."""

    def __init__(
        self,
        run_pass: Callable[[], Awaitable[T]],
        interval_seconds: float,
        guard: Optional[PollGuard] = None,
        context: str = DEFAULT_CONTEXT,
    ) -> None:
        self._run_pass = run_pass
        self._interval = interval_seconds
        self._guard = guard or PollGuard()
        self._context = context
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self):
        """Run one guarded pass; returns None if one is already running."""

        return await self._guard.run_exclusive(self._context, self._run_pass)

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._loop())
        LOGGER.info("Poll scheduler started (every %ss)", self._interval)

    async def stop(self) -> None:
        """Stop after the in-flight pass (if any) has finished."""

        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        LOGGER.info("Poll scheduler stopped")

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                # In-flight passes run to completion even if this task is cancelled.
                await asyncio.shield(self.run_once())
            except Exception:
                LOGGER.exception("Poll pass failed")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
