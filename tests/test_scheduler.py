from __future__ import annotations

import asyncio

from core.scheduler import PollGuard, PollScheduler


def test_guard_skips_overlapping_pass_for_same_context() -> None:
    async def scenario() -> tuple[object, object, object]:
        guard = PollGuard()
        release = asyncio.Event()

        async def slow_pass() -> str:
            await release.wait()
            return "done"

        async def quick_pass() -> str:
            return "quick"

        first = asyncio.create_task(guard.run_exclusive("default", slow_pass))
        await asyncio.sleep(0)
        assert guard.is_running("default")

        skipped = await guard.run_exclusive("default", quick_pass)
        other_context = await guard.run_exclusive("alice", quick_pass)
        release.set()
        return await first, skipped, other_context

    first, skipped, other_context = asyncio.run(scenario())

    assert first == "done"
    assert skipped is None
    assert other_context == "quick"


def test_scheduler_runs_passes_until_stopped() -> None:
    async def scenario() -> int:
        calls = 0

        async def run_pass() -> None:
            nonlocal calls
            calls += 1

        scheduler = PollScheduler(run_pass, interval_seconds=0.01)
        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()
        assert not scheduler.running
        return calls

    assert asyncio.run(scenario()) >= 2


def test_failing_pass_does_not_stop_the_loop() -> None:
    async def scenario() -> int:
        calls = 0

        async def run_pass() -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError("boom")

        scheduler = PollScheduler(run_pass, interval_seconds=0.01)
        scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()
        return calls

    assert asyncio.run(scenario()) >= 2


def test_stop_waits_for_in_flight_pass() -> None:
    async def scenario() -> list[str]:
        events: list[str] = []
        started = asyncio.Event()

        async def run_pass() -> None:
            events.append("start")
            started.set()
            await asyncio.sleep(0.02)
            events.append("end")

        scheduler = PollScheduler(run_pass, interval_seconds=10)
        scheduler.start()
        await started.wait()
        await scheduler.stop()
        events.append("stopped")
        return events

    assert asyncio.run(scenario()) == ["start", "end", "stopped"]


def test_run_once_shares_guard_with_scheduler() -> None:
    async def scenario() -> object:
        guard = PollGuard()
        release = asyncio.Event()
        started = asyncio.Event()

        async def run_pass() -> str:
            started.set()
            await release.wait()
            return "ran"

        scheduler = PollScheduler(run_pass, interval_seconds=10, guard=guard)
        scheduler.start()
        await started.wait()
        skipped = await scheduler.run_once()
        release.set()
        await scheduler.stop()
        return skipped

    assert asyncio.run(scenario()) is None


def test_guard_drops_lock_once_pass_finishes() -> None:
    async def scenario() -> PollGuard:
        guard = PollGuard()

        async def quick_pass() -> str:
            return "quick"

        async def failing_pass() -> None:
            raise RuntimeError("boom")

        for user in ("alice", "bob", "carol"):
            await guard.run_exclusive(user, quick_pass)
        try:
            await guard.run_exclusive("dave", failing_pass)
        except RuntimeError:
            pass
        return guard

    guard = asyncio.run(scenario())

    assert guard._locks == {}
    assert guard.is_running("mallory") is False
    assert guard._locks == {}
