import asyncio

import pytest

from poolmaster.registry import WorkerStatus


def test_cold_start_staggers_forks_one_delay_apart(build_harness, eventually) -> None:
    harness = build_harness(workers=4, fork_delay=0.05)

    async def _run() -> None:
        harness.supervisor.reconciler.align()
        await eventually(harness.settled)

    asyncio.run(_run())

    times = [at for _worker_id, at in harness.manager.forked]
    assert len(times) == 4
    gaps = [later - earlier for earlier, later in zip(times, times[1:], strict=False)]
    assert all(gap >= 0.04 for gap in gaps)
    assert times[-1] - times[0] >= 0.12
    assert harness.registry.count() == 4
    assert all(handle.status is WorkerStatus.LISTENING for handle in harness.registry)


def test_align_twice_issues_actions_once(build_harness, eventually) -> None:
    harness = build_harness(workers=3, fork_delay=0.01)

    async def _run() -> tuple[int, int]:
        reconciler = harness.supervisor.reconciler
        first = reconciler.align()
        second = reconciler.align()
        await eventually(harness.settled)
        await asyncio.sleep(0.05)
        return first, second

    first, second = asyncio.run(_run())

    assert first == 3
    assert second == 0
    assert len(harness.manager.forked) == 3


def test_explicit_count_becomes_desired_count(build_harness, eventually) -> None:
    harness = build_harness(workers=1)

    async def _run() -> None:
        harness.supervisor.reconciler.align(3)
        await eventually(harness.settled)

    asyncio.run(_run())

    assert harness.supervisor.pool.desired_count == 3
    assert harness.registry.count() == 3


def test_scale_down_cancels_scheduled_forks_before_disconnecting(build_harness) -> None:
    harness = build_harness(workers=3, fork_delay=1.0)

    async def _run() -> None:
        reconciler = harness.supervisor.reconciler
        reconciler.align()
        assert reconciler.scheduled_forks == 3
        reconciler.align(1)
        assert reconciler.scheduled_forks == 1
        await asyncio.sleep(0.02)

    asyncio.run(_run())

    assert harness.manager.fork_ids == [1]
    assert harness.manager.disconnected == []


def test_cancelled_forks_free_their_stagger_slots(build_harness, eventually) -> None:
    harness = build_harness(workers=4, fork_delay=0.2)

    async def _run() -> None:
        reconciler = harness.supervisor.reconciler
        reconciler.align()
        reconciler.align(1)
        reconciler.align(2)
        assert reconciler.scheduled_forks == 2
        await eventually(harness.settled)

    asyncio.run(_run())

    [(_, first), (_, second)] = harness.manager.forked
    assert 0.15 <= second - first < 0.5


def test_scale_down_disconnects_arbitrary_live_workers(build_harness, eventually) -> None:
    harness = build_harness(workers=3)

    async def _run() -> list[int]:
        harness.supervisor.reconciler.align()
        await eventually(harness.settled)
        before = harness.registry.ids()
        harness.supervisor.reconciler.align(1)
        await eventually(lambda: harness.registry.count() == 1)
        return before

    before = asyncio.run(_run())

    assert len(harness.manager.disconnected) == 2
    assert set(harness.manager.disconnected) <= set(before)
    assert set(harness.registry.ids()) <= set(before)


def test_stopping_workers_do_not_count_as_capacity(build_harness, eventually) -> None:
    harness = build_harness(workers=3, exit_delay=0.2)

    async def _run() -> None:
        reconciler = harness.supervisor.reconciler
        reconciler.align()
        await eventually(harness.settled)
        reconciler.align(2)
        reconciler.align(1)
        await eventually(lambda: harness.registry.count() == 1)

    asyncio.run(_run())

    assert len(harness.manager.disconnected) == 2
    assert len(set(harness.manager.disconnected)) == 2


def test_crash_loop_never_forks_faster_than_the_delay(build_harness) -> None:
    harness = build_harness(workers=1, fork_delay=0.05, crash_on_start=True)

    async def _run() -> None:
        harness.supervisor.reconciler.align()
        await asyncio.sleep(0.3)
        harness.supervisor.reconciler.cancel_pending()

    asyncio.run(_run())

    times = [at for _worker_id, at in harness.manager.forked]
    assert 2 <= len(times) <= 8
    gaps = [later - earlier for earlier, later in zip(times, times[1:], strict=False)]
    assert all(gap >= 0.04 for gap in gaps)
    assert harness.event_names().count("worker_exited") >= 2


def test_fork_failures_are_retried_on_the_next_pass(build_harness, eventually) -> None:
    harness = build_harness(workers=1, fork_delay=0.01, fail_forks=2)

    async def _run() -> None:
        harness.supervisor.reconciler.align()
        await eventually(harness.settled)

    asyncio.run(_run())

    assert harness.event_names().count("worker_fork_failed") == 2
    assert harness.manager.fork_ids == [1, 2, 3]
    assert harness.registry.ids() == [3]


def test_convergence_after_interleaved_crashes_and_resizes(build_harness, eventually) -> None:
    harness = build_harness(workers=3, fork_delay=0.005)

    async def _run() -> None:
        supervisor = harness.supervisor
        supervisor.reconciler.align()
        await eventually(harness.settled)
        first, second = harness.registry.ids()[:2]
        harness.manager.exit(first, 1)
        supervisor.orchestrator.inc_workers()
        harness.manager.exit(second, None, "SIGKILL")
        supervisor.orchestrator.dec_workers()
        supervisor.orchestrator.inc_workers()
        await eventually(harness.settled)

    asyncio.run(_run())

    assert harness.supervisor.pool.desired_count == 4
    assert harness.registry.count() == 4
    assert "worker_killed" in harness.event_names()


def test_negative_desired_count_is_rejected(build_harness) -> None:
    harness = build_harness(workers=1)

    with pytest.raises(ValueError):
        harness.supervisor.reconciler.align(-1)
