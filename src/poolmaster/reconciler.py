from __future__ import annotations

import asyncio
from typing import Any

from poolmaster.process import EventHook
from poolmaster.registry import PoolState


class Reconciler:
    """Converges the live worker count toward the pool's target count.

    Forks are never issued back to back: each one is scheduled at least
    ``fork_delay`` seconds after the previous one, so a worker that dies right
    after starting cannot turn self-healing into a fork storm.
    """

    def __init__(
        self,
        pool: PoolState,
        *,
        fork_delay: float = 1.0,
        event_hook: EventHook | None = None,
    ) -> None:
        self.pool = pool
        self.fork_delay = fork_delay
        self.event_hook = event_hook
        self._scheduled: list[asyncio.TimerHandle] = []
        self._next_fork_at = 0.0
        self._last_fork_at: float | None = None

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @property
    def scheduled_forks(self) -> int:
        return len(self._scheduled)

    def deficit(self) -> int:
        return self.pool.target_count - (self.pool.registry.live_count() + len(self._scheduled))

    def align(self, desired: int | None = None) -> int:
        if desired is not None:
            if desired < 0:
                raise ValueError(f"desired worker count must be >= 0, got {desired}")
            self.pool.desired_count = desired

        delta = self.deficit()
        if delta > 0:
            for _ in range(delta):
                self._schedule_fork()
        elif delta < 0:
            self._shrink(-delta)
        return delta

    def _schedule_fork(self) -> None:
        loop = asyncio.get_running_loop()
        fire_at = max(loop.time(), self._next_fork_at)
        self._next_fork_at = fire_at + self.fork_delay
        holder: list[asyncio.TimerHandle] = []
        handle = loop.call_at(fire_at, self._fire_fork, holder)
        holder.append(handle)
        self._scheduled.append(handle)
        self._emit(
            {
                "event": "worker_fork_scheduled",
                "delay_seconds": round(max(0.0, fire_at - loop.time()), 3),
            }
        )

    def _fire_fork(self, holder: list[asyncio.TimerHandle]) -> None:
        if holder and holder[0] in self._scheduled:
            self._scheduled.remove(holder[0])
        self._last_fork_at = asyncio.get_running_loop().time()
        if self.deficit() <= 0:
            return
        handle = self.pool.registry.fork()
        self._emit({"event": "worker_forked", "worker_id": handle.id})

    def _shrink(self, count: int) -> None:
        while count and self._scheduled:
            self._scheduled.pop().cancel()
            count -= 1
        self._rewind_stagger()
        if not count:
            return
        for worker_id in self.pool.registry.live_ids()[:count]:
            self.pool.registry.disconnect(worker_id)
            self._emit({"event": "worker_disconnect", "worker_id": worker_id})

    def _rewind_stagger(self) -> None:
        # Next slot follows the last fork still scheduled, or the last one fired.
        if self._scheduled:
            self._next_fork_at = self._scheduled[-1].when() + self.fork_delay
        elif self._last_fork_at is not None:
            self._next_fork_at = self._last_fork_at + self.fork_delay
        else:
            self._next_fork_at = 0.0

    def cancel_pending(self) -> None:
        for handle in self._scheduled:
            handle.cancel()
        self._scheduled.clear()
