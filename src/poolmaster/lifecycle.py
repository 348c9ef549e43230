from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable, Coroutine
from typing import Any

from poolmaster.process import EventHook
from poolmaster.reconciler import Reconciler
from poolmaster.registry import PoolState, WorkerRegistry, WorkerStatus


class LifecycleOrchestrator:
    """Multi-step pool protocols built from reconciler calls and polling waits.

    Protocols never cancel each other. Every wait re-reads the registry and
    the desired count when it wakes up, because other handlers may have run
    in between.
    """

    def __init__(
        self,
        pool: PoolState,
        reconciler: Reconciler,
        *,
        poll_interval: float = 1.0,
        event_hook: EventHook | None = None,
    ) -> None:
        self.pool = pool
        self.reconciler = reconciler
        self.poll_interval = poll_interval
        self.event_hook = event_hook
        self.finished = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()
        self._shutdown_target: int | None = None
        self._reload_queue: deque[int] | None = None
        self._reloading: int | None = None

    @property
    def registry(self) -> WorkerRegistry:
        return self.pool.registry

    @property
    def shutting_down(self) -> bool:
        return self._shutdown_target is not None

    @property
    def reloading(self) -> bool:
        return self._reload_queue is not None

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _wait_until(self, condition: Callable[[], bool]) -> None:
        while not condition():
            await asyncio.sleep(self.poll_interval)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # Shutdown

    def request_shutdown(self, restart_count: int = 0) -> None:
        if self.shutting_down:
            self._shutdown_target = restart_count
            self._emit({"event": "shutdown_pending", "restart_count": restart_count})
            return
        self._spawn(self.shutdown_and_restart(restart_count))

    async def shutdown_and_restart(self, restart_count: int = 0) -> None:
        if restart_count < 0:
            raise ValueError(f"restart_count must be >= 0, got {restart_count}")
        if self.shutting_down:
            self._shutdown_target = restart_count
            self._emit({"event": "shutdown_pending", "restart_count": restart_count})
            return

        self._shutdown_target = restart_count
        self.pool.draining = True
        self._emit(
            {
                "event": "shutdown_start",
                "workers": self.registry.count(),
                "restart_count": restart_count,
            }
        )
        self.reconciler.align()
        await self._wait_until(lambda: self.registry.count() == 0)

        target = self._shutdown_target or 0
        self._shutdown_target = None
        if not target:
            self._emit({"event": "shutdown_complete"})
            self.finished.set()
            return

        self.pool.draining = False
        self._emit({"event": "shutdown_refill", "workers": target})
        self.reconciler.align(target)

    # Rolling reload

    def request_reload(self, worker_ids: list[int] | None = None) -> None:
        if self.reloading:
            self._requeue(worker_ids)
            return
        self._spawn(self.reload(worker_ids))

    def _requeue(self, worker_ids: list[int] | None) -> None:
        if worker_ids is None:
            worker_ids = [
                worker_id for worker_id in self.registry.live_ids() if worker_id != self._reloading
            ]
        self._reload_queue = deque(worker_ids)
        self._emit({"event": "reload_restarted", "queue": list(worker_ids)})

    def _replacement_ready(self) -> bool:
        if self.registry.count() != self.pool.desired_count:
            return False
        newest = self.registry.newest()
        return newest is None or newest.status is WorkerStatus.LISTENING

    async def reload(self, worker_ids: list[int] | None = None) -> None:
        if self.reloading:
            self._requeue(worker_ids)
            return

        queue = list(worker_ids) if worker_ids is not None else self.registry.live_ids()
        self._reload_queue = deque(queue)
        self._emit({"event": "reload_start", "queue": queue})
        try:
            while self._reload_queue:
                worker_id = self._reload_queue.popleft()
                if worker_id not in self.registry:
                    self._emit({"event": "reload_skipped", "worker_id": worker_id})
                    continue

                self._reloading = worker_id
                self._emit({"event": "reload_worker", "worker_id": worker_id})
                self.registry.disconnect(worker_id)
                await self._wait_until(lambda gone=worker_id: gone not in self.registry)
                await self._wait_until(self._replacement_ready)
                self._reloading = None
        finally:
            self._reload_queue = None
            self._reloading = None
        self._emit({"event": "reload_complete"})

    # Pool size

    def inc_workers(self) -> None:
        self.pool.desired_count += 1
        self._emit({"event": "pool_resized", "desired_count": self.pool.desired_count})
        self.reconciler.align()

    def dec_workers(self) -> None:
        if self.pool.desired_count == 0:
            self._emit({"event": "pool_at_minimum", "desired_count": 0})
            return
        self.pool.desired_count -= 1
        self._emit({"event": "pool_resized", "desired_count": self.pool.desired_count})
        self.reconciler.align()

    def reset_workers(self) -> None:
        self._emit({"event": "pool_reset", "desired_count": self.pool.baseline_count})
        self.reconciler.align(self.pool.baseline_count)

    async def aclose(self) -> None:
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
