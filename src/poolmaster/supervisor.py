from __future__ import annotations

import asyncio
import os
import signal
from typing import Any

from poolmaster.config import PoolmasterConfig
from poolmaster.lifecycle import LifecycleOrchestrator
from poolmaster.process import EventHook, ProcessManager, SubprocessManager
from poolmaster.reconciler import Reconciler
from poolmaster.registry import PoolState, WorkerRegistry, WorkerStatus
from poolmaster.signals import SignalDispatcher


class Supervisor:
    def __init__(
        self,
        config: PoolmasterConfig,
        *,
        manager: ProcessManager | None = None,
        event_hook: EventHook | None = None,
        handle_signals: bool = True,
    ) -> None:
        self.config = config
        self.environment = config.runtime.environment
        self.event_hook = event_hook
        self.handle_signals = handle_signals
        self.manager = manager or SubprocessManager(
            config.worker.command(self.environment),
            disconnect_signal=signal.Signals[config.worker.disconnect_signal],
        )
        self.manager.attach(self)
        self.registry = WorkerRegistry(self.manager)
        self.pool = PoolState(self.registry, desired_count=config.pool.resolved_workers())
        self.reconciler = Reconciler(
            self.pool,
            fork_delay=config.pool.fork_delay_seconds,
            event_hook=self._emit,
        )
        self.orchestrator = LifecycleOrchestrator(
            self.pool,
            self.reconciler,
            poll_interval=config.pool.poll_interval_seconds,
            event_hook=self._emit,
        )
        self.signals = SignalDispatcher(self.orchestrator, event_hook=self._emit)

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def worker_listening(self, worker_id: int, address: dict[str, Any]) -> None:
        handle = self.registry.mark_listening(worker_id, address)
        if handle is None:
            return
        self._emit(
            {
                "event": "worker_listening",
                "worker_id": worker_id,
                "environment": self.environment,
                "host": address.get("host"),
                "port": address.get("port"),
                "pid": address.get("pid", self.manager.pid(worker_id)),
            }
        )

    def worker_exited(self, worker_id: int, exit_code: int | None, signal_name: str | None) -> None:
        handle = self.registry.remove(worker_id)
        requested = handle is not None and handle.status is WorkerStatus.STOPPING
        if signal_name:
            self._emit(
                {
                    "event": "worker_killed",
                    "worker_id": worker_id,
                    "signal": signal_name,
                    "requested": requested,
                }
            )
        else:
            self._emit(
                {
                    "event": "worker_exited",
                    "worker_id": worker_id,
                    "exit_code": exit_code,
                    "requested": requested,
                }
            )
        self.reconciler.align()

    def worker_fork_failed(self, worker_id: int, error: BaseException) -> None:
        self.registry.remove(worker_id)
        self._emit({"event": "worker_fork_failed", "worker_id": worker_id, "error": str(error)})
        self.reconciler.align()

    def worker_output(self, worker_id: int, line: str) -> None:
        self._emit({"event": "worker_output", "worker_id": worker_id, "line": line})

    def status(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "desired_count": self.pool.desired_count,
            "baseline_count": self.pool.baseline_count,
            "draining": self.pool.draining,
            "scheduled_forks": self.reconciler.scheduled_forks,
            "shutting_down": self.orchestrator.shutting_down,
            "reloading": self.orchestrator.reloading,
            "workers": self.registry.snapshot(),
        }

    async def run(self) -> int:
        if self.handle_signals:
            self.signals.install(asyncio.get_running_loop())
        self._emit(
            {
                "event": "supervisor_start",
                "pid": os.getpid(),
                "workers": self.pool.desired_count,
                "environment": self.environment,
                "signals": self.signals.installed,
            }
        )
        try:
            self.reconciler.align()
            await self.orchestrator.finished.wait()
        finally:
            self.signals.uninstall()
            self.reconciler.cancel_pending()
            await self.orchestrator.aclose()
            if self.registry.count() == 0:
                await self.manager.aclose()
        self._emit({"event": "supervisor_stop", "pid": os.getpid()})
        return 0
