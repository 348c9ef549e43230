from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from poolmaster.process import ProcessManager


class WorkerStatus(StrEnum):
    STARTING = "starting"
    LISTENING = "listening"
    STOPPING = "stopping"


@dataclass(slots=True)
class WorkerHandle:
    id: int
    status: WorkerStatus = WorkerStatus.STARTING
    address: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "status": self.status.value, "address": dict(self.address)}


class WorkerRegistry:
    """Live workers keyed by the id the process manager assigned at fork time.

    Entries are inserted on fork and removed only when the manager reports the
    process has exited (or could not be started), so ``count()`` tracks the
    number of worker processes alive without ever consulting the OS.
    """

    def __init__(self, manager: ProcessManager) -> None:
        self.manager = manager
        self._workers: dict[int, WorkerHandle] = {}

    def __contains__(self, worker_id: object) -> bool:
        return worker_id in self._workers

    def __iter__(self) -> Iterator[WorkerHandle]:
        return iter(list(self._workers.values()))

    def __len__(self) -> int:
        return len(self._workers)

    def get(self, worker_id: int) -> WorkerHandle | None:
        return self._workers.get(worker_id)

    def count(self) -> int:
        return len(self._workers)

    def ids(self) -> list[int]:
        return list(self._workers)

    def live_ids(self) -> list[int]:
        return [
            worker_id
            for worker_id, handle in self._workers.items()
            if handle.status is not WorkerStatus.STOPPING
        ]

    def live_count(self) -> int:
        return len(self.live_ids())

    def newest(self) -> WorkerHandle | None:
        if not self._workers:
            return None
        return self._workers[next(reversed(self._workers))]

    def fork(self) -> WorkerHandle:
        worker_id = self.manager.fork()
        handle = WorkerHandle(id=worker_id)
        self._workers[worker_id] = handle
        return handle

    def disconnect(self, worker_id: int) -> WorkerHandle | None:
        handle = self._workers.get(worker_id)
        if handle is None or handle.status is WorkerStatus.STOPPING:
            return handle
        handle.status = WorkerStatus.STOPPING
        self.manager.disconnect(worker_id)
        return handle

    def mark_listening(self, worker_id: int, address: dict[str, Any]) -> WorkerHandle | None:
        handle = self._workers.get(worker_id)
        if handle is None:
            return None
        handle.address = dict(address)
        if handle.status is WorkerStatus.STARTING:
            handle.status = WorkerStatus.LISTENING
        return handle

    def remove(self, worker_id: int) -> WorkerHandle | None:
        return self._workers.pop(worker_id, None)

    def snapshot(self) -> list[dict[str, Any]]:
        return [handle.to_dict() for handle in self._workers.values()]


@dataclass(slots=True)
class PoolState:
    registry: WorkerRegistry
    desired_count: int
    baseline_count: int = -1
    draining: bool = False

    def __post_init__(self) -> None:
        if self.desired_count < 0:
            raise ValueError(f"desired_count must be >= 0, got {self.desired_count}")
        if self.baseline_count < 0:
            self.baseline_count = self.desired_count

    @property
    def target_count(self) -> int:
        return 0 if self.draining else self.desired_count
