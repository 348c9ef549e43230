import asyncio
import itertools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import pytest

from poolmaster.config import PoolmasterConfig
from poolmaster.process import ProcessManager
from poolmaster.registry import WorkerStatus
from poolmaster.supervisor import Supervisor


class FakeProcessManager(ProcessManager):
    """In-loop stand-in for worker processes; exits and listens on timers."""

    def __init__(
        self,
        *,
        auto_listen: bool = True,
        listen_delay: float = 0.0,
        exit_on_disconnect: bool = True,
        exit_delay: float = 0.0,
        crash_on_start: bool = False,
        fail_forks: int = 0,
    ) -> None:
        super().__init__()
        self.auto_listen = auto_listen
        self.listen_delay = listen_delay
        self.exit_on_disconnect = exit_on_disconnect
        self.exit_delay = exit_delay
        self.crash_on_start = crash_on_start
        self.fail_forks = fail_forks
        self.forked: list[tuple[int, float]] = []
        self.disconnected: list[int] = []
        self.alive: set[int] = set()
        self._ids = itertools.count(1)

    @property
    def fork_ids(self) -> list[int]:
        return [worker_id for worker_id, _at in self.forked]

    def fork(self) -> int:
        worker_id = next(self._ids)
        try:
            loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        self.forked.append((worker_id, loop.time() if loop else 0.0))
        if self.fail_forks and loop is not None:
            self.fail_forks -= 1
            loop.call_soon(self.listener.worker_fork_failed, worker_id, OSError("spawn failed"))
            return worker_id
        self.alive.add(worker_id)
        if loop is None:
            return worker_id
        if self.crash_on_start:
            loop.call_soon(self.exit, worker_id, 1)
        elif self.auto_listen:
            loop.call_later(self.listen_delay, self.listen, worker_id)
        return worker_id

    def disconnect(self, worker_id: int) -> None:
        self.disconnected.append(worker_id)
        if self.exit_on_disconnect and worker_id in self.alive:
            asyncio.get_running_loop().call_later(self.exit_delay, self.exit, worker_id, 0)

    def pid(self, worker_id: int) -> int | None:
        return 1000 + worker_id if worker_id in self.alive else None

    def listen(self, worker_id: int) -> None:
        if worker_id in self.alive:
            self.listener.worker_listening(
                worker_id, {"host": "127.0.0.1", "port": 3000, "pid": 1000 + worker_id}
            )

    def exit(self, worker_id: int, code: int | None = 0, signal_name: str | None = None) -> None:
        if worker_id not in self.alive:
            return
        self.alive.discard(worker_id)
        self.listener.worker_exited(worker_id, code, signal_name)


@dataclass
class Harness:
    supervisor: Supervisor
    manager: FakeProcessManager
    events: list[dict[str, Any]] = field(default_factory=list)

    @property
    def registry(self):
        return self.supervisor.registry

    def event_names(self) -> list[str]:
        return [event["event"] for event in self.events]

    def all_listening(self) -> bool:
        return all(handle.status is WorkerStatus.LISTENING for handle in self.registry)

    def settled(self) -> bool:
        return (
            self.registry.count() == self.supervisor.pool.desired_count
            and self.supervisor.reconciler.scheduled_forks == 0
            and self.all_listening()
        )


@pytest.fixture
def build_harness() -> Callable[..., Harness]:
    def _build(
        workers: int = 2,
        *,
        fork_delay: float = 0.0,
        poll_interval: float = 0.005,
        **manager_options: Any,
    ) -> Harness:
        config = PoolmasterConfig.default()
        config.pool.workers = workers
        config.pool.fork_delay_seconds = fork_delay
        config.pool.poll_interval_seconds = poll_interval
        manager = FakeProcessManager(**manager_options)
        harness = Harness(supervisor=None, manager=manager)  # type: ignore[arg-type]
        harness.supervisor = Supervisor(
            config,
            manager=manager,
            event_hook=harness.events.append,
            handle_signals=False,
        )
        return harness

    return _build


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    async def _eventually(condition: Callable[[], bool], timeout: float = 3.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not condition():
            if loop.time() > deadline:
                raise AssertionError("condition not reached before timeout")
            await asyncio.sleep(0.002)

    return _eventually


@pytest.fixture
def make_manager() -> Callable[..., FakeProcessManager]:
    return FakeProcessManager
