from __future__ import annotations

import asyncio
import itertools
import json
import os
import signal
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from poolmaster.errors import ProcessManagerError

EventHook = Callable[[dict[str, Any]], None]

STDOUT_LINE_LIMIT = 1024 * 1024


class WorkerEventListener(Protocol):
    def worker_listening(self, worker_id: int, address: dict[str, Any]) -> None: ...

    def worker_exited(
        self, worker_id: int, exit_code: int | None, signal_name: str | None
    ) -> None: ...

    def worker_fork_failed(self, worker_id: int, error: BaseException) -> None: ...

    def worker_output(self, worker_id: int, line: str) -> None: ...


class ProcessManager(ABC):
    """Starts and stops worker processes; results arrive on the attached listener."""

    def __init__(self) -> None:
        self._listener: WorkerEventListener | None = None

    def attach(self, listener: WorkerEventListener) -> None:
        self._listener = listener

    @property
    def listener(self) -> WorkerEventListener:
        if self._listener is None:
            raise ProcessManagerError("Process manager has no event listener attached.")
        return self._listener

    @abstractmethod
    def fork(self) -> int:
        """Start one worker and return its id without waiting for it."""

    @abstractmethod
    def disconnect(self, worker_id: int) -> None:
        """Ask a worker to stop accepting work and exit."""

    def pid(self, worker_id: int) -> int | None:
        return None

    async def aclose(self) -> None:
        return None


def _signal_name(return_code: int | None) -> str | None:
    if return_code is None or return_code >= 0:
        return None
    try:
        return signal.Signals(-return_code).name
    except ValueError:
        return f"SIG{-return_code}"


class SubprocessManager(ProcessManager):
    def __init__(
        self,
        command: list[str],
        *,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        disconnect_signal: signal.Signals = signal.SIGINT,
        line_limit: int = STDOUT_LINE_LIMIT,
    ) -> None:
        super().__init__()
        self.command = list(command)
        self.cwd = cwd
        self.env = env
        self.disconnect_signal = disconnect_signal
        self.line_limit = line_limit
        self._ids = itertools.count(1)
        self._processes: dict[int, asyncio.subprocess.Process] = {}
        self._tasks: dict[int, asyncio.Task[None]] = {}
        self._pending_disconnects: set[int] = set()

    def fork(self) -> int:
        listener = self.listener
        worker_id = next(self._ids)
        task = asyncio.get_running_loop().create_task(
            self._run_worker(worker_id, listener), name=f"poolmaster-worker-{worker_id}"
        )
        self._tasks[worker_id] = task
        task.add_done_callback(lambda _task: self._tasks.pop(worker_id, None))
        return worker_id

    def disconnect(self, worker_id: int) -> None:
        process = self._processes.get(worker_id)
        if process is None:
            if worker_id in self._tasks:
                self._pending_disconnects.add(worker_id)
            return
        self._send(process)

    def pid(self, worker_id: int) -> int | None:
        process = self._processes.get(worker_id)
        return process.pid if process is not None else None

    def _send(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.send_signal(self.disconnect_signal)
        except ProcessLookupError:
            # Already gone; the exit event follows on its own.
            pass

    def _environment(self, worker_id: int) -> dict[str, str]:
        env = dict(os.environ if self.env is None else self.env)
        env["POOLMASTER_WORKER_ID"] = str(worker_id)
        return env

    async def _run_worker(self, worker_id: int, listener: WorkerEventListener) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.cwd) if self.cwd else None,
                env=self._environment(worker_id),
                stdout=asyncio.subprocess.PIPE,
                limit=self.line_limit,
                # Terminal signals reach the supervisor only; workers get the disconnect.
                start_new_session=True,
            )
        except OSError as exc:
            self._pending_disconnects.discard(worker_id)
            listener.worker_fork_failed(worker_id, exc)
            return

        self._processes[worker_id] = process
        if worker_id in self._pending_disconnects:
            self._pending_disconnects.discard(worker_id)
            self._send(process)

        try:
            if process.stdout is not None:
                await self._read_output(worker_id, process.stdout, listener)
        finally:
            return_code = await process.wait()
            self._processes.pop(worker_id, None)
            if return_code < 0:
                listener.worker_exited(worker_id, None, _signal_name(return_code))
            else:
                listener.worker_exited(worker_id, return_code, None)

    async def _read_output(
        self, worker_id: int, stream: asyncio.StreamReader, listener: WorkerEventListener
    ) -> None:
        while True:
            try:
                raw_line = await stream.readline()
            except ValueError:
                # readline() already discarded the oversized chunk.
                listener.worker_output(
                    worker_id, f"[output line over {self.line_limit} bytes dropped]"
                )
                continue
            if not raw_line:
                return
            line = raw_line.decode("utf-8", errors="replace").strip()
            if line:
                self._dispatch_line(worker_id, line, listener)

    @staticmethod
    def _dispatch_line(worker_id: int, line: str, listener: WorkerEventListener) -> None:
        if line.startswith("{") and line.endswith("}"):
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                payload = None
            if isinstance(payload, dict) and payload.get("event") == "listening":
                address = {key: value for key, value in payload.items() if key != "event"}
                listener.worker_listening(worker_id, address)
                return
        listener.worker_output(worker_id, line)

    async def aclose(self) -> None:
        """Wait for the worker watcher tasks still running."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
