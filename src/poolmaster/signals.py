from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any

from poolmaster.lifecycle import LifecycleOrchestrator
from poolmaster.process import EventHook

SIGNALS_CONFIG: Mapping[str, tuple[str, ...]] = MappingProxyType(
    {
        # Graceful shutdown of every worker, then the supervisor exits.
        "shutdown_workers": ("SIGINT", "SIGTERM"),
        "add_worker": ("SIGTTIN",),
        # Graceful shutdown of one worker.
        "remove_worker": ("SIGTTOU",),
        # Replace workers one by one.
        "reload_one_by_one": ("SIGHUP", "SIGUSR2"),
        # Back to the worker count configured at startup.
        "reset_workers_number": ("SIGWINCH",),
    }
)


class SignalDispatcher:
    def __init__(
        self,
        orchestrator: LifecycleOrchestrator,
        *,
        event_hook: EventHook | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.event_hook = event_hook
        actions: dict[str, Callable[[], None]] = {
            "shutdown_workers": lambda: orchestrator.request_shutdown(0),
            "add_worker": orchestrator.inc_workers,
            "remove_worker": orchestrator.dec_workers,
            "reload_one_by_one": lambda: orchestrator.request_reload(),
            "reset_workers_number": orchestrator.reset_workers,
        }
        self.actions: Mapping[str, str] = MappingProxyType(
            {name: action for action, names in SIGNALS_CONFIG.items() for name in names}
        )
        self.handlers: Mapping[str, Callable[[], None]] = MappingProxyType(
            {name: actions[action] for name, action in self.actions.items()}
        )
        self._loop: asyncio.AbstractEventLoop | None = None
        self._installed: list[signal.Signals] = []

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def dispatch(self, name: str) -> None:
        handler = self.handlers[name]
        self._emit({"event": "signal_received", "signal": name, "action": self.actions[name]})
        handler()

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._installed:
            return
        self._loop = loop
        for name in self.handlers:
            signum = getattr(signal, name, None)
            if not isinstance(signum, signal.Signals):
                continue
            loop.add_signal_handler(signum, self.dispatch, name)
            self._installed.append(signum)

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for signum in self._installed:
            self._loop.remove_signal_handler(signum)
        self._installed.clear()
        self._loop = None

    @property
    def installed(self) -> list[str]:
        return [signum.name for signum in self._installed]
