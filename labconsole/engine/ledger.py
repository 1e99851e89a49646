"""Registry of asynchronous resources spawned by evaluated code.

Every timer, interval, frame/idle callback, immediate, deferred, task,
subprocess and listener created through the scheduling substitutes registers
here with a cancel callable, and deregisters when it completes naturally.
``sweep()`` cancels whatever is still outstanding.
"""

from __future__ import annotations

import asyncio
import itertools
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import psutil
import structlog

logger = structlog.get_logger()


class ResourceKind(str, Enum):
    TIMEOUT = "timeout"
    INTERVAL = "interval"
    ANIMATION_FRAME = "animation_frame"
    IDLE_CALLBACK = "idle_callback"
    IMMEDIATE = "immediate"
    PROMISE = "promise"
    SUBPROCESS = "subprocess"
    LISTENER = "listener"


# Sweep order: detach listeners first so nothing new is triggered, then the
# short-lived callbacks, repeating timers, pending work, and external processes.
SWEEP_ORDER = (
    ResourceKind.LISTENER,
    ResourceKind.IMMEDIATE,
    ResourceKind.ANIMATION_FRAME,
    ResourceKind.IDLE_CALLBACK,
    ResourceKind.INTERVAL,
    ResourceKind.TIMEOUT,
    ResourceKind.PROMISE,
    ResourceKind.SUBPROCESS,
)

STAT_NAMES = {
    ResourceKind.TIMEOUT: "timeouts",
    ResourceKind.INTERVAL: "intervals",
    ResourceKind.ANIMATION_FRAME: "animation_frames",
    ResourceKind.IDLE_CALLBACK: "idle_callbacks",
    ResourceKind.IMMEDIATE: "immediates",
    ResourceKind.PROMISE: "promises",
    ResourceKind.SUBPROCESS: "subprocesses",
    ResourceKind.LISTENER: "listeners",
}


@dataclass(frozen=True)
class ResourceHandle:
    kind: ResourceKind
    ident: int
    owner: Optional[str] = None


def _kill_survivors(procs: list, timeout: Optional[float]) -> None:
    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    if alive:
        logger.debug("process_tree_killed", pids=[proc.pid for proc in alive])


def terminate_process_tree(pid: int, grace_period: float = 1.0) -> Optional[asyncio.TimerHandle]:
    """Terminate ``pid`` and its descendants, killing what outlives the grace period.

    On a running loop the kill is scheduled after ``grace_period`` and its
    timer handle returned, so the sweep never blocks the loop. Without one
    the call waits for the processes itself.
    """
    try:
        parent = psutil.Process(pid)
        procs = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return None
    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        _kill_survivors(procs, grace_period)
        return None
    return loop.call_later(grace_period, _kill_survivors, procs, 0)


class ResourceLedger:
    """Thread-safe registry of cancellable resources, keyed by kind and id."""

    def __init__(
        self,
        *,
        grace_period: float = 1.0,
        on_change: Optional[Callable[[dict[str, int]], None]] = None,
    ) -> None:
        self.grace_period = grace_period
        self.on_change = on_change
        self.owner: Optional[str] = None
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._entries: dict[ResourceKind, dict[int, tuple[ResourceHandle, Callable[[], Any]]]] = {
            kind: {} for kind in ResourceKind
        }
        self._cleanups: list[Callable[[], Any]] = []
        self.stats_counters = {"registered": 0, "released": 0, "swept": 0, "cleanup_failures": 0}

    def next_id(self) -> int:
        return next(self._ids)

    def register(
        self, kind: ResourceKind, cancel: Callable[[], Any], ident: Optional[int] = None
    ) -> ResourceHandle:
        handle = ResourceHandle(kind, self.next_id() if ident is None else ident, self.owner)
        with self._lock:
            self._entries[kind][handle.ident] = (handle, cancel)
            self.stats_counters["registered"] += 1
        logger.debug("resource_registered", kind=kind.value, ident=handle.ident, owner=handle.owner)
        self._changed()
        return handle

    def release(self, kind: ResourceKind, ident: int) -> bool:
        """Deregister without cancelling. Safe to call more than once."""
        with self._lock:
            entry = self._entries[kind].pop(ident, None)
            if entry is not None:
                self.stats_counters["released"] += 1
        if entry is not None:
            self._changed()
        return entry is not None

    def cancel(self, kind: ResourceKind, ident: int) -> bool:
        """Deregister and cancel one resource. Safe to call more than once."""
        with self._lock:
            entry = self._entries[kind].pop(ident, None)
        if entry is None:
            return False
        self._invoke(entry[1], kind)
        self._changed()
        return True

    def pending(self, kind: ResourceKind) -> int:
        with self._lock:
            return len(self._entries[kind])

    def is_pending(self, kind: ResourceKind, ident: int) -> bool:
        with self._lock:
            return ident in self._entries[kind]

    def handles(self, kind: ResourceKind) -> list[ResourceHandle]:
        with self._lock:
            return [handle for handle, _ in self._entries[kind].values()]

    def stats(self) -> dict[str, int]:
        with self._lock:
            stats = {STAT_NAMES[kind]: len(entries) for kind, entries in self._entries.items()}
            stats["cleanups"] = len(self._cleanups)
        return stats

    def track_task(self, task: asyncio.Future) -> ResourceHandle:
        handle = self.register(ResourceKind.PROMISE, task.cancel)
        task.add_done_callback(lambda _t: self.release(ResourceKind.PROMISE, handle.ident))
        return handle

    def track_process(self, pid: int) -> ResourceHandle:
        return self.register(
            ResourceKind.SUBPROCESS,
            lambda: terminate_process_tree(pid, self.grace_period),
            ident=pid,
        )

    def listen(self, detach: Callable[[], Any]) -> ResourceHandle:
        return self.register(ResourceKind.LISTENER, detach)

    def add_cleanup(self, fn: Callable[[], Any]) -> None:
        with self._lock:
            self._cleanups.append(fn)
        self._changed()

    def sweep(self) -> dict[str, int]:
        """Cancel every outstanding resource, then run cleanup callbacks in order.

        Registries are drained under the lock and cancelled outside it, so
        callbacks that fire or deregister mid-sweep are harmless.
        """
        swept: dict[str, int] = {}
        for kind in SWEEP_ORDER:
            with self._lock:
                entries = list(self._entries[kind].values())
                self._entries[kind].clear()
            for _, cancel in entries:
                self._invoke(cancel, kind)
            if entries:
                swept[STAT_NAMES[kind]] = len(entries)

        with self._lock:
            cleanups, self._cleanups = self._cleanups, []
        for fn in cleanups:
            try:
                fn()
            except Exception as e:
                self.stats_counters["cleanup_failures"] += 1
                logger.warning("cleanup_failed", error=str(e), callback=repr(fn))
        if cleanups:
            swept["cleanups"] = len(cleanups)

        self.stats_counters["swept"] += sum(swept.values())
        logger.debug("ledger_swept", **swept)
        self._changed()
        return swept

    def _invoke(self, cancel: Callable[[], Any], kind: ResourceKind) -> None:
        try:
            cancel()
        except Exception as e:
            logger.debug("resource_cancel_failed", kind=kind.value, error=str(e))

    def _changed(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self.stats())
        except Exception as e:
            logger.debug("stats_hook_failed", error=str(e))
