from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from .errors import StopExecution
from .ledger import ResourceLedger

logger = structlog.get_logger()


class CancelToken:
    """Stop flag shared by the loop thread and `stop_loop` callers on other threads.

    Records when the stop was raised so the coordinator can log how long a
    running evaluation took to notice it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._raised_at: Optional[float] = None

    def cancel(self) -> None:
        with self._lock:
            if self._raised_at is None:
                self._raised_at = time.monotonic()

    def is_cancelled(self) -> bool:
        with self._lock:
            return self._raised_at is not None

    def raised_at(self) -> Optional[float]:
        """Monotonic time of the first ``cancel()`` since the last reset."""
        with self._lock:
            return self._raised_at

    def reset(self) -> None:
        with self._lock:
            self._raised_at = None


@dataclass
class _TopTask:
    """Tracker for the top-level evaluation task.

    Only the task awaiting the rewritten submission is tracked here; tasks the
    submission spawns are the ledger's.
    """

    task: Optional[asyncio.Task] = None
    loop: Optional[asyncio.AbstractEventLoop] = None
    cancel_reason: Optional[str] = None
    requested_at: Optional[float] = None

    def set(self, task: asyncio.Task) -> None:
        self.task = task
        self.loop = task.get_loop()
        self.cancel_reason = None
        self.requested_at = None

    def cancel(self, reason: Optional[str] = None) -> bool:
        task = self.task
        loop = self.loop
        if task is None or task.done():
            return False
        self.cancel_reason = reason
        self.requested_at = time.time()

        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None

        if current is loop:
            return bool(task.cancel())
        # Off-loop: schedule thread-safely only if the loop is running
        if loop is not None and loop.is_running():
            loop.call_soon_threadsafe(task.cancel)
            return True
        return False

    def clear(self) -> None:
        self.task = None
        self.loop = None


class CancellationCoordinator:
    """Owns the stop flag and tears down an evaluation on request."""

    def __init__(self, ledger: ResourceLedger) -> None:
        self.ledger = ledger
        self.token = CancelToken()
        self.top = _TopTask()
        self._swept = False
        self.stats = {"stops_requested": 0, "stops_effective": 0, "sweeps": 0}

    @property
    def stop_requested(self) -> bool:
        return self.token.is_cancelled()

    def reset(self) -> None:
        self.token.reset()
        self._swept = False

    def sweep(self) -> dict[str, int]:
        self.stats["sweeps"] += 1
        self._swept = True
        return self.ledger.sweep()

    def request_stop(self, reason: Optional[str] = None) -> bool:
        """Stop the current evaluation.

        Sets the stop flag, sweeps the ledger when called on the loop thread
        (otherwise the sweep runs on the loop), and cancels the top-level task
        at its next ``await``. Returns True when a running evaluation was hit.
        """
        self.stats["stops_requested"] += 1
        self.token.cancel()
        loop = self.top.loop
        try:
            on_loop = asyncio.get_running_loop() is loop
        except RuntimeError:
            on_loop = False
        if on_loop or loop is None or not loop.is_running():
            self.sweep()
        else:
            loop.call_soon_threadsafe(self.sweep)
        effective = self.top.cancel(reason or "stop requested")
        if effective:
            self.stats["stops_effective"] += 1
        logger.info("stop_requested", effective=effective, reason=reason)
        return effective

    def check_stop(self) -> None:
        """Poll point for evaluated code; raises ``StopExecution`` once stopped."""
        if self.token.is_cancelled():
            if not self._swept:
                self.sweep()
            raised_at = self.token.raised_at()
            if raised_at is not None:
                logger.debug("stop_observed", latency=round(time.monotonic() - raised_at, 6))
            raise StopExecution()

    def stoppoint(self) -> None:
        """Stop the evaluation here, as if the user had pressed stop."""
        self.request_stop("stoppoint")
        self.check_stop()

    def annotate(self, e: BaseException, execution_id: str) -> None:
        """Attach stop metadata to a cancellation for observability."""
        e.add_note(f"execution_id={execution_id}")
        if self.top.cancel_reason:
            e.add_note(f"cancel_reason={self.top.cancel_reason}")
        if self.top.requested_at:
            e.add_note(f"cancel_requested_at={self.top.requested_at}")

    def capabilities(self) -> dict[str, Any]:
        return {"check_stop": self.check_stop, "stoppoint": self.stoppoint}
