"""Scheduling substitutes injected into the capability table.

Each substitute schedules on the running event loop, registers the pending
work with the ``ResourceLedger`` and deregisters it once it runs, so a sweep
can cancel whatever evaluated code left behind.
"""

from __future__ import annotations

import asyncio
import contextvars
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog

from .deferred import Deferred
from .errors import StopExecution
from .ledger import ResourceKind, ResourceLedger

logger = structlog.get_logger()


@dataclass
class IdleDeadline:
    """Argument passed to idle callbacks."""

    did_timeout: bool
    budget_ms: float

    def time_remaining(self) -> float:
        return self.budget_ms


class Scheduler:
    """Timer, callback, subprocess and listener substitutes backed by the ledger."""

    def __init__(
        self,
        ledger: ResourceLedger,
        *,
        frame_interval: float = 1 / 60,
        idle_callback_delay: float = 0.05,
        on_error: Optional[Callable[[BaseException], None]] = None,
        check_stop: Optional[Callable[[], None]] = None,
    ) -> None:
        self.ledger = ledger
        self.check_stop = check_stop
        self.frame_interval = frame_interval
        self.idle_callback_delay = idle_callback_delay
        self.on_error = on_error
        self._watchers: set[asyncio.Task] = set()

    # -- callback plumbing --------------------------------------------------
    def _report(self, exc: BaseException) -> None:
        if self.on_error is not None:
            self.on_error(exc)
        else:
            logger.error("callback_failed", error=str(exc), exception_type=type(exc).__name__)

    def _run(self, fn: Callable[..., Any], args: tuple) -> None:
        try:
            result = fn(*args)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                task.add_done_callback(self._task_done)
        except StopExecution:
            pass
        except Exception as e:
            self._report(e)

    def _task_done(self, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, StopExecution):
            self._report(exc)

    def _fire_once(self, kind: ResourceKind, ident: int, fn: Callable[..., Any], args: tuple) -> None:
        try:
            self._run(fn, args)
        finally:
            self.ledger.release(kind, ident)

    def _schedule_once(self, kind: ResourceKind, delay: float, fn: Callable[..., Any], args: tuple) -> int:
        loop = asyncio.get_running_loop()
        ident = self.ledger.next_id()
        if delay <= 0:
            handle: asyncio.Handle = loop.call_soon(self._fire_once, kind, ident, fn, args)
        else:
            handle = loop.call_later(delay, self._fire_once, kind, ident, fn, args)
        self.ledger.register(kind, handle.cancel, ident=ident)
        return ident

    # -- timers ---------------------------------------------------------------
    def set_timeout(self, fn: Callable[..., Any], delay_ms: float = 0, *args: Any) -> int:
        return self._schedule_once(ResourceKind.TIMEOUT, max(delay_ms, 1) / 1000, fn, args)

    def clear_timeout(self, ident: Optional[int]) -> None:
        if ident is not None:
            self.ledger.cancel(ResourceKind.TIMEOUT, ident)

    def set_interval(self, fn: Callable[..., Any], delay_ms: float = 0, *args: Any) -> int:
        loop = asyncio.get_running_loop()
        ident = self.ledger.next_id()
        delay = max(delay_ms, 1) / 1000
        current: dict[str, asyncio.TimerHandle] = {}

        def tick() -> None:
            if not self.ledger.is_pending(ResourceKind.INTERVAL, ident):
                return
            # Reschedule first so a failing callback keeps its cadence
            current["handle"] = loop.call_later(delay, tick)
            self._run(fn, args)

        current["handle"] = loop.call_later(delay, tick)
        self.ledger.register(ResourceKind.INTERVAL, lambda: current["handle"].cancel(), ident=ident)
        return ident

    def clear_interval(self, ident: Optional[int]) -> None:
        if ident is not None:
            self.ledger.cancel(ResourceKind.INTERVAL, ident)

    def set_immediate(self, fn: Callable[..., Any], *args: Any) -> int:
        return self._schedule_once(ResourceKind.IMMEDIATE, 0, fn, args)

    def clear_immediate(self, ident: Optional[int]) -> None:
        if ident is not None:
            self.ledger.cancel(ResourceKind.IMMEDIATE, ident)

    def request_animation_frame(self, fn: Callable[[float], Any]) -> int:
        loop = asyncio.get_running_loop()

        def frame() -> Any:
            return fn(loop.time() * 1000)

        return self._schedule_once(ResourceKind.ANIMATION_FRAME, self.frame_interval, frame, ())

    def cancel_animation_frame(self, ident: Optional[int]) -> None:
        if ident is not None:
            self.ledger.cancel(ResourceKind.ANIMATION_FRAME, ident)

    def request_idle_callback(self, fn: Callable[[IdleDeadline], Any], options: Optional[dict] = None) -> int:
        delay = self.idle_callback_delay
        timeout_ms = (options or {}).get("timeout")
        did_timeout = timeout_ms is not None and timeout_ms / 1000 < delay
        if did_timeout:
            delay = timeout_ms / 1000
        deadline = IdleDeadline(did_timeout=did_timeout, budget_ms=50.0)
        return self._schedule_once(ResourceKind.IDLE_CALLBACK, delay, fn, (deadline,))

    def cancel_idle_callback(self, ident: Optional[int]) -> None:
        if ident is not None:
            self.ledger.cancel(ResourceKind.IDLE_CALLBACK, ident)

    # -- cooperative helpers --------------------------------------------------
    def _poll_stop(self) -> None:
        if self.check_stop is not None:
            self.check_stop()

    def nb_while(self, fn: Callable[[], Any]) -> None:
        """Call ``fn`` once per loop iteration until it returns a truthy value.

        Every step runs as an immediate, so the loop yields between steps and
        ends quietly once a stop is requested.
        """

        def step() -> None:
            self._poll_stop()
            if not fn():
                self.set_immediate(step)

        self.set_immediate(step)

    def nb_run(self, fn: Callable[..., Any], *args: Any) -> int:
        """Run ``fn`` on the next loop iteration unless a stop is pending."""
        self._poll_stop()
        return self.set_immediate(fn, *args)

    def nb_next(self, fn: Callable[..., Any], *args: Any) -> int:
        """Run ``fn`` on the next loop iteration, checking for a stop first."""

        def step() -> Any:
            self._poll_stop()
            return fn(*args)

        return self.set_immediate(step)

    def wait_milliseconds(self, ms: float) -> Deferred:
        """Awaitable that resolves after ``ms`` milliseconds.

        Backed by a tracked timeout, so a sweep makes it inert and awaiting it
        raises ``StopExecution``.
        """
        self._poll_stop()
        return self.deferred(lambda resolve, _reject: self.set_timeout(resolve, ms))

    def wait_seconds(self, s: float) -> Deferred:
        return self.wait_milliseconds(s * 1000)

    def wait_minutes(self, minutes: float) -> Deferred:
        return self.wait_milliseconds(minutes * 60_000)

    def clear_interval_if(self, ident: Optional[int]) -> bool:
        """Clear ``ident`` when it is set; always returns False for re-assignment."""
        if ident:
            self.clear_interval(ident)
        return False

    def clear_timeout_if(self, ident: Optional[int]) -> bool:
        if ident:
            self.clear_timeout(ident)
        return False

    # -- deferreds ------------------------------------------------------------
    def deferred(self, executor: Optional[Callable[..., Any]] = None) -> Deferred:
        return Deferred(executor, ledger=self.ledger)

    def defer(self, awaitable: Awaitable[Any]) -> Deferred:
        return Deferred.from_awaitable(awaitable, ledger=self.ledger)

    # -- subprocesses ---------------------------------------------------------
    async def spawn(self, program: str, *args: str, **kwargs: Any) -> asyncio.subprocess.Process:
        """Start a subprocess tracked until it exits or is swept."""
        process = await asyncio.create_subprocess_exec(program, *args, **kwargs)
        handle = self.ledger.track_process(process.pid)
        logger.debug("subprocess_spawned", pid=process.pid, program=program)

        async def watch() -> None:
            try:
                await process.wait()
            finally:
                self.ledger.release(ResourceKind.SUBPROCESS, handle.ident)

        # The watcher belongs to the engine, not to evaluated code
        watcher = contextvars.Context().run(asyncio.get_running_loop().create_task, watch())
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)
        return process

    # -- listeners ------------------------------------------------------------
    def add_event_listener(self, target: Any, event: str, handler: Callable[..., Any]) -> int:
        """Attach ``handler`` to ``target`` until removed or swept.

        ``target`` may expose ``add_event_listener``/``remove_event_listener`` or
        ``on``/``remove_listener`` (event-emitter style).
        """

        def listener(*args: Any) -> None:
            self._run(handler, args)

        if hasattr(target, "add_event_listener"):
            target.add_event_listener(event, listener)

            def detach() -> None:
                target.remove_event_listener(event, listener)

        elif hasattr(target, "on"):
            target.on(event, listener)

            def detach() -> None:
                remove = getattr(target, "remove_listener", None) or getattr(target, "off")
                remove(event, listener)

        else:
            raise TypeError(f"{type(target).__name__!r} object does not accept event listeners")
        return self.ledger.listen(detach).ident

    def remove_event_listener(self, ident: Optional[int]) -> None:
        if ident is not None:
            self.ledger.cancel(ResourceKind.LISTENER, ident)

    # -- cleanup --------------------------------------------------------------
    def add_for_cleanup(self, obj: Any, fn: Optional[Callable[[], Any]] = None) -> Any:
        """Run ``fn`` (default ``obj.close``) at the next sweep; returns ``obj``."""
        self.ledger.add_cleanup(fn if fn is not None else obj.close)
        return obj

    def capabilities(self) -> dict[str, Any]:
        return {
            "set_timeout": self.set_timeout,
            "clear_timeout": self.clear_timeout,
            "set_interval": self.set_interval,
            "clear_interval": self.clear_interval,
            "set_immediate": self.set_immediate,
            "clear_immediate": self.clear_immediate,
            "request_animation_frame": self.request_animation_frame,
            "cancel_animation_frame": self.cancel_animation_frame,
            "request_idle_callback": self.request_idle_callback,
            "cancel_idle_callback": self.cancel_idle_callback,
            "nb_while": self.nb_while,
            "nb_run": self.nb_run,
            "nb_next": self.nb_next,
            "wait_milliseconds": self.wait_milliseconds,
            "wait_seconds": self.wait_seconds,
            "wait_minutes": self.wait_minutes,
            "clear_interval_if": self.clear_interval_if,
            "clear_timeout_if": self.clear_timeout_if,
            "Deferred": self.deferred,
            "defer": self.defer,
            "spawn": self.spawn,
            "add_event_listener": self.add_event_listener,
            "remove_event_listener": self.remove_event_listener,
            "add_for_cleanup": self.add_for_cleanup,
        }
