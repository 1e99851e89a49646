"""Promise-style wrapper that can be made inert by a sweep."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Generator, Optional

from .errors import StopExecution
from .ledger import ResourceKind, ResourceLedger


class _Inert:
    """Returned by continuations registered on an inert deferred."""

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "INERT"


INERT = _Inert()


class DeferredRejection(Exception):
    """Wraps a non-exception rejection reason."""

    def __init__(self, reason: Any) -> None:
        super().__init__(reason)
        self.reason = reason


class Deferred:
    """Wraps an ``asyncio.Future`` and registers it with the ledger until it settles.

    Once ``make_inert()`` has run (which ``sweep()`` does for every outstanding
    deferred) ``then``/``catch``/``finally_`` return ``INERT`` and continuations
    registered earlier never fire, even if the underlying work completes.
    """

    def __init__(
        self,
        executor: Optional[Callable[[Callable[..., None], Callable[..., None]], Any]] = None,
        *,
        ledger: ResourceLedger,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._ledger = ledger
        self._future: asyncio.Future = self._loop.create_future()
        self._task: Optional[asyncio.Future] = None
        self.inert = False
        self.handle = ledger.register(ResourceKind.PROMISE, self.make_inert)
        self._future.add_done_callback(self._settled)
        if executor is not None:
            try:
                executor(self.resolve, self.reject)
            except StopExecution:
                self.make_inert()
            except Exception as e:
                self.reject(e)

    @classmethod
    def from_awaitable(
        cls, awaitable: Awaitable[Any], *, ledger: ResourceLedger
    ) -> "Deferred":
        deferred = cls(ledger=ledger)
        deferred._task = asyncio.ensure_future(awaitable)
        deferred._task.add_done_callback(deferred._adopt)
        return deferred

    @property
    def settled(self) -> bool:
        return self._future.done()

    def resolve(self, value: Any = None) -> None:
        if self.inert or self._future.done():
            return
        if inspect.isawaitable(value):
            task = asyncio.ensure_future(value)
            self._task = task
            task.add_done_callback(self._adopt)
            return
        self._future.set_result(value)

    def reject(self, reason: Any = None) -> None:
        if self.inert or self._future.done():
            return
        if not isinstance(reason, BaseException):
            reason = DeferredRejection(reason)
        self._future.set_exception(reason)

    def _forward(self, exc: BaseException) -> None:
        """Reject with an error handed down a chain.

        The error is marked retrieved so a link nobody consumes is not logged
        as "never retrieved"; awaiting the link still raises it.
        """
        self.reject(exc)
        if self._future.done() and not self._future.cancelled():
            self._future.exception()

    def make_inert(self) -> None:
        self.inert = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if not self._future.done():
            self._future.cancel()

    def then(
        self,
        on_fulfilled: Optional[Callable[[Any], Any]] = None,
        on_rejected: Optional[Callable[[BaseException], Any]] = None,
    ) -> "Deferred | _Inert":
        if self.inert:
            return INERT
        child = Deferred(ledger=self._ledger, loop=self._loop)

        def fire(future: asyncio.Future) -> None:
            if self.inert or child.inert or future.cancelled():
                return
            exc = future.exception()
            try:
                if exc is None:
                    result = on_fulfilled(future.result()) if on_fulfilled else future.result()
                elif on_rejected is not None:
                    result = on_rejected(exc)
                else:
                    child._forward(exc)
                    return
            except StopExecution:
                child.make_inert()
                return
            except Exception as e:
                child.reject(e)
                return
            child.resolve(result)

        self._future.add_done_callback(fire)
        return child

    def catch(self, on_rejected: Callable[[BaseException], Any]) -> "Deferred | _Inert":
        return self.then(None, on_rejected)

    def finally_(self, on_settled: Callable[[], Any]) -> "Deferred | _Inert":
        def passthrough(value: Any) -> Any:
            on_settled()
            return value

        def rethrow(exc: BaseException) -> Any:
            on_settled()
            raise exc

        return self.then(passthrough, rethrow)

    def __await__(self) -> Generator[Any, None, Any]:
        if self.inert:
            raise StopExecution()
        try:
            return (yield from self._future.__await__())
        except asyncio.CancelledError:
            if self.inert:
                raise StopExecution() from None
            raise

    def _adopt(self, task: asyncio.Future) -> None:
        if self.inert or self._future.done():
            return
        if task.cancelled():
            self._future.cancel()
        elif task.exception() is not None:
            self._future.set_exception(task.exception())
        else:
            self._future.set_result(task.result())

    def _settled(self, _future: asyncio.Future) -> None:
        self._ledger.release(ResourceKind.PROMISE, self.handle.ident)

    def __repr__(self) -> str:
        if self.inert:
            state = "inert"
        elif not self._future.done():
            state = "pending"
        elif self._future.cancelled():
            state = "cancelled"
        elif self._future.exception() is not None:
            state = "rejected"
        else:
            state = "fulfilled"
        return f"<Deferred {self.handle.ident} {state}>"
