"""Event sink that turns engine events into wire messages."""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import replace
from typing import Any, Optional, Sequence

import structlog

from ..engine.errors import Diagnostic
from ..engine.events import Outcome
from ..engine.workspace import WorkspaceEntry
from .messages import (
    ErrorMessage,
    Message,
    OutputMessage,
    ResultMessage,
    StateMessage,
    StatsMessage,
    StreamType,
    WorkspaceEntryModel,
    WorkspaceMessage,
)
from .transport import MessageTransport, ProtocolError

logger = structlog.get_logger()

_MAX_REPR = 10_000


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return None
    return value


def _safe_repr(value: Any) -> str:
    try:
        text = repr(value)
    except Exception as e:
        text = f"<unrepresentable {type(value).__name__}: {e}>"
    return text if len(text) <= _MAX_REPR else text[:_MAX_REPR] + "..."


class MessageEventSink:
    """Queues outbound messages and sends them from a single pump task.

    Engine events arrive synchronously (often from inside evaluated code);
    the pump preserves their order on the wire.
    """

    def __init__(self, transport: MessageTransport) -> None:
        self._transport = transport
        self._queue: asyncio.Queue[Optional[Message]] = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task[None]] = None
        self.sent = 0
        self.dropped = 0

    async def start(self) -> None:
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())

    async def stop(self) -> None:
        """Flush queued messages and stop the pump."""
        if self._pump_task is None:
            return
        self._queue.put_nowait(None)
        await self._pump_task
        self._pump_task = None

    async def _pump(self) -> None:
        while True:
            message = await self._queue.get()
            if message is None:
                break
            try:
                await self._transport.send_message(message)
                self.sent += 1
            except ProtocolError as e:
                self.dropped += 1
                logger.warning("event_dropped", type=message.type, error=str(e))

    def _emit(self, cls: type, **fields: Any) -> None:
        self._queue.put_nowait(cls(id=str(uuid.uuid4()), timestamp=time.time(), **fields))

    def evaluation_started(self, script: str) -> None:
        self._emit(StateMessage, state="evaluating", script=script)

    def evaluation_finished(self, outcome: Outcome) -> None:
        self._emit(StateMessage, state=outcome.value)

    def result_ready(self, value: Any, is_large_structure: bool) -> None:
        self._emit(
            ResultMessage,
            value=None if is_large_structure else _jsonable(value),
            repr=_safe_repr(value),
            is_large_structure=is_large_structure,
        )

    def error_reported(self, diagnostic: Diagnostic) -> None:
        self._emit(
            ErrorMessage,
            message=replace(diagnostic, traceback=None).render(),
            exception_type=diagnostic.exception_type,
            line=diagnostic.line,
            column=diagnostic.column,
            script=diagnostic.script,
            traceback=diagnostic.traceback,
        )

    def stats_changed(self, stats: dict[str, int]) -> None:
        self._emit(StatsMessage, stats=stats)

    def workspace_changed(self, entries: Sequence[WorkspaceEntry]) -> None:
        self._emit(
            WorkspaceMessage,
            entries=[WorkspaceEntryModel(**entry.describe()) for entry in entries],
        )

    def output(self, data: str, stream: str) -> None:
        self._emit(OutputMessage, data=data, stream=StreamType(stream))
