"""Console worker: runs the command loop over framed stdin/stdout."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
import traceback
import uuid
from typing import Optional

import psutil
import structlog

# stdout carries protocol frames; logs go to stderr
structlog.configure(
    processors=[
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.DEBUG if os.getenv("LABCONSOLE_DEBUG") else logging.INFO
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    cache_logger_on_first_use=True,
)

from ..protocol.messages import (
    ClearWorkspaceMessage,
    ErrorMessage,
    EvalCommandMessage,
    Message,
    ReadyMessage,
    RunScriptMessage,
    ShutdownMessage,
    StatusMessage,
    StopLoopMessage,
)
from ..protocol.sink import MessageEventSink
from ..protocol.transport import MessageTransport, ProtocolError
from .config import ConsoleConfig
from .console import CommandStatus, ConsoleSession, LineRange, SinkStream

logger = structlog.get_logger()


def _line_range(lines: Optional[list[int]]) -> Optional[LineRange]:
    if not lines:
        return None
    if len(lines) == 1:
        return lines[0]
    return (lines[0], lines[1])


class ConsoleWorker:
    """Dispatches inbound commands to a ``ConsoleSession``."""

    def __init__(
        self,
        transport: MessageTransport,
        session_id: str,
        config: Optional[ConsoleConfig] = None,
    ) -> None:
        self._transport = transport
        self._session_id = session_id
        self._sink = MessageEventSink(transport)
        self._session = ConsoleSession(config, sink=self._sink)
        self._running = False

    @property
    def session(self) -> ConsoleSession:
        return self._session

    @property
    def sink(self) -> MessageEventSink:
        return self._sink

    async def start(self) -> None:
        """Start the event pump and announce readiness."""
        self._running = True
        await self._sink.start()
        ready = ReadyMessage(
            id=str(uuid.uuid4()),
            timestamp=time.time(),
            session_id=self._session_id,
            capabilities=sorted(self._session.controller.context.capability_names),
        )
        await self._transport.send_message(ready)

    async def handle(self, message: Message) -> None:
        """Apply one inbound command."""
        status: Optional[CommandStatus] = None
        if isinstance(message, EvalCommandMessage):
            status = self._session.eval_command(message.code, message.show_output, message.session_name)
        elif isinstance(message, RunScriptMessage):
            status = self._session.run_script(message.path, _line_range(message.lines), message.silent)
        elif isinstance(message, StopLoopMessage):
            self._session.stop_loop(message.flag)
        elif isinstance(message, ClearWorkspaceMessage):
            self._session.clear_workspace()
        elif isinstance(message, ShutdownMessage):
            logger.info("shutdown_requested", reason=message.reason)
            self._running = False
        else:
            logger.warning("unexpected_message", type=message.type, id=message.id)

        if status is not None:
            await self._transport.send_message(
                StatusMessage(
                    id=str(uuid.uuid4()),
                    timestamp=time.time(),
                    command_id=message.id,
                    status=status.value,
                )
            )

    async def run(self) -> None:
        """Main command loop."""
        await self.start()

        while self._running:
            try:
                message = await self._transport.receive_message()
            except ProtocolError as e:
                logger.info("transport_closed", error=str(e))
                break
            logger.debug("worker_received", type=message.type, id=message.id)

            try:
                await self.handle(message)
            except ProtocolError:
                raise
            except Exception as e:
                logger.error("command_failed", type=message.type, error=str(e))
                await self._transport.send_message(
                    ErrorMessage(
                        id=str(uuid.uuid4()),
                        timestamp=time.time(),
                        message=f"{type(e).__name__}: {e}",
                        exception_type=type(e).__name__,
                        traceback=traceback.format_exc(),
                    )
                )

    async def stop(self) -> None:
        self._running = False
        await self._session.close()
        await self._sink.stop()
        await self._transport.close()


async def main() -> None:
    """Main entry point for the console worker process."""
    session_id = sys.argv[1] if len(sys.argv) > 1 else str(uuid.uuid4())
    loop = asyncio.get_running_loop()

    logger.info(
        "worker_start",
        session_id=session_id,
        python_version=sys.version,
        pid=psutil.Process().pid,
    )

    # Reader from stdin (binary)
    reader = asyncio.StreamReader()
    reader_protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: reader_protocol, sys.stdin.buffer)

    # Writer to stdout (binary); StreamReaderProtocol gives drain support
    writer_transport, writer_protocol = await loop.connect_write_pipe(
        lambda: asyncio.StreamReaderProtocol(asyncio.StreamReader()),
        sys.stdout.buffer,
    )
    writer = asyncio.StreamWriter(writer_transport, writer_protocol, reader, loop)

    transport = MessageTransport(reader=reader, writer=writer, use_msgpack=True)
    worker = ConsoleWorker(transport, session_id, ConsoleConfig.from_env())

    # User print() output becomes OutputMessages instead of corrupting frames
    sys.stdout = SinkStream(worker.sink, "stdout")

    try:
        await worker.run()
    finally:
        await worker.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
