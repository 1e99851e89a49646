"""Command surface of the console: what the UI asks the engine to do."""

from __future__ import annotations

import asyncio
import io
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import structlog

from ..engine.controller import ExecutionController, Submission
from ..engine.errors import BusyError, ConsoleError, Diagnostic
from ..engine.events import EventSink, NullEventSink
from .config import ConsoleConfig

logger = structlog.get_logger()

LineRange = Union[int, tuple[int, int]]


class CommandStatus(str, Enum):
    ACCEPTED = "accepted"
    BUSY = "busy"
    INVALID = "invalid"


class ScriptError(ConsoleError):
    """A script could not be read or the requested lines do not exist."""

    pass


def select_lines(source: str, line_range: Optional[LineRange], path: str = "<script>") -> str:
    """Return the selected lines of ``source``, padded so line numbers stay put.

    ``line_range`` is a 1-based line number or an inclusive ``(start, end)`` pair.
    """
    if line_range is None:
        return source
    lines = source.split("\n")
    if isinstance(line_range, int):
        start = end = line_range
    else:
        start, end = line_range
    if start < 1 or end < start or end > len(lines):
        raise ScriptError(f"line range {start}-{end} is outside {path} ({len(lines)} lines)")
    return "\n" * (start - 1) + "\n".join(lines[start - 1 : end])


class SinkStream(io.TextIOBase):
    """Text stream forwarding writes to an event sink (for ``print`` capture)."""

    def __init__(self, sink: EventSink, stream: str = "stdout") -> None:
        self._sink = sink
        self._stream = stream

    def writable(self) -> bool:
        return True

    def write(self, data: str) -> int:
        if data:
            self._sink.output(data, self._stream)
        return len(data)


class ConsoleSession:
    """Accepts console commands and drives the execution controller.

    Commands return immediately with a ``CommandStatus``; results, errors,
    stats and workspace updates arrive through the event sink.
    """

    def __init__(
        self,
        config: Optional[ConsoleConfig] = None,
        *,
        sink: Optional[EventSink] = None,
        catalogue: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.config = config or ConsoleConfig.from_env()
        self.sink: EventSink = sink or NullEventSink()
        self.controller = ExecutionController(self.config, sink=self.sink, catalogue=catalogue)
        self._current: Optional[asyncio.Task] = None
        self._last_script: Optional[tuple[str, Optional[LineRange], bool]] = None

    @property
    def evaluating(self) -> bool:
        return self.controller.evaluating

    def eval_command(
        self, text: str, show_output: bool = True, session_name: Optional[str] = None
    ) -> CommandStatus:
        """Evaluate typed text; rejected with ``BUSY`` while another evaluation runs."""
        return self._start(Submission(text, show_output, session_name or self.config.command_window_name))

    def run_script(
        self, path: Union[str, Path], line_range: Optional[LineRange] = None, silent: bool = False
    ) -> CommandStatus:
        """Evaluate a script file, or an inclusive range of its lines."""
        if self.controller.evaluating:
            return CommandStatus.BUSY
        script = str(path)
        try:
            try:
                source = Path(script).read_text(encoding="utf-8")
            except OSError as e:
                raise ScriptError(f"cannot read script {script}: {e.strerror or e}") from e
            source = select_lines(source, line_range, script)
        except ScriptError as e:
            logger.info("script_rejected", script=script, error=str(e))
            self.sink.error_reported(
                Diagnostic(message=f"ScriptError: {e}", exception_type="ScriptError", script=script)
            )
            return CommandStatus.INVALID
        self._last_script = (script, line_range, silent)
        return self._start(Submission(source, show_output=not silent, script_name=script))

    def run_last(self) -> CommandStatus:
        """Re-run the last script with the same arguments."""
        if self._last_script is None:
            return CommandStatus.INVALID
        script, line_range, silent = self._last_script
        return self.run_script(script, line_range, silent)

    def stop_loop(self, flag: bool = True) -> None:
        """Stop the running evaluation (``True``) or clear a pending stop (``False``)."""
        if flag:
            self.controller.request_stop("stop_loop")
        else:
            self.controller.resume()

    def clear_workspace(self) -> None:
        self.controller.clear_workspace()

    async def wait_idle(self) -> None:
        """Wait until the evaluation started last has finished."""
        task = self._current
        if task is not None and not task.done():
            await asyncio.wait([task])

    async def close(self) -> None:
        await self.controller.close()
        await self.wait_idle()

    def _start(self, submission: Submission) -> CommandStatus:
        try:
            task = self.controller.submit(submission)
        except BusyError:
            return CommandStatus.BUSY
        task.add_done_callback(self._consume)
        self._current = task
        return CommandStatus.ACCEPTED

    @staticmethod
    def _consume(task: asyncio.Task) -> None:
        # Failures were already reported through the sink
        if not task.cancelled():
            task.exception()
