"""Execution controller for console submissions.

Runs one submission at a time against the persistent execution context:

- Busy guard: ``submit`` raises ``BusyError`` synchronously while an
  evaluation is in flight; nothing is queued.
- Pipeline: set the workspace aside, rewrite and compile under a virtual
  filename, restore the workspace, execute the code object and await the
  pending coroutine as the tracked top-level task.
- Tasks created by evaluated code are registered with the ledger through a
  task factory that recognizes the evaluation's context.
- Failures sweep the ledger and are reported through the error translator;
  stops sweep and finish quietly.
- Virtual filenames are registered in ``linecache`` with a bounded LRU so
  tracebacks show source lines.
"""

from __future__ import annotations

import asyncio
import contextvars
import hashlib
import linecache
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import structlog

from ..session.config import ConsoleConfig
from .cancellation import CancellationCoordinator
from .constants import COMMAND_WINDOW, PENDING_RESULT
from .context import ExecutionContext
from .errors import BusyError, Diagnostic, EvaluationError, RewriteError, StopExecution
from .events import EventSink, NullEventSink, Outcome
from .ledger import ResourceLedger
from .rewriter import RewriteResult, SourceCodec, SourceRewriter
from .scheduling import Scheduler
from .translator import ErrorTranslator
from .workspace import Workspace

logger = structlog.get_logger()

# Set inside the top-level task of an evaluation; tasks created while it is set
# belong to evaluated code.
_EVALUATION: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "labconsole_evaluation", default=None
)


@dataclass(frozen=True)
class Submission:
    source: str
    show_output: bool = True
    script_name: str = COMMAND_WINDOW


@dataclass
class EvaluationState:
    evaluating: bool = False
    stop_requested: bool = False
    suppress_echo: bool = False
    suppress_result: bool = False
    active_script: Optional[str] = None
    last_outcome: Optional[Outcome] = None


class ExecutionController:
    """Evaluates submissions one at a time with cancellation and error translation."""

    def __init__(
        self,
        config: Optional[ConsoleConfig] = None,
        *,
        sink: Optional[EventSink] = None,
        catalogue: Optional[Mapping[str, Any]] = None,
        codec: Optional[SourceCodec] = None,
    ) -> None:
        """
        Initialize the controller.

        Args:
            config: Engine configuration; defaults to ``ConsoleConfig()``.
            sink: Receiver of outbound events; events are dropped when omitted.
            catalogue: Host-supplied domain functions injected into the
                capability table alongside the engine's own.
            codec: Parser/printer used by the rewriter.
        """
        self.config = config or ConsoleConfig()
        self.sink: EventSink = sink or NullEventSink()
        self.ledger = ResourceLedger(
            grace_period=self.config.subprocess_grace_period,
            on_change=self._stats_changed,
        )
        self.coordinator = CancellationCoordinator(self.ledger)
        self.scheduler = Scheduler(
            self.ledger,
            frame_interval=self.config.frame_interval,
            idle_callback_delay=self.config.idle_callback_delay,
            on_error=self._callback_failed,
            check_stop=self.coordinator.check_stop,
        )

        capabilities: dict[str, Any] = {}
        capabilities.update(self.scheduler.capabilities())
        capabilities.update(self.coordinator.capabilities())
        capabilities["clear"] = self.clear
        capabilities["lab"] = self
        capabilities.update(catalogue or {})

        self.context = ExecutionContext(capabilities)
        self.context.runtime.on_change = self._publish_stats
        self.workspace = Workspace(self.context)
        self.rewriter = SourceRewriter(
            self.config.forbidden(self.context.capability_names),
            codec=codec,
            debug_pre_transformed_code=self.config.debug_pre_transformed_code,
            debug_transformed_code=self.config.debug_transformed_code,
        )
        self.translator = ErrorTranslator(
            debug=self.config.debug, max_maps=max(self.config.linecache_max_size, 1)
        )
        self.state = EvaluationState()
        self.execution_id: Optional[str] = None

        self._seq = 0
        self._linecache_keys: OrderedDict[str, None] = OrderedDict()
        self._factory_loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_factory: Any = None
        self.stats = {
            "executions": 0,
            "completed": 0,
            "errors": 0,
            "stops": 0,
            "busy_rejections": 0,
        }

    @property
    def evaluating(self) -> bool:
        return self.state.evaluating

    # -- submission -----------------------------------------------------------
    def submit(self, submission: Submission) -> asyncio.Task:
        """Start evaluating ``submission``; raises ``BusyError`` if one is running."""
        if self.state.evaluating:
            self.stats["busy_rejections"] += 1
            logger.info("submission_rejected_busy", execution_id=self.execution_id)
            raise BusyError("an evaluation is already running")

        loop = asyncio.get_running_loop()
        self._install_task_factory(loop)

        self._seq += 1
        execution_id = f"eval-{self._seq}"
        self.execution_id = execution_id
        self.state.evaluating = True
        self.state.stop_requested = False
        self.state.suppress_echo = False
        self.state.suppress_result = False
        self.state.active_script = submission.script_name
        self.coordinator.reset()
        self.ledger.owner = execution_id
        self.stats["executions"] += 1

        self.sink.evaluation_started(submission.script_name)
        return loop.create_task(self._run(submission, execution_id))

    async def evaluate(self, submission: Submission) -> Any:
        return await self.submit(submission)

    async def _run(self, submission: Submission, execution_id: str) -> Any:
        outcome = Outcome.FAILED
        rewrite: Optional[RewriteResult] = None
        try:
            self.workspace.save()
            try:
                rewrite = self.rewriter.rewrite(
                    submission.source,
                    filename=self._make_filename(submission.script_name, submission.source),
                )
            finally:
                self.workspace.restore()
            self.translator.register(rewrite, submission.script_name)
            self.context.record_input(submission.source)
            value = await self._execute(rewrite, execution_id)
        except RewriteError as e:
            # Nothing ran; leave previously scheduled work alone
            self._report_failure(e, None, submission)
            raise
        except StopExecution:
            outcome = Outcome.STOPPED
            self._finish_stopped(execution_id)
            return None
        except asyncio.CancelledError:
            outcome = Outcome.STOPPED
            if not self.coordinator.stop_requested:
                raise
            self._finish_stopped(execution_id)
            return None
        except Exception as e:
            diagnostic = self._report_failure(e, rewrite, submission)
            raise EvaluationError(diagnostic) from e
        else:
            outcome = Outcome.COMPLETED
            self._finish_completed(value, rewrite, submission)
            return value
        finally:
            self.state.evaluating = False
            self.state.last_outcome = outcome
            self.ledger.owner = None
            logger.debug("evaluation_finished", execution_id=execution_id, outcome=outcome.value)
            self.sink.evaluation_finished(outcome)

    async def _execute(self, rewrite: RewriteResult, execution_id: str) -> Any:
        self._register_source(rewrite.filename, rewrite.code)
        code_obj = rewrite.code_object
        if code_obj is None:
            code_obj = compile(rewrite.code, rewrite.filename, "exec")
        local_vars: dict[str, Any] = {}
        exec(code_obj, self.context.namespace, local_vars)
        coro = local_vars[PENDING_RESULT]

        task_context = contextvars.copy_context()
        task_context.run(_EVALUATION.set, execution_id)
        task = asyncio.get_running_loop().create_task(coro, context=task_context)
        self.coordinator.top.set(task)
        try:
            return await task
        except asyncio.CancelledError as e:
            if not task.done():
                # We were cancelled from outside; take the evaluation down too
                task.cancel()
            self.coordinator.annotate(e, execution_id)
            raise
        finally:
            self.coordinator.top.clear()

    # -- outcomes -------------------------------------------------------------
    def _finish_completed(self, value: Any, rewrite: RewriteResult, submission: Submission) -> None:
        self.stats["completed"] += 1
        if not self.state.suppress_result:
            self.context.record_result(value)
        echo = submission.show_output and not (self.state.suppress_echo or rewrite.suppress_echo)
        if echo and value is not None:
            self.sink.result_ready(value, self.is_large_structure(value))
        self._publish_workspace()

    def _finish_stopped(self, execution_id: str) -> None:
        self.stats["stops"] += 1
        self.coordinator.sweep()
        logger.info("evaluation_stopped", execution_id=execution_id)
        self._publish_workspace()

    def _report_failure(
        self, exc: BaseException, rewrite: Optional[RewriteResult], submission: Submission
    ) -> Diagnostic:
        self.stats["errors"] += 1
        if not isinstance(exc, RewriteError):
            self.coordinator.sweep()
            self.context.record_exception(exc)
        diagnostic = self.translator.translate(exc, rewrite, submission.script_name)
        logger.info(
            "evaluation_failed",
            execution_id=self.execution_id,
            exception_type=diagnostic.exception_type,
            line=diagnostic.line,
        )
        self.sink.error_reported(diagnostic)
        self._publish_workspace()
        return diagnostic

    def _callback_failed(self, exc: BaseException) -> None:
        """Report an exception raised by a scheduled callback."""
        self.context.record_exception(exc)
        self.sink.error_reported(self.translator.translate(exc))

    def _publish_workspace(self) -> None:
        self.sink.workspace_changed(self.workspace.snapshot())

    def _stats_changed(self, stats: dict[str, int]) -> None:
        stats["required_modules"] = len(self.context.runtime.required_modules)
        self.sink.stats_changed(stats)

    def _publish_stats(self) -> None:
        self._stats_changed(self.ledger.stats())

    def is_large_structure(self, value: Any) -> bool:
        try:
            return len(value) > self.config.large_structure_threshold
        except TypeError:
            return False

    # -- host operations ------------------------------------------------------
    def request_stop(self, reason: Optional[str] = None) -> bool:
        """Stop the running evaluation and cancel everything it scheduled."""
        self.state.stop_requested = True
        return self.coordinator.request_stop(reason)

    def resume(self) -> None:
        """Clear a pending stop request so ``check_stop()`` passes again."""
        self.state.stop_requested = False
        self.coordinator.reset()

    def clear(self) -> None:
        """Clear the workspace from evaluated code.

        Sweeps outstanding resources, unloads user modules evaluated code
        imported and removes names defined before the
        running submission; functions it defines itself survive. The
        submission's result is neither recorded nor shown.
        """
        self.coordinator.sweep()
        self.workspace.clear()
        self.context.runtime.unrequire_all()
        self.state.suppress_result = True
        self.state.suppress_echo = True

    def clear_workspace(self) -> int:
        """Sweep, unload imported user modules and remove every user name."""
        self.coordinator.sweep()
        removed = self.workspace.clear_all()
        self.context.runtime.unrequire_all()
        self._publish_workspace()
        return removed

    # -- task tracking ----------------------------------------------------------
    def _install_task_factory(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._factory_loop is loop:
            return
        previous = loop.get_task_factory()
        ledger = self.ledger

        def factory(loop: asyncio.AbstractEventLoop, coro: Any, **kwargs: Any) -> asyncio.Future:
            if previous is not None:
                task = previous(loop, coro, **kwargs)
            else:
                task = asyncio.Task(coro, loop=loop, **kwargs)
            if _EVALUATION.get() is not None:
                ledger.track_task(task)
            return task

        loop.set_task_factory(factory)
        self._factory_loop = loop
        self._previous_factory = previous

    # -- virtual sources --------------------------------------------------------
    def _make_filename(self, script: str, source: str) -> str:
        """Create a unique, human-readable virtual filename for evaluated code."""
        name = re.sub(r"[^A-Za-z0-9_.-]", "_", script.rsplit("/", 1)[-1])[:40]
        short_hash = hashlib.md5(source.encode()).hexdigest()[:8]
        return f"<labconsole:{name}:{short_hash}:{self._seq}>"

    def _register_source(self, filename: str, code: str) -> None:
        """Register code in linecache and maintain the bounded LRU."""
        linecache.cache[filename] = (len(code), None, code.splitlines(keepends=True), filename)
        self._linecache_keys[filename] = None
        self._linecache_keys.move_to_end(filename)
        while len(self._linecache_keys) > self.config.linecache_max_size:
            old, _ = self._linecache_keys.popitem(last=False)
            linecache.cache.pop(old, None)
            self.translator.forget(old)

    async def close(self) -> None:
        """Sweep outstanding resources and drop linecache registrations."""
        if self.state.evaluating:
            self.request_stop("controller closing")
        self.coordinator.sweep()
        for filename in list(self._linecache_keys):
            linecache.cache.pop(filename, None)
        self._linecache_keys.clear()
        self.translator.clear()
        if self._factory_loop is not None and not self._factory_loop.is_closed():
            self._factory_loop.set_task_factory(self._previous_factory)
        self._factory_loop = None
        logger.debug("controller_closed", stats=self.stats)

    async def __aenter__(self) -> "ExecutionController":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
