"""Unit tests for the execution controller."""

import asyncio

import pytest

from labconsole.engine.controller import ExecutionController, Submission
from labconsole.engine.errors import BusyError, ConsoleSyntaxError, EvaluationError, PolicyViolationError
from labconsole.engine.events import Outcome
from labconsole.engine.ledger import ResourceKind
from labconsole.session.config import ConsoleConfig
from tests.fixtures.events import RecordingSink


@pytest.mark.unit
class TestEvaluation:
    """Submissions evaluate against one persistent context."""

    @pytest.mark.asyncio
    async def test_implicit_result(self, evaluate, sink):
        assert await evaluate("1 + 1") == 2
        assert sink.results == [(2, False)]
        assert sink.finished == [Outcome.COMPLETED]

    @pytest.mark.asyncio
    async def test_assignment_has_no_result(self, evaluate, sink, controller):
        assert await evaluate("y = 2") is None
        assert sink.results == []
        assert controller.context["y"] == 2

    @pytest.mark.asyncio
    async def test_names_persist(self, evaluate):
        await evaluate("x = 41")
        assert await evaluate("x + 1") == 42

    @pytest.mark.asyncio
    async def test_functions_persist(self, evaluate):
        await evaluate("def square(v):\n    return v * v")
        assert await evaluate("square(4)") == 16

    @pytest.mark.asyncio
    async def test_function_sees_later_globals(self, evaluate):
        await evaluate("def scaled(v):\n    return v * factor")
        await evaluate("factor = 3")
        assert await evaluate("scaled(2)") == 6

    @pytest.mark.asyncio
    async def test_top_level_await(self, evaluate, snippets):
        assert await evaluate(snippets["async"]) == 42

    @pytest.mark.asyncio
    async def test_result_history(self, evaluate, controller):
        await evaluate("2 + 3")
        assert controller.context["_"] == 5
        assert await evaluate("_ * 2") == 10

    @pytest.mark.asyncio
    async def test_semicolon_suppresses_echo(self, evaluate, sink):
        assert await evaluate("5;") == 5
        assert sink.results == []

    @pytest.mark.asyncio
    async def test_show_output_false(self, evaluate, sink):
        assert await evaluate("5", show_output=False) == 5
        assert sink.results == []

    @pytest.mark.asyncio
    async def test_large_structure_flagged(self, sink):
        controller = ExecutionController(ConsoleConfig(large_structure_threshold=3), sink=sink)
        await controller.evaluate(Submission("list(range(10))"))
        assert sink.results[0][1] is True
        await controller.close()

    @pytest.mark.asyncio
    async def test_except_capture_persists(self, evaluate):
        await evaluate("try:\n    1 / 0\nexcept ZeroDivisionError as err:\n    pass")
        assert await evaluate("type(err).__name__") == "ZeroDivisionError"

    @pytest.mark.asyncio
    async def test_workspace_order(self, evaluate, controller, sink, snippets):
        await evaluate(snippets["unpack"])
        assert controller.workspace.names() == ["a", "b"]
        assert sink.workspace_names == ["a", "b"]

    @pytest.mark.asyncio
    async def test_clear_workspace(self, evaluate, controller, sink, snippets):
        await evaluate(snippets["unpack"])
        assert controller.clear_workspace() == 2
        assert controller.workspace.names() == []
        assert sink.workspace_names == []

    @pytest.mark.asyncio
    async def test_catalogue_injected_and_protected(self, sink):
        controller = ExecutionController(ConsoleConfig(), sink=sink, catalogue={"tau": 6.28})
        assert await controller.evaluate(Submission("tau / 2")) == 3.14
        with pytest.raises(PolicyViolationError):
            await controller.evaluate(Submission("tau = 1"))
        await controller.close()


@pytest.mark.unit
class TestFailures:
    """Failures are translated and reported against the submission."""

    @pytest.mark.asyncio
    async def test_forbidden_name_rejected(self, evaluate, controller, sink, snippets):
        with pytest.raises(PolicyViolationError):
            await evaluate(snippets["forbidden"])
        assert "config" not in controller.context
        assert sink.errors[0].exception_type == "PolicyViolationError"
        assert sink.finished == [Outcome.FAILED]

    @pytest.mark.asyncio
    async def test_syntax_error_leaves_workspace(self, evaluate, controller, sink):
        await evaluate("x = 1")
        with pytest.raises(ConsoleSyntaxError):
            await evaluate("x = (")
        assert controller.workspace.names() == ["x"]
        assert sink.errors[0].exception_type == "SyntaxError"

    @pytest.mark.asyncio
    async def test_runtime_error_line(self, evaluate, sink, snippets):
        with pytest.raises(EvaluationError) as exc_info:
            await evaluate(snippets["error"])
        diagnostic = exc_info.value.diagnostic
        assert diagnostic.exception_type == "NameError"
        assert diagnostic.line == 2
        assert sink.errors == [diagnostic]

    @pytest.mark.asyncio
    async def test_statements_before_error_persist(self, evaluate, controller, snippets):
        with pytest.raises(EvaluationError):
            await evaluate(snippets["error"])
        assert controller.context["x"] == 1
        assert isinstance(controller.context["_exception"], NameError)

    @pytest.mark.asyncio
    async def test_compile_error_is_syntax_error(self, evaluate, controller, sink):
        with pytest.raises(ConsoleSyntaxError) as exc_info:
            await evaluate("x = 1\nbreak")
        assert exc_info.value.line == 2
        assert sink.errors[0].exception_type == "SyntaxError"
        assert sink.errors[0].line == 2
        assert "x" not in controller.context
        assert controller.context["In"] == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "source",
        [
            "break",
            "def f():\n    await g()",
            "class A:\n    return 1",
            "nonlocal q",
        ],
    )
    async def test_compile_error_keeps_background_work(self, evaluate, controller, source):
        await evaluate("iv = set_interval(lambda: None, 5)")
        with pytest.raises(ConsoleSyntaxError):
            await evaluate(source)
        assert controller.ledger.pending(ResourceKind.INTERVAL) == 1
        assert controller.state.last_outcome is Outcome.FAILED

    @pytest.mark.asyncio
    async def test_call_before_declaration(self, evaluate):
        """A def later in the same submission is local for the whole submission."""
        await evaluate("def f():\n    return 'old'")
        with pytest.raises(EvaluationError) as exc_info:
            await evaluate("f()\ndef f():\n    return 'new'")
        assert exc_info.value.diagnostic.exception_type == "UnboundLocalError"
        assert exc_info.value.diagnostic.line == 1

    @pytest.mark.asyncio
    async def test_error_in_function_from_earlier_submission(self, evaluate):
        await evaluate("def boom():\n    return 1 / 0", script="lib.py")
        with pytest.raises(EvaluationError) as exc_info:
            await evaluate("boom()")
        assert exc_info.value.diagnostic.line == 2
        assert exc_info.value.diagnostic.script == "lib.py"

    @pytest.mark.asyncio
    async def test_failure_sweeps_resources(self, evaluate, controller):
        with pytest.raises(EvaluationError):
            await evaluate("set_interval(lambda: None, 5)\n1 / 0")
        assert controller.ledger.pending(ResourceKind.INTERVAL) == 0

    @pytest.mark.asyncio
    async def test_callback_error_reported(self, evaluate, sink):
        await evaluate("def fail():\n    raise ValueError('late')\nset_timeout(fail, 1)")
        await asyncio.sleep(0.03)
        assert sink.errors[-1].exception_type == "ValueError"
        assert sink.errors[-1].line == 2


@pytest.mark.unit
class TestBusyGuard:
    @pytest.mark.asyncio
    async def test_second_submission_rejected(self, controller):
        task = controller.submit(Submission("import asyncio\nawait asyncio.sleep(0.05)\n1"))
        with pytest.raises(BusyError):
            controller.submit(Submission("x = 1"))
        assert await task == 1
        assert "x" not in controller.context
        assert controller.stats["busy_rejections"] == 1

    @pytest.mark.asyncio
    async def test_accepts_after_completion(self, controller):
        await controller.submit(Submission("1"))
        assert await controller.submit(Submission("2")) == 2


@pytest.mark.unit
class TestStop:
    """Stopping ends the evaluation and sweeps what it scheduled."""

    @pytest.mark.asyncio
    async def test_stop_running_loop(self, controller, sink, snippets):
        task = controller.submit(Submission(snippets["stoppable"]))
        await asyncio.sleep(0.05)
        assert controller.request_stop("test") is True
        assert await task is None
        assert controller.state.last_outcome is Outcome.STOPPED
        assert sink.errors == []
        assert not controller.evaluating

    @pytest.mark.asyncio
    async def test_check_stop_raises_inside_evaluation(self, controller):
        task = controller.submit(
            Submission("lab.request_stop()\ncheck_stop()\nreached = True")
        )
        assert await task is None
        assert "reached" not in controller.context

    @pytest.mark.asyncio
    async def test_stop_sweeps_intervals(self, evaluate, controller):
        await evaluate("hits = []\nset_interval(lambda: hits.append(1), 5)")
        await asyncio.sleep(0.03)
        assert controller.ledger.pending(ResourceKind.INTERVAL) == 1

        controller.request_stop()
        count = len(controller.context["hits"])
        await asyncio.sleep(0.03)
        assert len(controller.context["hits"]) == count
        assert controller.ledger.pending(ResourceKind.INTERVAL) == 0

    @pytest.mark.asyncio
    async def test_user_tasks_tracked_and_cancelled(self, evaluate, controller):
        await evaluate("import asyncio\nt = asyncio.create_task(asyncio.sleep(10))")
        assert controller.ledger.pending(ResourceKind.PROMISE) == 1

        controller.request_stop()
        await asyncio.sleep(0.01)
        assert controller.context["t"].cancelled()

    @pytest.mark.asyncio
    async def test_engine_tasks_not_tracked(self, evaluate, controller):
        await evaluate("1")
        background = asyncio.create_task(asyncio.sleep(0))
        assert controller.ledger.pending(ResourceKind.PROMISE) == 0
        await background

    @pytest.mark.asyncio
    async def test_deferred_inert_after_stop(self, evaluate, controller):
        await evaluate("d = Deferred()\nfired = []\nchild = d.then(fired.append)")
        controller.request_stop()

        deferred = controller.context["d"]
        deferred.resolve(1)
        await asyncio.sleep(0.01)

        assert controller.context["fired"] == []
        assert not deferred.then(print)

    @pytest.mark.asyncio
    async def test_resume_clears_pending_stop(self, controller):
        controller.request_stop()
        controller.resume()
        controller.coordinator.check_stop()

    @pytest.mark.asyncio
    async def test_stoppoint_stops_evaluation(self, controller, sink):
        task = controller.submit(
            Submission("iv = set_interval(lambda: None, 5)\nstoppoint()\nreached = True")
        )
        assert await task is None
        assert controller.state.last_outcome is Outcome.STOPPED
        assert "reached" not in controller.context
        assert controller.ledger.pending(ResourceKind.INTERVAL) == 0
        assert sink.errors == []

    @pytest.mark.asyncio
    async def test_wait_seconds_inside_evaluation(self, evaluate, controller):
        assert await evaluate("await wait_milliseconds(5)\n'awake'") == "awake"
        assert controller.ledger.pending(ResourceKind.TIMEOUT) == 0


@pytest.mark.unit
class TestClearFromEvaluation:
    """``clear()`` keeps what the running submission defined."""

    @pytest.mark.asyncio
    async def test_clear_keeps_new_definitions(self, evaluate, controller, sink):
        await evaluate("a = 1")
        value = await evaluate("def keep():\n    return 1\nclear()\nb = 2\nb")
        assert value == 2
        assert controller.workspace.names() == ["keep", "b"]
        assert sink.results == []

    @pytest.mark.asyncio
    async def test_clear_drops_old_functions(self, evaluate, controller):
        await evaluate("def old():\n    pass")
        await evaluate("clear()")
        assert controller.workspace.names() == []

    @pytest.mark.asyncio
    async def test_redefined_function_survives(self, evaluate, controller):
        await evaluate("def f():\n    return 1")
        await evaluate("def f():\n    return 2\nclear()")
        assert await evaluate("f()") == 2

    @pytest.mark.asyncio
    async def test_clear_result_not_recorded(self, evaluate, controller):
        await evaluate("7")
        await evaluate("clear()\n8")
        assert controller.context["_"] == 7

    @pytest.mark.asyncio
    async def test_required_modules_in_stats(self, evaluate, controller, sink):
        await evaluate("import json")
        assert sink.stats[-1]["required_modules"] == 1
        assert controller.context.runtime.required_modules == ["json"]

        await evaluate("clear()")
        assert controller.context.runtime.required_modules == []
        assert sink.stats[-1]["required_modules"] == 0


@pytest.mark.unit
class TestVirtualSources:
    @pytest.mark.asyncio
    async def test_linecache_bounded(self, sink):
        import linecache

        controller = ExecutionController(ConsoleConfig(linecache_max_size=2), sink=sink)
        for n in range(4):
            await controller.evaluate(Submission(f"v{n} = {n}"))
        registered = [key for key in linecache.cache if key.startswith("<labconsole:")]
        assert len(set(registered) & set(controller._linecache_keys)) == 2
        await controller.close()
        assert not controller._linecache_keys

    def test_filename_is_readable(self):
        controller = ExecutionController(ConsoleConfig(), sink=RecordingSink())
        name = controller._make_filename("scripts/my script.py", "x = 1")
        assert name.startswith("<labconsole:my_script.py:")
