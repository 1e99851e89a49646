"""Unit tests for the source rewriter."""

import pytest

from labconsole.engine.context import ExecutionContext
from labconsole.engine.errors import ConsoleSyntaxError, DeclarationKind, PolicyViolationError
from labconsole.engine.rewriter import (
    SourceRewriter,
    ends_with_semicolon,
    normalize_literal,
)


@pytest.fixture
def rewriter() -> SourceRewriter:
    return SourceRewriter(frozenset({"config", "language", "app_path", "packed"}))


async def run(result, namespace):
    """Execute a rewrite result the way the controller does."""
    local_vars: dict = {}
    exec(compile(result.code, result.filename, "exec"), namespace, local_vars)
    return await local_vars["__pending__"]


@pytest.mark.unit
class TestProgramScopeBindings:
    """Program-scope names land on the context handle."""

    def test_assignment_targets_context(self, rewriter):
        result = rewriter.rewrite("x = 1")
        assert "__ctx__.x = 1" in result.code
        assert result.names == ("x",)

    def test_tuple_unpacking_keeps_order(self, rewriter):
        result = rewriter.rewrite("a, b = 1, 2")
        assert "__ctx__.a, __ctx__.b" in result.code
        assert result.names == ("a", "b")

    def test_augmented_assignment(self, rewriter):
        result = rewriter.rewrite("x += 1")
        assert "__ctx__.x += 1" in result.code

    def test_for_target_is_context_member(self, rewriter):
        result = rewriter.rewrite("for i in range(3):\n    pass")
        assert "for __ctx__.i in range(3):" in result.code

    def test_delete_targets_context(self, rewriter):
        result = rewriter.rewrite("del x")
        assert "del __ctx__.x" in result.code

    def test_reads_are_untouched(self, rewriter):
        result = rewriter.rewrite("y = x + 1")
        assert "__ctx__.y = x + 1" in result.code

    def test_walrus_binds_through_runtime(self, rewriter):
        result = rewriter.rewrite("(n := 3)")
        assert "__rt__.bind('n', 3)" in result.code
        assert result.names == ("n",)

    def test_walrus_in_comprehension(self, rewriter):
        result = rewriter.rewrite("[last := v for v in range(3)]")
        assert "__rt__.bind('last', v)" in result.code

    def test_global_statement_dropped(self, rewriter):
        result = rewriter.rewrite("global g\ng = 1")
        assert "global" not in result.code
        assert "__ctx__.g = 1" in result.code

    def test_annotated_assignment(self, rewriter):
        result = rewriter.rewrite("x: int = 5")
        assert "__ctx__.x: int = 5" in result.code


@pytest.mark.unit
class TestDeclarations:
    """Functions and classes stay local to the wrapper and are mirrored."""

    def test_function_body_not_rewritten(self, rewriter):
        result = rewriter.rewrite("def f():\n    y = 2\n    return y")
        assert "__ctx__.f = f" in result.code
        assert "__ctx__.y" not in result.code
        assert result.names == ("f",)

    def test_class_is_mirrored(self, rewriter):
        result = rewriter.rewrite("class Point:\n    x = 0")
        assert "__ctx__.Point = Point" in result.code
        assert "__ctx__.x" not in result.code

    def test_store_to_declared_name_stays_local(self, rewriter):
        result = rewriter.rewrite("def f():\n    pass\nf = 5")
        assert "__ctx__.f = 5" not in result.code
        assert result.code.count("__ctx__.f = f") == 2

    def test_lambda_body_not_rewritten(self, rewriter):
        result = rewriter.rewrite("g = lambda v: (w := v)")
        assert "__rt__.bind" not in result.code


@pytest.mark.unit
class TestImports:
    """Imports go through the runtime helpers."""

    def test_dotted_import_binds_top_package(self, rewriter):
        result = rewriter.rewrite("import os.path")
        assert "__ctx__.os = __rt__.import_module('os.path')" in result.code

    def test_import_as_binds_leaf(self, rewriter):
        result = rewriter.rewrite("import os.path as osp")
        assert "__ctx__.osp = __rt__.import_module('os.path', True)" in result.code

    def test_from_import(self, rewriter):
        result = rewriter.rewrite("from math import pi as PI")
        assert "__ctx__.PI = __rt__.import_from('math', 'pi', 0)" in result.code
        assert result.names == ("PI",)

    def test_star_import(self, rewriter):
        result = rewriter.rewrite("from math import *")
        assert "__rt__.import_star('math', 0)" in result.code


@pytest.mark.unit
class TestCaptures:
    """except/match captures bind through temporaries."""

    def test_except_name_persists(self, rewriter):
        source = "try:\n    1 / 0\nexcept ZeroDivisionError as err:\n    pass"
        result = rewriter.rewrite(source)
        assert "except ZeroDivisionError as __tmp_1__:" in result.code
        assert "__ctx__.err = __tmp_1__" in result.code
        assert result.names == ("err",)

    def test_match_capture(self, rewriter):
        source = "match (1, 2):\n    case (first, *rest) if first > 0:\n        pass"
        result = rewriter.rewrite(source)
        assert "__ctx__.first = __tmp_1__" in result.code
        assert "__ctx__.rest = __tmp_2__" in result.code
        assert "if __tmp_1__ > 0" in result.code


@pytest.mark.unit
class TestWrapping:
    """The body is wrapped in an async evaluation function."""

    def test_wrapper_shape(self, rewriter):
        result = rewriter.rewrite("x = 1")
        assert result.code.startswith("async def __evaluate__():")
        assert "__pending__ = __evaluate__()" in result.code

    def test_trailing_expression_is_returned(self, rewriter):
        result = rewriter.rewrite("x = 1\nx + 1")
        assert "return x + 1" in result.code

    def test_no_trailing_expression_returns_none(self, rewriter):
        result = rewriter.rewrite("y = 2")
        assert "return None" in result.code

    def test_trailing_semicolon_suppresses_echo(self, rewriter):
        assert rewriter.rewrite("1;").suppress_echo is True
        assert rewriter.rewrite("1").suppress_echo is False

    def test_brace_literal_is_an_expression(self, rewriter):
        result = rewriter.rewrite("{'a': 1}")
        assert "return {'a': 1}" in result.code

    def test_brace_block_falls_back(self, rewriter):
        with pytest.raises(ConsoleSyntaxError):
            rewriter.rewrite("{'a': 1} = 2}")

    @pytest.mark.asyncio
    async def test_rewritten_code_runs(self, rewriter):
        context = ExecutionContext()
        await run(rewriter.rewrite("import math\nr = math.sqrt(16)"), context.namespace)
        value = await run(rewriter.rewrite("r + 1"), context.namespace)
        assert value == 5.0
        assert context.user_names() == ["math", "r"]

    @pytest.mark.asyncio
    async def test_top_level_await(self, rewriter):
        context = ExecutionContext()
        value = await run(
            rewriter.rewrite("import asyncio\nawait asyncio.sleep(0)\n7"), context.namespace
        )
        assert value == 7


@pytest.mark.unit
class TestForbiddenNames:
    """Reserved identifiers may not be declared anywhere."""

    @pytest.mark.parametrize(
        "source, identifier, kind",
        [
            ("config = 1", "config", DeclarationKind.VARIABLE),
            ("def language():\n    pass", "language", DeclarationKind.FUNCTION),
            ("class packed:\n    pass", "packed", DeclarationKind.CLASS),
            ("import os as app_path", "app_path", DeclarationKind.IMPORT),
            ("def f():\n    config = 2", "config", DeclarationKind.VARIABLE),
            ("try:\n    pass\nexcept Exception as config:\n    pass", "config", DeclarationKind.EXCEPTION),
            ("del config", "config", DeclarationKind.DELETION),
            ("__ctx__ = 1", "__ctx__", DeclarationKind.VARIABLE),
        ],
    )
    def test_declaration_rejected(self, rewriter, source, identifier, kind):
        with pytest.raises(PolicyViolationError) as exc_info:
            rewriter.rewrite(source)
        assert exc_info.value.identifier == identifier
        assert exc_info.value.kind is kind

    def test_reading_forbidden_name_allowed(self, rewriter):
        result = rewriter.rewrite("config.value")
        assert "return config.value" in result.code


@pytest.mark.unit
class TestSyntaxErrors:
    """Parse failures are reported against the submitted text."""

    def test_parse_error_position(self, rewriter):
        with pytest.raises(ConsoleSyntaxError) as exc_info:
            rewriter.rewrite("x = 1\ny = = 2")
        assert exc_info.value.line == 2

    def test_program_scope_return(self, rewriter):
        with pytest.raises(ConsoleSyntaxError) as exc_info:
            rewriter.rewrite("x = 1\nreturn 5")
        assert exc_info.value.msg == "'return' outside function"
        assert exc_info.value.line == 2
        assert exc_info.value.column == 1

    def test_program_scope_yield(self, rewriter):
        with pytest.raises(ConsoleSyntaxError):
            rewriter.rewrite("yield 1")

    def test_return_inside_function_allowed(self, rewriter):
        rewriter.rewrite("def f():\n    return 1")

    @pytest.mark.parametrize(
        "source, line, message",
        [
            ("x = 1\nbreak", 2, "'break' outside loop"),
            ("while False:\n    pass\ncontinue", 3, "'continue' not properly in loop"),
            ("def f():\n    await g()", 2, "'await' outside async function"),
            ("class A:\n    return 1", 2, "'return' outside function"),
        ],
    )
    def test_compile_time_errors(self, rewriter, source, line, message):
        with pytest.raises(ConsoleSyntaxError) as exc_info:
            rewriter.rewrite(source)
        assert exc_info.value.msg == message
        assert exc_info.value.line == line

    def test_result_carries_code_object(self, rewriter):
        result = rewriter.rewrite("x = 1", filename="<test:compiled>")
        assert result.code_object is not None
        assert result.code_object.co_filename == "<test:compiled>"


@pytest.mark.unit
class TestSourceMapping:
    """Generated positions translate back to the submission."""

    def _position(self, result, needle):
        for number, line in enumerate(result.code.splitlines(), start=1):
            if needle in line:
                return number, line.encode("utf-8").index(needle.encode("utf-8"))
        raise AssertionError(f"{needle!r} not in generated code")

    def test_second_line_maps_back(self, rewriter):
        result = rewriter.rewrite("x = 1\ny = undefined_name")
        line, column = self._position(result, "undefined_name")
        assert result.source_map.original_position(line, column) == (2, 5)

    def test_multibyte_columns(self, rewriter):
        result = rewriter.rewrite("s = 'é'; t = missing")
        line, column = self._position(result, "missing")
        assert result.source_map.original_position(line, column) == (1, 14)

    def test_wrapper_line_has_no_mapping(self, rewriter):
        result = rewriter.rewrite("x = 1")
        assert result.source_map.original_position(1, 0) is None


@pytest.mark.unit
class TestHelpers:
    def test_normalize_literal(self):
        assert normalize_literal("{1: 2}") == ("({1: 2}\n)", 1)
        assert normalize_literal("x = {}") == ("x = {}", 0)

    def test_ends_with_semicolon(self):
        assert ends_with_semicolon("x = 1;")
        assert ends_with_semicolon("x = 1;  # quiet")
        assert not ends_with_semicolon("x = ';'")
        assert not ends_with_semicolon("x = (")
