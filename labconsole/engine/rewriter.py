"""Source rewriting for incremental evaluation.

Turns a submission into code that runs inside an async wrapper function while
binding every program-scope name on the persistent execution context:

    x = 1            ->  __ctx__.x = 1
    import numpy     ->  __ctx__.numpy = __rt__.import_module('numpy')
    (n := 3)         ->  __rt__.bind('n', 3)
    def f(): ...     ->  def f(): ...
                         __ctx__.f = f
    x + 1            ->  return x + 1

The rewritten body is wrapped as ``async def __evaluate__(): ...`` followed by
``__pending__ = __evaluate__()`` so top-level ``await`` works. Reads are left
untouched: the context namespace is the evaluation's globals.
"""

from __future__ import annotations

import ast
import io
import tokenize
from dataclasses import dataclass, field
from types import CodeType
from typing import Callable, Optional, Protocol

import structlog

from .constants import (
    CONTEXT_HANDLE,
    EVALUATE_FUNCTION,
    PENDING_RESULT,
    RESERVED_NAMES,
    RUNTIME_HANDLE,
    TEMPORARY_PREFIX,
)
from .errors import ConsoleSyntaxError, DeclarationKind, PolicyViolationError
from .sourcemap import SourceMap, character_column

logger = structlog.get_logger()


class SourceCodec(Protocol):
    """Parser/printer boundary used by the rewriter."""

    def parse(self, source: str, filename: str = "<unknown>") -> ast.Module: ...

    def unparse(self, tree: ast.AST) -> str: ...


class AstCodec:
    """Standard library ``ast`` parser and printer."""

    def parse(self, source: str, filename: str = "<unknown>") -> ast.Module:
        return ast.parse(source, filename=filename, mode="exec")

    def unparse(self, tree: ast.AST) -> str:
        return ast.unparse(tree)


@dataclass(frozen=True)
class RewriteResult:
    code: str
    source_map: SourceMap
    names: tuple[str, ...] = ()
    filename: str = "<console>"
    suppress_echo: bool = False
    original: str = field(default="", repr=False)
    code_object: Optional[CodeType] = field(default=None, compare=False, repr=False)


def normalize_literal(source: str) -> tuple[str, int]:
    """Parenthesize a bare brace literal so it parses as one expression.

    Returns the text to parse and the column shift applied to its first line.
    """
    stripped = source.strip()
    if stripped.startswith("{") and stripped.endswith("}"):
        return "(" + source + "\n)", 1
    return source, 0


def ends_with_semicolon(source: str) -> bool:
    """True when the last significant token of ``source`` is ``;``."""
    last = None
    try:
        for tok in tokenize.generate_tokens(io.StringIO(source).readline):
            if tok.type in (
                tokenize.NEWLINE,
                tokenize.NL,
                tokenize.COMMENT,
                tokenize.ENDMARKER,
                tokenize.INDENT,
                tokenize.DEDENT,
            ):
                continue
            last = tok
    except (tokenize.TokenError, SyntaxError):
        return False
    return last is not None and last.type == tokenize.OP and last.string == ";"


def _syntax_error(msg: str, node: ast.AST, lines: list[str], shift: int) -> ConsoleSyntaxError:
    line = getattr(node, "lineno", None)
    column = None
    if line:
        text = lines[line - 1] if line <= len(lines) else ""
        column = character_column(text, node.col_offset) + 1
        if line == 1:
            column = max(column - shift, 1)
    return ConsoleSyntaxError(msg, line, column)


class ForbiddenNameValidator(ast.NodeVisitor):
    """Reject declarations of reserved identifiers anywhere in a submission."""

    def __init__(self, forbidden: frozenset[str]) -> None:
        self.forbidden = forbidden

    def _check(self, name: Optional[str], kind: DeclarationKind) -> None:
        if name is not None and name in self.forbidden:
            raise PolicyViolationError(name, kind)

    def visit_Name(self, node: ast.Name) -> None:
        if isinstance(node.ctx, ast.Store):
            self._check(node.id, DeclarationKind.VARIABLE)
        elif isinstance(node.ctx, ast.Del):
            self._check(node.id, DeclarationKind.DELETION)

    def visit_FunctionDef(self, node: ast.FunctionDef | ast.AsyncFunctionDef) -> None:
        self._check(node.name, DeclarationKind.FUNCTION)
        self.generic_visit(node)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self._check(node.name, DeclarationKind.CLASS)
        self.generic_visit(node)

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self._check(alias.asname or alias.name.partition(".")[0], DeclarationKind.IMPORT)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        for alias in node.names:
            if alias.name != "*":
                self._check(alias.asname or alias.name, DeclarationKind.IMPORT)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        self._check(node.name, DeclarationKind.EXCEPTION)
        self.generic_visit(node)

    def visit_MatchAs(self, node: ast.MatchAs) -> None:
        self._check(node.name, DeclarationKind.PATTERN)
        self.generic_visit(node)

    def visit_MatchStar(self, node: ast.MatchStar) -> None:
        self._check(node.name, DeclarationKind.PATTERN)

    def visit_MatchMapping(self, node: ast.MatchMapping) -> None:
        self._check(node.rest, DeclarationKind.PATTERN)
        self.generic_visit(node)


class _ProgramScopeScanner(ast.NodeVisitor):
    """Collect program-scope def/class names and reject return/yield there."""

    def __init__(self, lines: list[str], shift: int) -> None:
        self.lines = lines
        self.shift = shift
        self.local_decls: set[str] = set()

    def visit_FunctionDef(self, node: ast.FunctionDef | ast.AsyncFunctionDef | ast.ClassDef) -> None:
        self.local_decls.add(node.name)

    visit_AsyncFunctionDef = visit_FunctionDef
    visit_ClassDef = visit_FunctionDef

    def visit_TypeAlias(self, node: ast.AST) -> None:
        self.local_decls.add(node.name.id)  # type: ignore[attr-defined]

    def visit_Lambda(self, node: ast.Lambda) -> None:
        pass

    def visit_Return(self, node: ast.Return) -> None:
        raise _syntax_error("'return' outside function", node, self.lines, self.shift)

    def visit_Yield(self, node: ast.Yield | ast.YieldFrom) -> None:
        raise _syntax_error("'yield' outside function", node, self.lines, self.shift)

    visit_YieldFrom = visit_Yield


def _context_member(name: str, ctx: ast.expr_context, origin: Optional[ast.AST] = None) -> ast.Attribute:
    node = ast.Attribute(value=ast.Name(id=CONTEXT_HANDLE, ctx=ast.Load()), attr=name, ctx=ctx)
    if origin is not None:
        ast.copy_location(node, origin)
    return node


def _runtime_call(method: str, *args: ast.expr) -> ast.Call:
    return ast.Call(
        func=ast.Attribute(value=ast.Name(id=RUNTIME_HANDLE, ctx=ast.Load()), attr=method, ctx=ast.Load()),
        args=list(args),
        keywords=[],
    )


def _const(value) -> ast.Constant:
    return ast.Constant(value=value, kind=None)


def _assign(target: ast.expr, value: ast.expr) -> ast.Assign:
    return ast.Assign(targets=[target], value=value, type_comment=None)


class _CaptureRenamer(ast.NodeTransformer):
    """Point match-pattern captures at temporaries."""

    def __init__(self, mapping: dict[str, str], temporary: Callable[[], str]) -> None:
        self.mapping = mapping
        self.temporary = temporary

    def _rename(self, name: Optional[str]) -> Optional[str]:
        if name is None:
            return None
        if name not in self.mapping:
            self.mapping[name] = self.temporary()
        return self.mapping[name]

    def visit_MatchAs(self, node: ast.MatchAs) -> ast.MatchAs:
        node.name = self._rename(node.name)
        self.generic_visit(node)
        return node

    def visit_MatchStar(self, node: ast.MatchStar) -> ast.MatchStar:
        node.name = self._rename(node.name)
        return node

    def visit_MatchMapping(self, node: ast.MatchMapping) -> ast.MatchMapping:
        node.rest = self._rename(node.rest)
        self.generic_visit(node)
        return node


class _NameRenamer(ast.NodeTransformer):
    def __init__(self, mapping: dict[str, str]) -> None:
        self.mapping = mapping

    def visit_Name(self, node: ast.Name) -> ast.Name:
        if isinstance(node.ctx, ast.Load) and node.id in self.mapping:
            node.id = self.mapping[node.id]
        return node


class _EnclosingWalrus(ast.NodeTransformer):
    """Rewrite assignment expressions inside comprehensions.

    A walrus in a comprehension binds in the enclosing scope, which at program
    scope is the persistent context.
    """

    def __init__(self, owner: "_ProgramScopeTransformer") -> None:
        self.owner = owner

    def visit_NamedExpr(self, node: ast.NamedExpr) -> ast.AST:
        self.generic_visit(node)
        return self.owner.bind_call(node)

    def visit_Lambda(self, node: ast.Lambda) -> ast.Lambda:
        return node


_BLOCK_FIELDS = ("body", "orelse", "finalbody")


class _ProgramScopeTransformer(ast.NodeTransformer):
    """Redirect program-scope bindings onto the persistent context."""

    def __init__(self, local_decls: set[str]) -> None:
        self.local_decls = local_decls
        self.names: list[str] = []
        self._pending: list[ast.stmt] = []
        self._tmp_seq = 0

    # -- helpers -----------------------------------------------------------
    def _declare(self, name: str) -> None:
        if name not in self.names:
            self.names.append(name)

    def _temporary(self) -> str:
        self._tmp_seq += 1
        return f"{TEMPORARY_PREFIX}{self._tmp_seq}__"

    def _sync(self, name: str) -> ast.stmt:
        return _assign(_context_member(name, ast.Store()), ast.Name(id=name, ctx=ast.Load()))

    def _flush(self) -> list[ast.stmt]:
        pending, self._pending = self._pending, []
        return pending

    def _bind_target(self, name: str, origin: ast.AST) -> ast.expr:
        self._declare(name)
        if name in self.local_decls:
            # Same-submission def/class names stay local; mirror onto the context
            self._pending.append(self._sync(name))
            return ast.copy_location(ast.Name(id=name, ctx=ast.Store()), origin)
        return _context_member(name, ast.Store(), origin)

    def bind_call(self, node: ast.NamedExpr) -> ast.Call:
        name = node.target.id  # type: ignore[attr-defined]
        self._declare(name)
        return ast.copy_location(_runtime_call("bind", _const(name), node.value), node)

    def block(self, stmts: list[ast.stmt]) -> list[ast.stmt]:
        out: list[ast.stmt] = []
        for stmt in stmts:
            result = self.visit(stmt)
            if result is None:
                continue
            out.extend(result if isinstance(result, list) else [result])
            out.extend(self._flush())
        if stmts and not out:
            out.append(ast.Pass())
        return out

    # -- compound statements ----------------------------------------------
    def _visit_compound(self, node: ast.stmt) -> ast.stmt:
        for name, value in ast.iter_fields(node):
            if name in _BLOCK_FIELDS:
                # Loop/with targets bound above land at the top of the body
                prologue = self._flush() if name == "body" else []
                setattr(node, name, prologue + self.block(value))
            elif isinstance(value, list):
                setattr(node, name, [self.visit(v) if isinstance(v, ast.AST) else v for v in value])
            elif isinstance(value, ast.AST):
                setattr(node, name, self.visit(value))
        return node

    visit_If = _visit_compound
    visit_While = _visit_compound
    visit_For = _visit_compound
    visit_AsyncFor = _visit_compound
    visit_With = _visit_compound
    visit_AsyncWith = _visit_compound
    visit_Try = _visit_compound
    visit_TryStar = _visit_compound

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> ast.ExceptHandler:
        if node.type is not None:
            node.type = self.visit(node.type)
        prologue: list[ast.stmt] = []
        if node.name:
            tmp = self._temporary()
            prologue.append(_assign(self._bind_target(node.name, node), ast.Name(id=tmp, ctx=ast.Load())))
            prologue.extend(self._flush())
            node.name = tmp
        node.body = prologue + self.block(node.body)
        return node

    def visit_Match(self, node: ast.Match) -> ast.Match:
        node.subject = self.visit(node.subject)
        for case in node.cases:
            mapping: dict[str, str] = {}
            case.pattern = _CaptureRenamer(mapping, self._temporary).visit(case.pattern)
            if case.guard is not None:
                case.guard = self.visit(_NameRenamer(mapping).visit(case.guard))
            prologue: list[ast.stmt] = []
            for name, tmp in mapping.items():
                prologue.append(_assign(self._bind_target(name, case.pattern), ast.Name(id=tmp, ctx=ast.Load())))
            prologue.extend(self._flush())
            case.body = prologue + self.block(case.body)
        return node

    # -- declarations ------------------------------------------------------
    def _visit_declaration(self, node: ast.FunctionDef | ast.AsyncFunctionDef | ast.ClassDef) -> list[ast.stmt]:
        # Decorators, defaults and bases evaluate in the enclosing scope
        node.decorator_list = [self.visit(d) for d in node.decorator_list]
        if isinstance(node, ast.ClassDef):
            node.bases = [self.visit(b) for b in node.bases]
            node.keywords = [self.visit(k) for k in node.keywords]
        else:
            node.args.defaults = [self.visit(d) for d in node.args.defaults]
            node.args.kw_defaults = [self.visit(d) if d is not None else None for d in node.args.kw_defaults]
        self._declare(node.name)
        return [node, self._sync(node.name)]

    visit_FunctionDef = _visit_declaration
    visit_AsyncFunctionDef = _visit_declaration
    visit_ClassDef = _visit_declaration

    def visit_TypeAlias(self, node: ast.AST) -> list[ast.stmt]:
        name = node.name.id  # type: ignore[attr-defined]
        self._declare(name)
        return [node, self._sync(name)]  # type: ignore[list-item]

    def visit_Lambda(self, node: ast.Lambda) -> ast.Lambda:
        node.args.defaults = [self.visit(d) for d in node.args.defaults]
        node.args.kw_defaults = [self.visit(d) if d is not None else None for d in node.args.kw_defaults]
        return node

    def _visit_comprehension(self, node: ast.expr) -> ast.expr:
        return _EnclosingWalrus(self).visit(node)

    visit_ListComp = _visit_comprehension
    visit_SetComp = _visit_comprehension
    visit_DictComp = _visit_comprehension
    visit_GeneratorExp = _visit_comprehension

    def visit_Import(self, node: ast.Import) -> list[ast.stmt]:
        stmts: list[ast.stmt] = []
        for alias in node.names:
            if alias.asname:
                name = alias.asname
                call = _runtime_call("import_module", _const(alias.name), _const(True))
            else:
                name = alias.name.partition(".")[0]
                call = _runtime_call("import_module", _const(alias.name))
            stmts.append(ast.copy_location(_assign(self._bind_target(name, node), call), node))
        return stmts

    def visit_ImportFrom(self, node: ast.ImportFrom) -> list[ast.stmt]:
        stmts: list[ast.stmt] = []
        module = _const(node.module)
        level = _const(node.level or 0)
        for alias in node.names:
            if alias.name == "*":
                call = _runtime_call("import_star", module, level)
                stmts.append(ast.copy_location(ast.Expr(value=call), node))
                continue
            name = alias.asname or alias.name
            call = _runtime_call("import_from", module, _const(alias.name), level)
            stmts.append(ast.copy_location(_assign(self._bind_target(name, node), call), node))
        return stmts

    # -- simple statements and expressions ---------------------------------
    def visit_Global(self, node: ast.Global) -> ast.stmt:
        # Program-scope bindings already target the context
        return ast.copy_location(ast.Pass(), node)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> ast.AnnAssign:
        node.annotation = self.visit(node.annotation)
        if node.value is not None:
            node.value = self.visit(node.value)
        if isinstance(node.target, ast.Name):
            if node.value is None:
                # Bare annotation declares nothing
                node.target = _context_member(node.target.id, ast.Store(), node.target)
            else:
                node.target = self._bind_target(node.target.id, node.target)
            if isinstance(node.target, ast.Attribute):
                node.simple = 0
        else:
            node.target = self.visit(node.target)
        return node

    def visit_NamedExpr(self, node: ast.NamedExpr) -> ast.Call:
        node.value = self.visit(node.value)
        return self.bind_call(node)

    def visit_Name(self, node: ast.Name) -> ast.expr:
        if isinstance(node.ctx, ast.Store):
            return self._bind_target(node.id, node)
        if isinstance(node.ctx, ast.Del):
            return _context_member(node.id, ast.Del(), node)
        return node


def _fill_missing(tree: ast.AST) -> None:
    """Give synthesized nodes the fields and (zero) positions the printer expects."""
    for node in ast.walk(tree):
        for name in node._fields:
            if not hasattr(node, name):
                setattr(node, name, [] if name == "type_params" else None)
        if "lineno" in node._attributes and not hasattr(node, "lineno"):
            node.lineno = 0
            node.col_offset = 0
            node.end_lineno = 0
            node.end_col_offset = 0


def _wrap(body: list[ast.stmt]) -> ast.Module:
    extra = {"type_params": []} if "type_params" in ast.AsyncFunctionDef._fields else {}
    function = ast.AsyncFunctionDef(
        name=EVALUATE_FUNCTION,
        args=ast.arguments(
            posonlyargs=[], args=[], vararg=None, kwonlyargs=[], kw_defaults=[], kwarg=None, defaults=[]
        ),
        body=body,
        decorator_list=[],
        returns=None,
        type_comment=None,
        **extra,
    )
    pending = _assign(
        ast.Name(id=PENDING_RESULT, ctx=ast.Store()),
        ast.Call(func=ast.Name(id=EVALUATE_FUNCTION, ctx=ast.Load()), args=[], keywords=[]),
    )
    return ast.Module(body=[function, pending], type_ignores=[])


class SourceRewriter:
    """Parse, validate and rewrite submissions for persistent evaluation."""

    def __init__(
        self,
        forbidden: frozenset[str] | set[str] = frozenset(),
        *,
        codec: SourceCodec | None = None,
        debug_pre_transformed_code: bool = False,
        debug_transformed_code: bool = False,
    ) -> None:
        self.forbidden = frozenset(forbidden) | RESERVED_NAMES
        self.codec: SourceCodec = codec or AstCodec()
        self.debug_pre_transformed_code = debug_pre_transformed_code
        self.debug_transformed_code = debug_transformed_code

    def rewrite(self, source: str, filename: str = "<console>") -> RewriteResult:
        """Rewrite ``source`` for evaluation.

        Raises:
            ConsoleSyntaxError: The source does not parse or compile, or uses
                ``return``/``yield`` at program scope.
            PolicyViolationError: The source declares a forbidden identifier.
        """
        if self.debug_pre_transformed_code:
            logger.debug("pre_transformed_code", filename=filename, code=source)

        text, shift = normalize_literal(source)
        try:
            tree = self.codec.parse(text, filename)
        except SyntaxError as e:
            if not shift:
                raise ConsoleSyntaxError(e.msg, e.lineno, e.offset) from None
            # Not a literal after all; parse as written
            text, shift = source, 0
            try:
                tree = self.codec.parse(text, filename)
            except SyntaxError as e2:
                raise ConsoleSyntaxError(e2.msg, e2.lineno, e2.offset) from None

        lines = text.splitlines()
        scanner = _ProgramScopeScanner(lines, shift)
        scanner.visit(tree)
        ForbiddenNameValidator(self.forbidden).visit(tree)

        transformer = _ProgramScopeTransformer(scanner.local_decls)
        body = transformer.block(tree.body)
        if body and isinstance(body[-1], ast.Expr):
            tail = body.pop()
            body.append(ast.copy_location(ast.Return(value=tail.value), tail))
        else:
            body.append(ast.Return(value=_const(None)))

        module = _wrap(body)
        _fill_missing(module)
        code = self.codec.unparse(module)

        source_map = SourceMap.build(
            module,
            code,
            source,
            parse=lambda generated: self.codec.parse(generated, filename),
            first_line_shift=shift,
        )

        if self.debug_transformed_code:
            logger.debug("transformed_code", filename=filename, code=code, mappings=len(source_map))

        try:
            code_object = compile(code, filename, "exec")
        except SyntaxError as e:
            # Only the compiler rejects some code, e.g. `break` outside a loop
            position = source_map.original_position_for_syntax_error(e.lineno, e.offset)
            line, column = position if position else (None, None)
            raise ConsoleSyntaxError(e.msg, line, column) from None

        return RewriteResult(
            code=code,
            source_map=source_map,
            names=tuple(transformer.names),
            filename=filename,
            suppress_echo=ends_with_semicolon(source),
            original=source,
            code_object=code_object,
        )
