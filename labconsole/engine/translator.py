"""Error translation from generated code back to submitted source."""

from __future__ import annotations

import os
import traceback
from collections import OrderedDict
from typing import Optional

import structlog

from .errors import Diagnostic, RewriteError
from .rewriter import RewriteResult

logger = structlog.get_logger()

_ENGINE_DIR = os.path.dirname(os.path.abspath(__file__))


def _describe(exc: BaseException) -> str:
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class ErrorTranslator:
    """Turns exceptions into diagnostics positioned in the original submission.

    Keeps the source maps of recent submissions so frames in functions defined
    by earlier submissions translate too.
    """

    def __init__(self, *, debug: bool = False, max_maps: int = 128) -> None:
        self.debug = debug
        self.max_maps = max_maps
        self._maps: OrderedDict[str, tuple[RewriteResult, Optional[str]]] = OrderedDict()

    def register(self, rewrite: RewriteResult, script: Optional[str] = None) -> None:
        self._maps[rewrite.filename] = (rewrite, script)
        self._maps.move_to_end(rewrite.filename)
        while len(self._maps) > self.max_maps:
            self._maps.popitem(last=False)

    def forget(self, filename: str) -> None:
        self._maps.pop(filename, None)

    def clear(self) -> None:
        self._maps.clear()

    def translate(
        self,
        exc: BaseException,
        rewrite: Optional[RewriteResult] = None,
        script: Optional[str] = None,
    ) -> Diagnostic:
        if rewrite is not None and rewrite.filename not in self._maps:
            self.register(rewrite, script)

        if isinstance(exc, RewriteError):
            # Reported against the submitted text already
            return exc.diagnostic(script)

        raw = "".join(traceback.format_exception(exc)) if self.debug else None

        if isinstance(exc, SyntaxError) and exc.filename in self._maps:
            rewritten, owner = self._maps[exc.filename]
            position = rewritten.source_map.original_position_for_syntax_error(exc.lineno, exc.offset)
            line, column = position if position else (None, None)
            return Diagnostic(
                message=f"SyntaxError: {exc.msg}",
                exception_type="SyntaxError",
                line=line,
                column=column,
                script=owner or script,
                translated=position is not None,
                traceback=raw,
            )

        frames: list[str] = []
        line = column = None
        owner = script
        translated = False
        for frame in reversed(traceback.extract_tb(exc.__traceback__)):
            entry = self._maps.get(frame.filename)
            if entry is not None:
                rewritten, owner = entry[0], entry[1] or script
                position = rewritten.source_map.original_position(frame.lineno, frame.colno)
                if position is not None:
                    line, column = position
                    translated = True
                break
            if os.path.dirname(os.path.abspath(frame.filename)) == _ENGINE_DIR:
                continue
            frames.append(
                f"  at {frame.name} ({frame.filename}) line: {frame.lineno}, "
                f"column: {(frame.colno or 0) + 1}"
            )

        diagnostic = Diagnostic(
            message=_describe(exc),
            exception_type=type(exc).__name__,
            line=line,
            column=column,
            script=owner,
            translated=translated,
            frames=tuple(frames),
            traceback=raw,
        )
        logger.debug(
            "error_translated",
            exception_type=diagnostic.exception_type,
            line=line,
            column=column,
            translated=translated,
        )
        return diagnostic
