"""Exception taxonomy for the evaluation engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class DeclarationKind(str, Enum):
    """Kind of declaration site a forbidden identifier was found at."""

    VARIABLE = "variable"
    FUNCTION = "function"
    CLASS = "class"
    IMPORT = "import"
    EXCEPTION = "exception"
    DELETION = "deletion"
    PATTERN = "pattern"


@dataclass(frozen=True)
class Diagnostic:
    """User-facing description of a failure, positioned in the submitted source."""

    message: str
    exception_type: str
    line: Optional[int] = None
    column: Optional[int] = None
    script: Optional[str] = None
    translated: bool = False
    frames: tuple[str, ...] = ()
    traceback: Optional[str] = None

    def render(self) -> str:
        text = self.message
        for frame in self.frames:
            text += "\n" + frame
        if self.line is not None:
            text += f"\n  at ({self.script or 'script'}) line: {self.line}"
            if self.column is not None:
                text += f", column: {self.column}"
        if self.traceback:
            text += "\n" + self.traceback
        return text


class ConsoleError(Exception):
    """Base class for errors surfaced by the console engine."""

    pass


class RewriteError(ConsoleError):
    """Submission rejected before execution."""

    def diagnostic(self, script: Optional[str] = None) -> Diagnostic:
        return Diagnostic(
            message=f"{type(self).__name__}: {self}",
            exception_type=type(self).__name__,
            script=script,
        )


class ConsoleSyntaxError(RewriteError):
    """Submitted source failed to parse."""

    def __init__(self, msg: str, line: Optional[int] = None, column: Optional[int] = None) -> None:
        super().__init__(msg)
        self.msg = msg
        self.line = line
        self.column = column

    def diagnostic(self, script: Optional[str] = None) -> Diagnostic:
        return Diagnostic(
            message=f"SyntaxError: {self.msg}",
            exception_type="SyntaxError",
            line=self.line,
            column=self.column,
            script=script,
        )


class PolicyViolationError(RewriteError):
    """Submitted source declares an identifier it may not declare."""

    def __init__(self, identifier: str, kind: DeclarationKind) -> None:
        super().__init__(f"cannot declare {kind.value} '{identifier}': the name is reserved")
        self.identifier = identifier
        self.kind = kind


class EvaluationError(ConsoleError):
    """Evaluated code raised; carries the translated diagnostic."""

    def __init__(self, diagnostic: Diagnostic) -> None:
        super().__init__(diagnostic.message)
        self.diagnostic = diagnostic


class BusyError(ConsoleError):
    """An evaluation is already in flight."""

    pass


class StopExecution(BaseException):
    """Raised inside evaluated code when a stop was requested.

    Derives from ``BaseException`` so user ``except Exception`` blocks do not
    swallow it.
    """

    pass
