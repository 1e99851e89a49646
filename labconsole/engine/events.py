"""Outbound notifications from the engine to its host."""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol, Sequence

from .errors import Diagnostic
from .workspace import WorkspaceEntry


class Outcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class EventSink(Protocol):
    def evaluation_started(self, script: str) -> None: ...

    def evaluation_finished(self, outcome: Outcome) -> None: ...

    def result_ready(self, value: Any, is_large_structure: bool) -> None: ...

    def error_reported(self, diagnostic: Diagnostic) -> None: ...

    def stats_changed(self, stats: dict[str, int]) -> None: ...

    def workspace_changed(self, entries: Sequence[WorkspaceEntry]) -> None: ...

    def output(self, data: str, stream: str) -> None: ...


class NullEventSink:
    """Discards every event."""

    def evaluation_started(self, script: str) -> None:
        pass

    def evaluation_finished(self, outcome: Outcome) -> None:
        pass

    def result_ready(self, value: Any, is_large_structure: bool) -> None:
        pass

    def error_reported(self, diagnostic: Diagnostic) -> None:
        pass

    def stats_changed(self, stats: dict[str, int]) -> None:
        pass

    def workspace_changed(self, entries: Sequence[WorkspaceEntry]) -> None:
        pass

    def output(self, data: str, stream: str) -> None:
        pass
