"""Workspace tracking: which user names exist and what they hold."""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

import structlog

from .context import ExecutionContext

logger = structlog.get_logger()


class EntryKind(str, Enum):
    FUNCTION = "function"
    CLASS = "class"
    MODULE = "module"
    VARIABLE = "variable"


def classify(value: Any) -> EntryKind:
    if inspect.isclass(value):
        return EntryKind.CLASS
    if inspect.ismodule(value):
        return EntryKind.MODULE
    if inspect.isroutine(value):
        return EntryKind.FUNCTION
    return EntryKind.VARIABLE


@dataclass(frozen=True)
class WorkspaceEntry:
    name: str
    value: Any = field(compare=False, repr=False)
    kind: EntryKind = EntryKind.VARIABLE
    type_name: str = ""

    @classmethod
    def of(cls, name: str, value: Any) -> "WorkspaceEntry":
        return cls(name=name, value=value, kind=classify(value), type_name=type(value).__name__)

    def describe(self) -> dict[str, str]:
        return {"name": self.name, "kind": self.kind.value, "type": self.type_name}


def diff(baseline: Iterable[str], current: Iterable[str]) -> list[str]:
    """Names in ``current`` but not in ``baseline``, in ``current`` order."""
    base = set(baseline)
    return [name for name in current if name not in base]


@dataclass
class SavedWorkspace:
    """Workspace values set aside while a submission is rewritten."""

    values: dict[str, Any] = field(default_factory=dict)
    # name -> function object that existed before the running submission
    functions: dict[str, Any] = field(default_factory=dict)

    @property
    def names(self) -> list[str]:
        return list(self.values)

    def is_saved_function(self, name: str, value: Any) -> bool:
        return name in self.functions and self.functions[name] is value


class Workspace:
    """Computes workspace snapshots and manages save/restore around evaluation."""

    def __init__(self, context: ExecutionContext) -> None:
        self._context = context
        self._saved: Optional[SavedWorkspace] = None

    @property
    def saved(self) -> Optional[SavedWorkspace]:
        return self._saved

    def names(self) -> list[str]:
        return diff(self._context.baseline, self._context.namespace)

    def snapshot(self) -> tuple[WorkspaceEntry, ...]:
        ns = self._context.namespace
        return tuple(WorkspaceEntry.of(name, ns[name]) for name in self.names())

    def save(self) -> SavedWorkspace:
        """Set aside current user names, marking functions as previously saved."""
        saved = SavedWorkspace()
        ns = self._context.namespace
        for name in self.names():
            value = ns.pop(name)
            saved.values[name] = value
            if classify(value) is EntryKind.FUNCTION:
                saved.functions[name] = value
        self._saved = saved
        logger.debug("workspace_saved", names=len(saved.values), functions=len(saved.functions))
        return saved

    def restore(self) -> list[str]:
        """Put back saved names that were not redefined since ``save``."""
        saved = self._saved
        if saved is None:
            return []
        ns = self._context.namespace
        restored = []
        for name, value in saved.values.items():
            if name not in ns:
                ns[name] = value
                restored.append(name)
        return restored

    def clear(self) -> list[str]:
        """Forget names from before the running submission.

        Non-function values go; functions go only when they are the same object
        that was saved, so functions the running submission defined survive.
        """
        removed: list[str] = []
        saved = self._saved
        if saved is not None:
            ns = self._context.namespace
            for name in saved.names:
                if name not in ns:
                    continue
                value = ns[name]
                if classify(value) is not EntryKind.FUNCTION or saved.is_saved_function(name, value):
                    del ns[name]
                    removed.append(name)
        self._saved = None
        logger.debug("workspace_cleared", removed=removed)
        return removed

    def clear_all(self) -> int:
        self._saved = None
        return self._context.clear()
