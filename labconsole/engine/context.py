from __future__ import annotations

import builtins
import importlib
import importlib.machinery
import os
import site
import sys
from types import ModuleType
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

import structlog

from .constants import CONTEXT_HANDLE, ENGINE_INTERNALS, RUNTIME_HANDLE

logger = structlog.get_logger()


class ContextMembers:
    """Attribute view over the context namespace used by rewritten code.

    ``__ctx__.x = 1`` stores ``namespace['x']``; reading or deleting a missing
    member raises ``NameError`` like an unbound global would.
    """

    __slots__ = ("_namespace",)

    def __init__(self, namespace: Dict[str, Any]) -> None:
        object.__setattr__(self, "_namespace", namespace)

    def __getattribute__(self, name: str) -> Any:
        namespace = object.__getattribute__(self, "_namespace")
        try:
            return namespace[name]
        except KeyError:
            raise NameError(f"name {name!r} is not defined", name=name) from None

    def __setattr__(self, name: str, value: Any) -> None:
        object.__getattribute__(self, "_namespace")[name] = value

    def __delattr__(self, name: str) -> None:
        namespace = object.__getattribute__(self, "_namespace")
        try:
            del namespace[name]
        except KeyError:
            raise NameError(f"name {name!r} is not defined", name=name) from None

    def __dir__(self) -> list[str]:
        return list(object.__getattribute__(self, "_namespace"))

    def __repr__(self) -> str:
        return f"<context members: {len(object.__getattribute__(self, '_namespace'))} names>"


def _install_prefixes() -> tuple[str, ...]:
    prefixes = {sys.prefix, sys.base_prefix, sys.exec_prefix, sys.base_exec_prefix}
    user_site = site.getusersitepackages()
    if isinstance(user_site, str):
        prefixes.add(user_site)
    return tuple(os.path.abspath(p) for p in prefixes)


def is_user_module(module: ModuleType) -> bool:
    """True for pure-Python modules loaded from outside the interpreter's installation."""
    path = getattr(module, "__file__", None)
    if not path:
        return False
    path = os.path.abspath(path)
    if path.endswith(tuple(importlib.machinery.EXTENSION_SUFFIXES)):
        return False
    return not path.startswith(_install_prefixes())


class RuntimeHelpers:
    """Helpers rewritten code calls for bindings that are not plain targets.

    Imports go through ``_load`` so the modules evaluated code asked for are
    counted (``required_modules``) and the ones it loaded can be dropped from
    ``sys.modules`` on clear, making edited scripts re-read on the next import.
    """

    def __init__(self, namespace: Dict[str, Any]) -> None:
        self._namespace = namespace
        self.required_modules: list[str] = []
        self._loaded: list[str] = []
        self.on_change: Optional[Callable[[], None]] = None

    def bind(self, name: str, value: Any) -> Any:
        self._namespace[name] = value
        return value

    def _load(self, name: str) -> ModuleType:
        before = set(sys.modules)
        module = importlib.import_module(name)
        self._loaded.extend(n for n in list(sys.modules) if n not in before)
        if name not in self.required_modules:
            self.required_modules.append(name)
            if self.on_change is not None:
                self.on_change()
        return module

    def import_module(self, name: str, bind_leaf: bool = False) -> ModuleType:
        module = self._load(name)
        if bind_leaf or "." not in name:
            return module
        return sys.modules[name.partition(".")[0]]

    def import_from(self, module: Optional[str], name: str, level: int = 0) -> Any:
        source = self._resolve(module, level)
        try:
            return getattr(source, name)
        except AttributeError:
            pass
        # Submodule not yet imported as an attribute of its package
        try:
            return self._load(f"{source.__name__}.{name}")
        except ImportError:
            raise ImportError(
                f"cannot import name {name!r} from {source.__name__!r}",
                name=source.__name__,
            ) from None

    def import_star(self, module: Optional[str], level: int = 0) -> None:
        source = self._resolve(module, level)
        names = getattr(source, "__all__", None)
        if names is None:
            names = [n for n in vars(source) if not n.startswith("_")]
        for name in names:
            self._namespace[name] = getattr(source, name)

    def _resolve(self, module: Optional[str], level: int) -> ModuleType:
        if level:
            raise ImportError("attempted relative import with no known parent package")
        return self._load(module or "")

    def unrequire_all(self) -> list[str]:
        """Forget tracked imports and unload the user modules they loaded."""
        unloaded = []
        for name in self._loaded:
            module = sys.modules.get(name)
            if module is not None and is_user_module(module):
                del sys.modules[name]
                unloaded.append(name)
        self._loaded.clear()
        self.required_modules.clear()
        importlib.invalidate_caches()
        logger.debug("modules_unloaded", modules=unloaded)
        if self.on_change is not None:
            self.on_change()
        return unloaded


class ExecutionContext:
    """The long-lived namespace every submission evaluates against.

    Holds dunder module attributes, result history slots, the rewritten-code
    handles and the capability table. Names present right after setup form the
    baseline and are never reported as user variables.
    """

    def __init__(self, capabilities: Optional[Mapping[str, Any]] = None) -> None:
        self._namespace: Dict[str, Any] = {}
        self._capabilities: Dict[str, Any] = dict(capabilities or {})
        self._setup_namespace()
        self._baseline: tuple[str, ...] = tuple(self._namespace)

    def _setup_namespace(self) -> None:
        """Setup the initial namespace.

        The namespace dict is never replaced; rewritten code and the host both
        hold references to it.
        """
        self._namespace.update(
            {
                "__name__": "__main__",
                "__doc__": None,
                "__package__": None,
                "__loader__": None,
                "__spec__": None,
                "__annotations__": {},
                "__builtins__": builtins,
            }
        )

        for key in sorted(ENGINE_INTERNALS):
            if key == "Out":
                self._namespace[key] = {}
            elif key == "In":
                self._namespace[key] = []
            else:
                self._namespace[key] = None

        self._namespace[CONTEXT_HANDLE] = ContextMembers(self._namespace)
        self._runtime = RuntimeHelpers(self._namespace)
        self._namespace[RUNTIME_HANDLE] = self._runtime
        self._namespace.update(self._capabilities)

    @property
    def namespace(self) -> Dict[str, Any]:
        return self._namespace

    @property
    def runtime(self) -> RuntimeHelpers:
        return self._runtime

    @property
    def baseline(self) -> tuple[str, ...]:
        return self._baseline

    @property
    def capability_names(self) -> frozenset[str]:
        return frozenset(self._capabilities)

    def user_names(self) -> list[str]:
        """Names added since setup, in insertion order."""
        baseline = set(self._baseline)
        return [name for name in self._namespace if name not in baseline]

    def items(self) -> Iterator[tuple[str, Any]]:
        for name in self.user_names():
            yield name, self._namespace[name]

    def __contains__(self, name: str) -> bool:
        return name in self._namespace

    def __getitem__(self, name: str) -> Any:
        return self._namespace[name]

    def record_input(self, source: str) -> None:
        """Shift input history (_i, _ii, _iii) and append to In."""
        ns = self._namespace
        ns["_iii"] = ns.get("_ii")
        ns["_ii"] = ns.get("_i")
        ns["_i"] = source
        ns["In"].append(source)

    def record_result(self, value: Any) -> None:
        """Shift result history (_, __, ___) and store in Out.

        Matches IPython: ``None`` results are not recorded.
        """
        if value is None:
            return
        ns = self._namespace
        ns["___"] = ns.get("__")
        ns["__"] = ns.get("_")
        ns["_"] = value
        ns["Out"][len(ns["In"])] = value

    def record_exception(self, exc: BaseException) -> None:
        self._namespace["_exception"] = exc

    def remove(self, name: str) -> None:
        self._namespace.pop(name, None)

    def clear(self) -> int:
        """Remove every non-baseline name; returns how many were removed."""
        names = self.user_names()
        for name in names:
            del self._namespace[name]
        logger.debug("context_cleared", removed=len(names))
        return len(names)
