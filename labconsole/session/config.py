"""Configuration for console behavior."""

from __future__ import annotations

import os
from dataclasses import dataclass

from ..engine.constants import COMMAND_WINDOW, DEFAULT_FORBIDDEN_NAMES


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class ConsoleConfig:
    """Configuration for the evaluation engine.

    Defaults are suitable for an embedded console; ``from_env`` applies
    ``LABCONSOLE_*`` overrides on top of them.
    """

    # Names evaluated code may not declare
    forbidden_names: tuple[str, ...] = DEFAULT_FORBIDDEN_NAMES
    # Also forbid redeclaring capability table entries
    protect_catalogue: bool = True

    # Diagnostics
    debug: bool = False
    debug_pre_transformed_code: bool = False
    debug_transformed_code: bool = False

    # Bounded LRU of virtual sources kept in linecache
    linecache_max_size: int = 128

    # Results with len() above this are flagged as large structures
    large_structure_threshold: int = 10_000

    # Scheduling substitutes
    frame_interval: float = 1 / 60
    idle_callback_delay: float = 0.05
    subprocess_grace_period: float = 1.0

    command_window_name: str = COMMAND_WINDOW

    @classmethod
    def from_env(cls, **overrides) -> "ConsoleConfig":
        """Build a config from defaults, environment variables and explicit overrides."""
        config = cls(
            debug=_env_flag("LABCONSOLE_DEBUG", False),
            debug_pre_transformed_code=_env_flag("LABCONSOLE_DEBUG_PRE_TRANSFORMED_CODE", False),
            debug_transformed_code=_env_flag("LABCONSOLE_DEBUG_TRANSFORMED_CODE", False),
            linecache_max_size=_env_int("LABCONSOLE_LINECACHE_MAX", 128),
            frame_interval=_env_float("LABCONSOLE_FRAME_INTERVAL", 1 / 60),
            subprocess_grace_period=_env_float("LABCONSOLE_SUBPROCESS_GRACE", 1.0),
        )
        names = os.getenv("LABCONSOLE_FORBIDDEN_NAMES")
        if names is not None:
            config.forbidden_names = tuple(n.strip() for n in names.split(",") if n.strip())
        for key, value in overrides.items():
            setattr(config, key, value)
        return config

    def forbidden(self, catalogue: set[str] | frozenset[str] = frozenset()) -> frozenset[str]:
        """Resolve the full set of names evaluated code may not declare."""
        names = set(self.forbidden_names)
        if self.protect_catalogue:
            names |= set(catalogue)
        return frozenset(names)
