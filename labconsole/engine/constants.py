"""Constants shared across engine components.

Centralizes the reserved names the rewriter, the execution context and the
workspace differ must agree on.
"""

# Result/input history slots present in every fresh context. These are part of
# the baseline and never reported as user variables.
ENGINE_INTERNALS = {
    "_",  # Last result
    "__",  # Second to last result
    "___",  # Third to last result
    "_i",  # Last input
    "_ii",  # Second to last input
    "_iii",  # Third to last input
    "Out",  # Output history
    "In",  # Input history
    "_exception",  # Last exception
}

# Handles injected into every context for rewritten code
CONTEXT_HANDLE = "__ctx__"
RUNTIME_HANDLE = "__rt__"
EVALUATE_FUNCTION = "__evaluate__"
PENDING_RESULT = "__pending__"

# Names evaluated code may never declare, regardless of configuration
RESERVED_NAMES = frozenset({CONTEXT_HANDLE, RUNTIME_HANDLE, EVALUATE_FUNCTION})

# Application globals protected by default
DEFAULT_FORBIDDEN_NAMES = ("config", "language", "app_path", "packed", "lab")

# Prefix for temporaries bound by except/match rewrites
TEMPORARY_PREFIX = "__tmp_"

# Source name used for typed commands
COMMAND_WINDOW = "command_window"
