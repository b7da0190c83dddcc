"""Error taxonomy for the LlamaEdge server assistant.

Startup and output-sink failures are fatal and end the process. Everything
that can go wrong inside a single poll cycle is transient: it is captured
into the cycle's notification record and the loop keeps going.
"""


class AssistantError(Exception):
    """Base class for all assistant errors."""

    exit_code = 1


class ConfigError(AssistantError):
    """Invalid or missing configuration detected at startup."""

    exit_code = 2


class TransientIOError(AssistantError):
    """Recoverable per-cycle failure (log file unreadable, socket check failed)."""


class FatalIOError(AssistantError):
    """The notification output log cannot be opened or written."""
