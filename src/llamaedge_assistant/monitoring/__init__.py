"""Log monitoring primitives for the LlamaEdge server assistant.

This package provides incremental log reading and cursor persistence for
following the API server log in real time.

Key Components:
    - models: Watch cursor, notification record and server log message
    - log_reader: Incremental log reading with rotation detection
    - position_tracker: Opt-in persistent cursor storage with file locking

Example:
    >>> from llamaedge_assistant.monitoring import IncrementalLogReader, WatchCursor
    >>> reader = IncrementalLogReader()
    >>> lines, cursor = reader.read_new_lines(WatchCursor.initial(), "/path/to/log")
"""

from __future__ import annotations

from .log_reader import IncrementalLogReader
from .models import LogMessage, NotificationRecord, RecordKind, WatchCursor
from .position_tracker import PositionTracker

__all__ = [
    "IncrementalLogReader",
    "PositionTracker",
    "WatchCursor",
    "NotificationRecord",
    "LogMessage",
    "RecordKind",
]
