"""Data models for the server monitoring loop.

This module defines the watch cursor used for incremental log consumption,
the notification record produced on every poll cycle, and the parsed form
of a LlamaEdge API server log line.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# [2024-05-20 10:00:01.123] [info] llama_api_server in src/main.rs:42: message
_LOG_LINE_PATTERN = re.compile(
    r"^\[(?P<timestamp>[^\]]+)\] \[(?P<level>[^\]]+)\] (?P<service>\S+) "
    r"in (?P<file>[^:]+):(?P<line>\d+): (?P<message>.*)"
)
_LOG_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


class RecordKind(str, Enum):
    """Kind of notification record written to the output log.

    Attributes:
        HEARTBEAT: No new log lines this cycle; proves the assistant is alive.
        ACTIVITY: New log lines were observed this cycle.
        SERVER_INFO: One-time record describing the API server.
    """

    HEARTBEAT = "heartbeat"
    ACTIVITY = "activity"
    SERVER_INFO = "server_info"


@dataclass
class WatchCursor:
    """Reading position inside the monitored server log.

    The offset always sits on a complete-line boundary. The checksum covers
    the consumed head of the file (at most 4 KiB), which never changes
    while the file is only appended to, so a mismatch signals rotation.

    Attributes:
        offset: Byte offset of the first unconsumed byte.
        line_number: Number of complete lines consumed so far.
        checksum: MD5 of the first ``min(4096, offset)`` bytes, "" at offset 0.
    """

    offset: int = 0
    line_number: int = 0
    checksum: str = ""

    @classmethod
    def initial(cls) -> WatchCursor:
        return cls()

    def update_from(self, other: WatchCursor) -> None:
        """Move this cursor in place to the position of ``other``."""
        self.offset = other.offset
        self.line_number = other.line_number
        self.checksum = other.checksum


@dataclass
class NotificationRecord:
    """One poll cycle's combined observation.

    Attributes:
        sequence: 1-based cycle number within the owning loop.
        timestamp: UTC time the record was assembled.
        reachable: Whether the server socket accepted a connection.
        healthy: Derived server health (socket, response status, idle probe).
        new_lines: Complete log lines appended since the previous cycle.
        errors: Transient failures encountered during the cycle.
        system_prompt: Static system prompt context.
        rag_prompt: Static RAG prompt context.
        device_id: Node device id from the gaianet directory, if known.
        domain: Node domain from the gaianet directory, if known.
    """

    sequence: int
    timestamp: datetime
    reachable: bool
    healthy: bool
    new_lines: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    system_prompt: str = ""
    rag_prompt: str = ""
    device_id: str | None = None
    domain: str | None = None

    @property
    def kind(self) -> RecordKind:
        return RecordKind.ACTIVITY if self.new_lines else RecordKind.HEARTBEAT

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class LogMessage:
    """A single parsed LlamaEdge API server log line."""

    timestamp: datetime
    level: str
    service: str
    file: str
    line: int
    message: str

    @classmethod
    def parse(cls, text: str) -> LogMessage | None:
        """Parse a raw log line, returning None if it is not a server log message."""
        match = _LOG_LINE_PATTERN.match(text)
        if match is None:
            return None

        try:
            timestamp = datetime.strptime(match["timestamp"], _LOG_TIMESTAMP_FORMAT)
        except ValueError:
            return None

        return cls(
            timestamp=timestamp,
            level=match["level"],
            service=match["service"],
            file=match["file"],
            line=int(match["line"]),
            message=match["message"],
        )

    @property
    def response_status(self) -> str | None:
        """Status code of a ``response_status: <code>`` message, else None."""
        if not self.message.startswith("response_status:"):
            return None
        parts = self.message.split()
        return parts[-1] if len(parts) > 1 else None
