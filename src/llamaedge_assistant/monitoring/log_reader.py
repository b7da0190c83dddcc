"""Incremental log reading with rotation detection.

This module reads the LlamaEdge API server log in complete lines, starting
from a byte-offset watch cursor. Truncation is detected by size and rotation
by an MD5 checksum over the already consumed head of the file; both reset
the cursor to the start of the file.
"""

from __future__ import annotations

import hashlib
import logging
from collections import deque
from pathlib import Path

from ..errors import TransientIOError
from .models import WatchCursor

logger = logging.getLogger(__name__)

# Number of leading bytes covered by the rotation checksum
CHECKSUM_BYTES = 4096


class IncrementalLogReader:
    """Reads a log file incrementally without re-reading consumed content.

    The reader itself is stateless: every call takes a cursor and returns a
    new one, so the caller owns the reading position. A trailing line
    without its newline terminator is left unconsumed until it is completed.
    """

    def read_new_lines(
        self,
        cursor: WatchCursor,
        log_file_path: str | Path,
    ) -> tuple[list[str], WatchCursor]:
        """Read complete lines appended since ``cursor``.

        Args:
            cursor: Position returned by the previous call.
            log_file_path: Path to the log file to read.

        Returns:
            Tuple of (new_lines, new_cursor). Lines are decoded as UTF-8 with
            replacement and have their ``\\n`` terminator stripped.

        Raises:
            TransientIOError: If the file cannot be opened or read. The caller
                keeps its old cursor and retries on the next cycle.
        """
        log_path = Path(log_file_path)

        try:
            with log_path.open("rb") as f:
                f.seek(0, 2)
                file_size = f.tell()

                start = cursor
                if cursor.offset > file_size:
                    logger.warning(
                        f"Log file {log_path} was truncated "
                        f"(offset {cursor.offset} > size {file_size})"
                    )
                    start = WatchCursor.initial()
                elif cursor.offset > 0:
                    f.seek(0)
                    head = f.read(min(CHECKSUM_BYTES, cursor.offset))
                    if _checksum(head) != cursor.checksum:
                        logger.info(
                            f"Log rotation detected for {log_path} "
                            f"(checksum changed from {cursor.checksum})"
                        )
                        start = WatchCursor.initial()

                f.seek(start.offset)
                chunk = f.read()

                # Keep the trailing partial line for the next cycle
                boundary = chunk.rfind(b"\n") + 1
                if boundary == 0:
                    return [], start

                consumed = chunk[:boundary]
                new_lines = [
                    line.decode("utf-8", errors="replace")
                    for line in consumed[:-1].split(b"\n")
                ]
                new_offset = start.offset + boundary

                if start.offset >= CHECKSUM_BYTES:
                    checksum = start.checksum
                else:
                    f.seek(0)
                    checksum = _checksum(f.read(min(CHECKSUM_BYTES, new_offset)))

        except OSError as e:
            raise TransientIOError(f"Failed to read log file {log_path}: {e}") from e

        new_cursor = WatchCursor(
            offset=new_offset,
            line_number=start.line_number + len(new_lines),
            checksum=checksum,
        )
        logger.debug(
            f"Read {len(new_lines)} new lines from {log_path} "
            f"(offset {start.offset} -> {new_offset})"
        )
        return new_lines, new_cursor

    def read_last_n_lines(
        self,
        log_file_path: str | Path,
        n: int = 10,
    ) -> list[str]:
        """Read last N lines from a log file.

        Utility for logging recent server context at startup; does not
        touch any cursor.

        Args:
            log_file_path: Path to log file.
            n: Number of lines to read from end.

        Returns:
            List of last N lines from the file, or an empty list on error.
        """
        log_path = Path(log_file_path)

        try:
            with log_path.open("r", encoding="utf-8", errors="replace") as f:
                if n <= 0:
                    return []
                return [line.rstrip("\n") for line in deque(f, maxlen=n)]
        except OSError as e:
            logger.error(f"Error reading last {n} lines from {log_path}: {e}")
            return []


def _checksum(head: bytes) -> str:
    if not head:
        return ""
    return hashlib.md5(head).hexdigest()
