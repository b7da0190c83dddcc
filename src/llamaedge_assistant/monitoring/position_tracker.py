"""Position tracking for resuming log reads across restarts.

This module provides opt-in persistent storage of watch cursors using JSON
with file locking, so that a restarted assistant continues from the last
consumed line instead of re-reading the whole server log.
"""

from __future__ import annotations

import fcntl
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

from .models import WatchCursor

logger = logging.getLogger(__name__)


class PositionTracker:
    """Manages persistent storage of watch cursors.

    Cursors are keyed by the resolved path of the monitored log file. The
    state file is read under a shared lock and replaced atomically under an
    exclusive lock, so concurrent assistants never observe a partial file.

    Attributes:
        state_file: Path to the JSON file storing all cursors.
        _cursors: In-memory cache of cursors keyed by log file path.
    """

    def __init__(self, state_file: str | Path):
        """Initialize position tracker.

        Args:
            state_file: JSON file holding saved cursors; parent directories
                are created if missing.
        """
        self.state_file = Path(state_file)
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self._cursors: dict[str, WatchCursor] = {}

        self._load_cursors()

    @staticmethod
    def _key(log_file: str | Path) -> str:
        return str(Path(log_file).resolve())

    def _load_cursors(self) -> None:
        """Load cursors from disk into memory with file locking.

        If the file doesn't exist or is corrupted, starts with an empty cache.
        """
        if not self.state_file.exists():
            logger.info("Cursor state file does not exist, starting fresh")
            return

        try:
            with self.state_file.open("r") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    data = json.load(f)
                    for key, cursor_dict in data.items():
                        self._cursors[key] = WatchCursor(
                            offset=int(cursor_dict["offset"]),
                            line_number=int(cursor_dict["line_number"]),
                            checksum=str(cursor_dict["checksum"]),
                        )
                    logger.info(f"Loaded {len(self._cursors)} cursors from {self.state_file}")
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse cursor state file: {e}, starting fresh")
            self._cursors = {}
        except (OSError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.error(f"Error loading cursors: {e}, starting fresh")
            self._cursors = {}

    def _save_cursors(self) -> None:
        """Save cursors to disk through a temporary file and atomic rename.

        Persistence is best-effort: a failed save is logged and the in-memory
        cursor stays authoritative.
        """
        try:
            data: dict[str, Any] = {
                key: {
                    "offset": cursor.offset,
                    "line_number": cursor.line_number,
                    "checksum": cursor.checksum,
                }
                for key, cursor in self._cursors.items()
            }

            temp_file = self.state_file.with_suffix(".tmp")
            with temp_file.open("w") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                try:
                    json.dump(data, f, indent=2)
                    f.flush()
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)

            temp_file.replace(self.state_file)
            logger.debug(f"Saved {len(self._cursors)} cursors to disk")

        except OSError as e:
            logger.error(f"Failed to save cursors: {e}")

    def load(self, log_file: str | Path) -> WatchCursor | None:
        """Get the saved cursor for a log file, or None if none exists yet."""
        return self._cursors.get(self._key(log_file))

    def save(self, log_file: str | Path, cursor: WatchCursor) -> None:
        """Store the cursor for a log file and persist it.

        Unchanged cursors are not rewritten to disk.
        """
        key = self._key(log_file)
        if self._cursors.get(key) == cursor:
            return
        self._cursors[key] = replace(cursor)
        self._save_cursors()
        logger.debug(f"Updated cursor for {key} to offset {cursor.offset}, line {cursor.line_number}")

    def remove(self, log_file: str | Path) -> None:
        """Forget the cursor for a log file."""
        key = self._key(log_file)
        if key in self._cursors:
            del self._cursors[key]
            self._save_cursors()
            logger.info(f"Removed cursor for {key}")

    def clear(self) -> None:
        """Remove all cursors from memory and disk."""
        self._cursors = {}
        self._save_cursors()
        logger.warning("Cleared all cursor state")
