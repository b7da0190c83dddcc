"""
Notification output log writer.

Appends one JSON object per line to the assistant's output log using
aiofiles. Each record is written with a single write followed by a flush,
so the log holds either a complete record or none of it.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import aiofiles

from .errors import FatalIOError
from .monitoring.models import NotificationRecord

logger = logging.getLogger(__name__)


class NotificationWriter:
    """
    Append-only JSON Lines sink for notification records.

    A write that exceeds its timeout keeps running in the background; the
    next write waits for it first, so records stay in order.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._file = None
        self._pending: asyncio.Task | None = None
        self.records_written = 0

    async def __aenter__(self) -> "NotificationWriter":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def is_open(self) -> bool:
        return self._file is not None

    async def open(self) -> None:
        """
        Open the output log for appending.

        Raises:
            FatalIOError: If the file (or its directory) cannot be created
        """
        if self._file is not None:
            return

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = await aiofiles.open(self.path, "a", encoding="utf-8")
        except OSError as e:
            raise FatalIOError(f"Failed to create log file {self.path}: {e}") from e

        logger.info(f"Notification log: {self.path}")

    async def write(
        self,
        record: NotificationRecord | dict[str, Any],
        timeout: float | None = None,
    ) -> bool:
        """
        Append one record to the output log.

        Args:
            record: Notification record or already serializable dict
            timeout: Seconds to wait for the write; None waits indefinitely

        Returns:
            True if the record was written within the timeout, False if it is
            still being written in the background

        Raises:
            FatalIOError: If the log is not open or a write fails
        """
        if self._file is None:
            raise FatalIOError(f"Notification log {self.path} is not open")

        await self._finish_pending()

        data = record.to_dict() if isinstance(record, NotificationRecord) else record
        line = json.dumps(data, ensure_ascii=False) + "\n"

        # asyncio.wait never cancels the write, even if this coroutine is cancelled
        task = asyncio.ensure_future(self._append(line))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            self._pending = task
            raise

        if not done:
            logger.warning(f"Writing to {self.path} is taking longer than {timeout}s, continuing")
            self._pending = task
            return False

        task.result()
        return True

    async def close(self) -> None:
        """Wait for any pending write, then close the file."""
        if self._file is None:
            return

        try:
            await self._finish_pending()
        finally:
            file, self._file = self._file, None
            try:
                await file.close()
            except OSError as e:
                raise FatalIOError(f"Failed to close log file {self.path}: {e}") from e

    async def _finish_pending(self) -> None:
        if self._pending is not None:
            pending, self._pending = self._pending, None
            await pending

    async def _append(self, line: str) -> None:
        try:
            await self._file.write(line)
            await self._file.flush()
        except OSError as e:
            raise FatalIOError(f"Failed to write to log file {self.path}: {e}") from e
        self.records_written += 1
