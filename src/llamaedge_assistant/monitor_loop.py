"""
MonitorLoop - Periodic log tailing and notification loop.

Every interval the loop checks whether the API server socket accepts
connections, reads the server log lines appended since the previous cycle,
derives server health and appends one notification record to the output
log. A record is emitted every cycle, even when nothing changed.
"""

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from .config import AssistantConfig
from .errors import ConfigError, FatalIOError, TransientIOError
from .gaianet import NodeIdentity, resolve_identity
from .health import HealthTracker, ServerProber, check_socket
from .monitoring.log_reader import IncrementalLogReader
from .monitoring.models import NotificationRecord, RecordKind, WatchCursor
from .monitoring.position_tracker import PositionTracker
from .notifier import NotificationWriter

logger = logging.getLogger(__name__)


class MonitorLoop:
    """
    Polls the LlamaEdge API server and its log at a fixed interval.

    All mutable state (cursor, cycle counter, health) lives on the instance,
    so several loops can run side by side in one process.
    """

    def __init__(
        self,
        config: AssistantConfig,
        *,
        reader: IncrementalLogReader | None = None,
        prober: ServerProber | None = None,
        position_tracker: PositionTracker | None = None,
        identity: NodeIdentity | None = None,
        fetch_server_info: bool = True,
    ):
        """
        Initialize the monitor loop.

        Args:
            config: Resolved assistant configuration
            reader: Log reader (default: a new IncrementalLogReader)
            prober: HTTP prober (default: one for the configured server)
            position_tracker: Cursor store (default: from config.state_file)
            identity: Node identity (default: resolved from gaianet_dir on start)
            fetch_server_info: Emit a one-time server info record on start
        """
        self.config = config
        self.reader = reader or IncrementalLogReader()
        self.prober = prober or ServerProber(config.server_url, timeout=config.interval)
        self.health = HealthTracker(self.prober, config.probe_idle_secs)
        if position_tracker is None and config.state_file is not None:
            position_tracker = PositionTracker(config.state_file)
        self.position_tracker = position_tracker
        self.identity = identity
        self.fetch_server_info = fetch_server_info

        self.cursor = WatchCursor.initial()
        self.sequence = 0
        self._last_timestamp: datetime | None = None

        self._writer = None
        self._stop_event = asyncio.Event()
        self._running = False

    # ============================================================================
    # Lifecycle Methods
    # ============================================================================

    async def start(self, max_cycles: int | None = None) -> int:
        """
        Run the loop until stopped or cancelled.

        Args:
            max_cycles: Stop after this many poll cycles (None runs forever)

        Returns:
            Number of poll cycles completed

        Raises:
            ConfigError: If the server log file is missing or the interval is not positive
            FatalIOError: If the output log cannot be opened or written
            RuntimeError: If the loop is already running
        """
        if self._running:
            raise RuntimeError("MonitorLoop is already running")

        self.validate()

        if self.identity is None:
            self.identity = resolve_identity(self.config.gaianet_dir)

        if self.position_tracker is not None:
            saved = self.position_tracker.load(self.config.server_log_file)
            if saved is not None:
                logger.info(f"Resuming {self.config.server_log_file} from offset {saved.offset}")
                self.cursor.update_from(saved)

        recent = await asyncio.to_thread(self.reader.read_last_n_lines, self.config.server_log_file, 5)
        for line in recent:
            logger.debug(f"Recent server log: {line}")

        self._stop_event.clear()
        cycles_before = self.sequence

        async with NotificationWriter(self.config.output_log) as writer:
            self._writer = writer
            self._running = True
            logger.info(
                f"MonitorLoop started (server: {self.config.server_socket_addr}, "
                f"interval: {self.config.interval}s, log: {self.config.server_log_file})"
            )
            try:
                if self.fetch_server_info:
                    await self._emit_server_info()
                await self._run_cycles(max_cycles)
            finally:
                self._running = False
                self._writer = None

        completed = self.sequence - cycles_before
        logger.info(f"MonitorLoop exited after {completed} cycles")
        return completed

    def stop(self) -> None:
        """Request shutdown; a loop waiting for its next cycle wakes up at once."""
        if not self._stop_event.is_set():
            logger.info("Stopping MonitorLoop...")
        self._stop_event.set()

    def is_running(self) -> bool:
        """Check if the loop is currently running."""
        return self._running

    def validate(self) -> None:
        """
        Fail fast on configuration the loop cannot run with.

        Raises:
            ConfigError: If the server log file does not exist or the interval is not positive
        """
        if not Path(self.config.server_log_file).is_file():
            raise ConfigError(f"Invalid log file path: {self.config.server_log_file}")
        if not self.config.interval > 0:
            raise ConfigError(f"Invalid interval: {self.config.interval} (must be greater than 0)")

    # ============================================================================
    # Core Monitoring Methods
    # ============================================================================

    async def _run_cycles(self, max_cycles: int | None) -> None:
        """
        Main loop: one poll and one emitted record per interval.

        Cycles are scheduled on the event loop's monotonic clock. A cycle
        that overruns its interval delays the next one instead of queueing
        extra cycles.
        """
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        completed = 0

        while not self._stop_event.is_set():
            try:
                record = await self.poll_once(self.cursor)
                await self.emit(record)
            except FatalIOError:
                raise
            except Exception as e:
                logger.critical(f"Critical error in monitor cycle: {e}")

            completed += 1
            if max_cycles is not None and completed >= max_cycles:
                break

            next_tick += self.config.interval
            delay = next_tick - loop.time()
            if delay < 0:
                logger.warning(f"Poll cycle overran the interval by {-delay:.2f}s")
                next_tick = loop.time()
                delay = 0

            await self._wait_for_stop(delay)

    async def poll_once(
        self, cursor: WatchCursor, config: AssistantConfig | None = None
    ) -> NotificationRecord:
        """
        Perform one poll cycle.

        The socket check and the log read run concurrently. ``cursor`` is
        advanced in place to the last complete line consumed; on a read
        error it is left unchanged so the next cycle retries.

        Args:
            cursor: Watch cursor into the server log
            config: Configuration to poll with (default: the loop's own)

        Returns:
            Notification record for this cycle
        """
        config = config or self.config
        self.sequence += 1

        (reachable, socket_error), (new_lines, read_error) = await asyncio.gather(
            check_socket(config.server_host, config.server_port, config.effective_socket_timeout),
            self._read_log(cursor, config.server_log_file),
        )

        errors = [error for error in (socket_error, read_error) if error]
        for error in errors:
            logger.warning(error)

        try:
            healthy = await self.health.assess(reachable, new_lines)
        except Exception as e:
            logger.warning(f"Health assessment failed: {e}")
            errors.append(f"Health assessment failed: {e}")
            healthy = False

        if self.position_tracker is not None and read_error is None:
            self.position_tracker.save(config.server_log_file, cursor)

        identity = self.identity or NodeIdentity()
        record = NotificationRecord(
            sequence=self.sequence,
            timestamp=self._next_timestamp(),
            reachable=reachable,
            healthy=healthy,
            new_lines=new_lines,
            errors=errors,
            system_prompt=config.system_prompt,
            rag_prompt=config.rag_prompt,
            device_id=identity.device_id,
            domain=identity.domain,
        )

        logger.info(
            f"Check health ({record.sequence}): reachable={reachable}, healthy={healthy}, "
            f"new lines={len(new_lines)}"
        )
        return record

    async def emit(
        self, record: NotificationRecord | dict[str, Any], output_log_path: str | Path | None = None
    ) -> bool:
        """
        Append a record to the output log.

        While the loop runs, records go through its open writer; a write
        slower than one interval continues in the background and the next
        emit waits for it. Outside the loop a writer is opened for the call.

        Returns:
            True if the record was fully written before returning

        Raises:
            FatalIOError: If the output log cannot be opened or written
        """
        path = Path(output_log_path) if output_log_path else self.config.output_log

        if self._writer is not None and self._writer.path == path:
            return await self._writer.write(record, timeout=self.config.interval)

        async with NotificationWriter(path) as writer:
            return await writer.write(record)

    # ============================================================================
    # Helpers
    # ============================================================================

    async def _read_log(self, cursor: WatchCursor, path: Path) -> tuple[list[str], str | None]:
        try:
            new_lines, new_cursor = await asyncio.to_thread(self.reader.read_new_lines, cursor, path)
        except TransientIOError as e:
            return [], str(e)

        cursor.update_from(new_cursor)
        return new_lines, None

    async def _emit_server_info(self) -> None:
        server_info = await self.prober.fetch_info(self.config.system_prompt, self.config.rag_prompt)
        if server_info is None:
            return

        await self.emit(
            {
                "kind": RecordKind.SERVER_INFO.value,
                "timestamp": self._next_timestamp().isoformat(),
                "server_info": server_info,
            }
        )

    async def _wait_for_stop(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except TimeoutError:
            pass

    def _next_timestamp(self) -> datetime:
        """Current UTC time, forced to be strictly increasing within this loop."""
        now = datetime.now(UTC)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now


async def start(config: AssistantConfig, max_cycles: int | None = None, **kwargs: Any) -> int:
    """Build a MonitorLoop for ``config`` and run it until stopped or cancelled."""
    return await MonitorLoop(config, **kwargs).start(max_cycles=max_cycles)
