"""
Test suite for MonitorLoop

Covers the poll cycle, record emission, scheduling and shutdown, cursor
persistence and independent concurrent loops.
"""

import asyncio
import json
import socket
import threading
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer as AiohttpTestServer

from llamaedge_assistant.config import AssistantConfig
from llamaedge_assistant.errors import ConfigError, FatalIOError
from llamaedge_assistant.gaianet import NodeIdentity
from llamaedge_assistant.health import ServerProber
from llamaedge_assistant.monitor_loop import MonitorLoop, start
from llamaedge_assistant.monitoring.models import RecordKind, WatchCursor


def unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def read_records(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text().splitlines()]


def append(path: Path, text: str) -> None:
    with path.open("a") as f:
        f.write(text)


@pytest.fixture
async def server_port():
    """Port of a TCP server standing in for the API server socket."""

    async def handle(reader, writer):
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    yield server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()


@pytest.fixture
def gaianet_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "gaianet"
    directory.mkdir()
    return directory


@pytest.fixture
def server_log(tmp_path: Path) -> Path:
    log_file = tmp_path / "start-llamaedge.log"
    log_file.write_text("")
    return log_file


@pytest.fixture
def mock_prober():
    """Prober that never reports server info and always probes healthy."""
    prober = AsyncMock(spec=ServerProber)
    prober.probe.return_value = True
    prober.fetch_info.return_value = None
    return prober


@pytest.fixture
def make_config(tmp_path, server_log, gaianet_dir, server_port):
    """Build configs pointing at the local stand-in server."""

    def factory(**overrides):
        options = {
            "server_log_file": server_log,
            "gaianet_dir": gaianet_dir,
            "server_socket_addr": f"127.0.0.1:{server_port}",
            "interval": 0.05,
            "output_log": tmp_path / "assistant.log",
            "socket_timeout": 1,
            "probe_idle_secs": 0,
        }
        options.update(overrides)
        return AssistantConfig.from_options(**options)

    return factory


@pytest.fixture
def make_loop(make_config, mock_prober):
    def factory(config=None, **kwargs):
        kwargs.setdefault("prober", mock_prober)
        kwargs.setdefault("identity", NodeIdentity("device-1", "example.gaia.domains"))
        return MonitorLoop(config or make_config(), **kwargs)

    return factory


# ============================================================================
# poll_once
# ============================================================================


class TestPollOnce:
    @pytest.mark.asyncio
    async def test_new_lines_are_reported_once(self, make_loop, server_log):
        loop = make_loop()
        cursor = WatchCursor.initial()

        append(server_log, "line1\n")
        first = await loop.poll_once(cursor)
        append(server_log, "line2\n")
        second = await loop.poll_once(cursor)

        assert first.new_lines == ["line1"]
        assert second.new_lines == ["line2"]
        assert cursor.offset == len("line1\nline2\n")
        assert cursor.line_number == 2

    @pytest.mark.asyncio
    async def test_idle_polls_are_idempotent(self, make_loop, server_log):
        server_log.write_text("existing\n")
        loop = make_loop()
        cursor = WatchCursor.initial()

        await loop.poll_once(cursor)
        snapshot = WatchCursor(cursor.offset, cursor.line_number, cursor.checksum)
        second = await loop.poll_once(cursor)
        third = await loop.poll_once(cursor)

        assert second.new_lines == []
        assert third.new_lines == []
        assert second.kind == RecordKind.HEARTBEAT
        assert cursor == snapshot

    @pytest.mark.asyncio
    async def test_partial_line_waits_for_newline(self, make_loop, server_log):
        loop = make_loop()
        cursor = WatchCursor.initial()

        append(server_log, "abc")
        first = await loop.poll_once(cursor)
        append(server_log, "def\n")
        second = await loop.poll_once(cursor)

        assert first.new_lines == []
        assert second.new_lines == ["abcdef"]

    @pytest.mark.asyncio
    async def test_truncation_restarts_from_beginning(self, make_loop, server_log):
        loop = make_loop()
        cursor = WatchCursor.initial()

        server_log.write_text("first line\nsecond line\n")
        await loop.poll_once(cursor)
        server_log.write_text("c\n")
        record = await loop.poll_once(cursor)

        assert record.new_lines == ["c"]
        assert cursor.offset == 2

    @pytest.mark.asyncio
    async def test_reachable_server_is_healthy(self, make_loop):
        record = await make_loop().poll_once(WatchCursor.initial())

        assert record.reachable is True
        assert record.healthy is True
        assert record.errors == []

    @pytest.mark.asyncio
    async def test_unreachable_server(self, make_config, make_loop):
        config = make_config(server_socket_addr=f"127.0.0.1:{unused_port()}")
        record = await make_loop(config).poll_once(WatchCursor.initial())

        assert record.reachable is False
        assert record.healthy is False
        assert any("unreachable" in error for error in record.errors)

    @pytest.mark.asyncio
    async def test_error_status_marks_unhealthy(self, make_loop, server_log):
        loop = make_loop()
        cursor = WatchCursor.initial()

        append(
            server_log,
            "[2024-05-20 10:00:01.123] [error] llama_api_server in src/main.rs:42: "
            "response_status: 500\n",
        )
        record = await loop.poll_once(cursor)

        assert record.reachable is True
        assert record.healthy is False

    @pytest.mark.asyncio
    async def test_read_error_keeps_cursor(self, make_loop, server_log):
        server_log.write_text("line1\n")
        loop = make_loop()
        cursor = WatchCursor.initial()
        await loop.poll_once(cursor)
        before = WatchCursor(cursor.offset, cursor.line_number, cursor.checksum)

        server_log.unlink()
        record = await loop.poll_once(cursor)

        assert record.new_lines == []
        assert any("Failed to read log file" in error for error in record.errors)
        assert cursor == before

    @pytest.mark.asyncio
    async def test_record_carries_context(self, make_config, make_loop):
        config = make_config(system_prompt="sys", rag_prompt="rag")
        record = await make_loop(config).poll_once(WatchCursor.initial())

        assert record.system_prompt == "sys"
        assert record.rag_prompt == "rag"
        assert record.device_id == "device-1"
        assert record.domain == "example.gaia.domains"

    @pytest.mark.asyncio
    async def test_sequence_and_timestamps_strictly_increase(self, make_loop):
        loop = make_loop()
        cursor = WatchCursor.initial()

        records = [await loop.poll_once(cursor) for _ in range(5)]

        assert [r.sequence for r in records] == [1, 2, 3, 4, 5]
        timestamps = [r.timestamp for r in records]
        assert all(a < b for a, b in zip(timestamps, timestamps[1:]))


# ============================================================================
# emit
# ============================================================================


class TestEmit:
    @pytest.mark.asyncio
    async def test_emit_outside_loop_appends_record(self, make_loop, tmp_path):
        loop = make_loop()
        record = await loop.poll_once(WatchCursor.initial())
        target = tmp_path / "other" / "records.log"

        assert await loop.emit(record, target) is True
        assert await loop.emit(record, target) is True

        records = read_records(target)
        assert len(records) == 2
        assert records[0]["kind"] == "heartbeat"
        assert records[0]["sequence"] == 1

    @pytest.mark.asyncio
    async def test_emit_to_unwritable_path(self, make_loop, tmp_path):
        loop = make_loop()
        record = await loop.poll_once(WatchCursor.initial())

        with pytest.raises(FatalIOError):
            await loop.emit(record, tmp_path)


# ============================================================================
# start / stop
# ============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_one_heartbeat_per_cycle(self, make_loop, tmp_path):
        loop = make_loop()

        completed = await loop.start(max_cycles=3)

        records = read_records(tmp_path / "assistant.log")
        assert completed == 3
        assert [r["sequence"] for r in records] == [1, 2, 3]
        assert all(r["kind"] == "heartbeat" for r in records)
        timestamps = [datetime.fromisoformat(r["timestamp"]) for r in records]
        assert all(a < b for a, b in zip(timestamps, timestamps[1:]))
        assert loop.is_running() is False

    @pytest.mark.asyncio
    async def test_unreachable_server_still_emits_every_cycle(self, make_config, make_loop, tmp_path):
        config = make_config(server_socket_addr=f"127.0.0.1:{unused_port()}")

        await make_loop(config).start(max_cycles=4)

        records = read_records(tmp_path / "assistant.log")
        assert len(records) == 4
        assert all(r["reachable"] is False and r["healthy"] is False for r in records)

    @pytest.mark.asyncio
    async def test_activity_record_for_new_lines(self, make_loop, server_log, tmp_path):
        server_log.write_text("hello\n")

        await make_loop().start(max_cycles=2)

        records = read_records(tmp_path / "assistant.log")
        assert records[0]["kind"] == "activity"
        assert records[0]["new_lines"] == ["hello"]
        assert records[1]["kind"] == "heartbeat"

    @pytest.mark.asyncio
    async def test_stop_interrupts_wait(self, make_config, make_loop):
        loop = make_loop(make_config(interval=60))

        task = asyncio.create_task(loop.start())
        while loop.sequence < 1:
            await asyncio.sleep(0.01)
        loop.stop()

        completed = await asyncio.wait_for(task, timeout=2)
        assert completed == 1

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, make_config, make_loop):
        loop = make_loop(make_config(interval=60))
        task = asyncio.create_task(loop.start())
        while not loop.is_running():
            await asyncio.sleep(0.01)

        with pytest.raises(RuntimeError, match="already running"):
            await loop.start()

        loop.stop()
        await asyncio.wait_for(task, timeout=2)

    @pytest.mark.asyncio
    async def test_missing_server_log_fails_fast(self, make_loop, server_log, tmp_path):
        loop = make_loop()
        server_log.unlink()

        with pytest.raises(ConfigError, match="Invalid log file path"):
            await loop.start(max_cycles=1)
        assert not (tmp_path / "assistant.log").exists()

    @pytest.mark.asyncio
    async def test_unwritable_output_log(self, make_config, make_loop, tmp_path):
        loop = make_loop(make_config(output_log=tmp_path))

        with pytest.raises(FatalIOError):
            await loop.start(max_cycles=1)

    @pytest.mark.asyncio
    async def test_server_info_record_first(self, make_loop, mock_prober, tmp_path):
        mock_prober.fetch_info.return_value = {"api_server": {"type": "chat"}, "extras": {}}

        await make_loop().start(max_cycles=1)

        records = read_records(tmp_path / "assistant.log")
        assert records[0]["kind"] == "server_info"
        assert records[0]["server_info"]["api_server"] == {"type": "chat"}
        assert records[1]["kind"] == "heartbeat"

    @pytest.mark.asyncio
    async def test_health_error_is_recorded(self, make_loop, server_log, tmp_path, monkeypatch):
        server_log.write_text("line1\n")
        loop = make_loop()
        original_assess = loop.health.assess
        calls = 0

        async def flaky_assess(reachable, new_lines):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise ValueError("boom")
            return await original_assess(reachable, new_lines)

        monkeypatch.setattr(loop.health, "assess", flaky_assess)

        completed = await loop.start(max_cycles=3)

        records = read_records(tmp_path / "assistant.log")
        assert completed == 3
        assert len(records) == 3
        assert records[0]["new_lines"] == ["line1"]
        assert records[0]["healthy"] is False
        assert records[0]["errors"] == ["Health assessment failed: boom"]
        assert records[1]["errors"] == []

    @pytest.mark.asyncio
    async def test_undecodable_probe_body_keeps_records(self, make_config, make_loop, server_log, tmp_path):
        probes = []

        async def chat_completions(request):
            probes.append(request.path)
            return web.Response(status=500, body=b"\xff\xfe bad")

        app = web.Application()
        app.router.add_post("/v1/chat/completions", chat_completions)
        server = AiohttpTestServer(app, host="127.0.0.1")
        await server.start_server()
        try:
            server_log.write_text("plain line without status\n")
            config = make_config(
                server_socket_addr=f"127.0.0.1:{server.port}", probe_idle_secs=0.001
            )
            loop = make_loop(config, prober=ServerProber(config.server_url, timeout=5))

            completed = await loop.start(max_cycles=3)
        finally:
            await server.close()

        records = read_records(tmp_path / "assistant.log")
        assert completed == 3
        assert len(records) == 3
        assert records[0]["new_lines"] == ["plain line without status"]
        assert all(r["errors"] == [] for r in records)
        assert all(r["healthy"] is True for r in records)
        assert probes

    @pytest.mark.asyncio
    async def test_recent_lines_read_off_event_loop(self, make_loop, server_log):
        server_log.write_text("startup line\n")
        loop = make_loop()
        original_read_last = loop.reader.read_last_n_lines
        threads = []

        def tracking_read_last(path, n=10):
            threads.append(threading.current_thread())
            return original_read_last(path, n)

        loop.reader.read_last_n_lines = tracking_read_last

        await loop.start(max_cycles=1)

        assert len(threads) == 1
        assert threads[0] is not threading.main_thread()

    @pytest.mark.asyncio
    async def test_module_level_start(self, make_config, mock_prober, tmp_path):
        completed = await start(make_config(), max_cycles=2, prober=mock_prober)

        assert completed == 2
        assert len(read_records(tmp_path / "assistant.log")) == 2


class TestStatePersistence:
    @pytest.mark.asyncio
    async def test_resume_from_saved_cursor(self, make_config, make_loop, server_log, tmp_path):
        config = make_config(state_file=tmp_path / "state" / "cursors.json")
        server_log.write_text("line1\n")

        await make_loop(config).start(max_cycles=1)
        append(server_log, "line2\n")
        await make_loop(config).start(max_cycles=1)

        records = read_records(tmp_path / "assistant.log")
        assert [r["new_lines"] for r in records] == [["line1"], ["line2"]]

    @pytest.mark.asyncio
    async def test_without_state_file_reads_from_start(self, make_loop, server_log, tmp_path):
        server_log.write_text("line1\n")

        await make_loop().start(max_cycles=1)
        await make_loop().start(max_cycles=1)

        records = read_records(tmp_path / "assistant.log")
        assert [r["new_lines"] for r in records] == [["line1"], ["line1"]]


class TestConcurrentLoops:
    @pytest.mark.asyncio
    async def test_loops_do_not_share_state(self, make_config, make_loop, tmp_path):
        log_a = tmp_path / "a.log"
        log_b = tmp_path / "b.log"
        log_a.write_text("from a\n")
        log_b.write_text("from b1\nfrom b2\n")

        loop_a = make_loop(make_config(server_log_file=log_a, output_log=tmp_path / "out_a.log"))
        loop_b = make_loop(make_config(server_log_file=log_b, output_log=tmp_path / "out_b.log"))

        await asyncio.gather(loop_a.start(max_cycles=3), loop_b.start(max_cycles=2))

        records_a = read_records(tmp_path / "out_a.log")
        records_b = read_records(tmp_path / "out_b.log")
        assert [r["sequence"] for r in records_a] == [1, 2, 3]
        assert [r["sequence"] for r in records_b] == [1, 2]
        assert records_a[0]["new_lines"] == ["from a"]
        assert records_b[0]["new_lines"] == ["from b1", "from b2"]
