"""Shared fixtures for monitoring tests."""

from pathlib import Path

import pytest

from llamaedge_assistant.monitoring.log_reader import IncrementalLogReader
from llamaedge_assistant.monitoring.models import WatchCursor
from llamaedge_assistant.monitoring.position_tracker import PositionTracker


@pytest.fixture
def temp_log_file(tmp_path: Path) -> Path:
    """Create temporary log file with initial content."""
    log_file = tmp_path / "test.log"
    log_file.write_text("Line 1\nLine 2\nLine 3\n")
    return log_file


@pytest.fixture
def empty_log_file(tmp_path: Path) -> Path:
    """Create empty log file."""
    log_file = tmp_path / "empty.log"
    log_file.write_text("")
    return log_file


@pytest.fixture
def reader() -> IncrementalLogReader:
    return IncrementalLogReader()


@pytest.fixture
def state_file(tmp_path: Path) -> Path:
    return tmp_path / "state" / "cursors.json"


@pytest.fixture
def position_tracker(state_file: Path) -> PositionTracker:
    """Create PositionTracker with a temporary state file."""
    return PositionTracker(state_file)


@pytest.fixture
def sample_cursor() -> WatchCursor:
    return WatchCursor(offset=1024, line_number=50, checksum="abc123def456789")
