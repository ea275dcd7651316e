"""
Pytest configuration and shared fixtures for Mission Sync tests.
"""

import pytest
import random
import tempfile
import shutil
from pathlib import Path
from typing import Generator

# Add src to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mission_sync.sync.store import StateStore
from mission_sync.utils.config import SyncConfig
from mission_sync.utils.logging import debug_buffer
from tests.fixtures.board_fixtures import BoardFixtures
from tests.utils.mock_helpers import MockBoardApi, MockStreamServer


# Test configuration: fast timers so loops tick within a test
TEST_CONFIG = {
    "server": {
        "base_url": "http://board.test",
        "workspace_id": "default",
        "request_timeout": 2.0,
    },
    "stream": {
        "silence_timeout": 0.5,
        "backoff_initial": 0.01,
        "backoff_max": 0.05,
        "backoff_jitter": 0.0,
    },
    "polling": {
        "intervals": {"tasks": 0.05, "agents": 0.05, "events": 0.05},
        "events_limit": 20,
    },
    "connectivity": {
        "online_interval": 0.05,
        "offline_interval": 0.02,
        "probe_timeout": 0.2,
    },
    "mutation": {
        "timeout": 1.0,
    },
    "logging": {
        "level": "DEBUG",
    },
}


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def sync_config() -> SyncConfig:
    """Configuration with fast timers."""
    return SyncConfig(**TEST_CONFIG)


@pytest.fixture
def store() -> StateStore:
    """An empty store."""
    return StateStore(event_history_cap=10)


@pytest.fixture
def seeded_store() -> StateStore:
    """A store holding the fixture board."""
    store = StateStore(event_history_cap=10)
    board = BoardFixtures.create_board()
    store.reconcile("tasks", board["tasks"])
    store.reconcile("agents", board["agents"])
    return store


@pytest.fixture
def board_api() -> MockBoardApi:
    """API fake serving the fixture board."""
    board = BoardFixtures.create_board()
    return MockBoardApi(tasks=board["tasks"], agents=board["agents"])


@pytest.fixture
def stream_server() -> MockStreamServer:
    return MockStreamServer()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


@pytest.fixture(autouse=True)
def reset_debug_buffer() -> Generator[None, None, None]:
    """Keep the module-level debug buffer isolated between tests."""
    enabled = debug_buffer.enabled
    debug_buffer.clear()
    yield
    debug_buffer.configure(enabled)
    debug_buffer.clear()


# Markers
def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "integration: tests against a local aiohttp server")
