"""
Tests for the client composition root and the CLI.
"""

from typing import Any

import pytest
from click.testing import CliRunner
from rich.console import Console

from mission_sync.board import BoardView
from mission_sync.cli import cli, render_board
from mission_sync.client import SyncClient
from mission_sync.sync.base import ComponentState
from mission_sync.utils.config import SyncConfig
from tests.utils.async_helpers import wait_for_condition
from tests.utils.mock_helpers import MockBoardApi, MockStreamServer
from tests.fixtures.board_fixtures import BoardFixtures


class FakeApi(MockBoardApi):
    """Board API fake that also serves the push stream."""

    def __init__(self, **collections: Any):
        super().__init__(**collections)
        self.stream_server = MockStreamServer()
        self.events_limit = 20
        self.closed = False

    def open_stream(self):
        return self.stream_server.open_stream()

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_api() -> FakeApi:
    board = BoardFixtures.create_board()
    return FakeApi(tasks=board["tasks"], agents=board["agents"])


class TestSyncClient:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, sync_config: SyncConfig, fake_api: FakeApi):
        client = SyncClient(sync_config, api=fake_api)
        await client.start()
        try:
            assert [c.name for c in client.components] == ["connectivity", "poller", "stream"]
            assert await wait_for_condition(lambda: len(client.store.snapshot("tasks")) == 4)
            assert await wait_for_condition(lambda: fake_api.stream_server.accepted == 1)
        finally:
            await client.stop()

        assert all(c.state is ComponentState.STOPPED for c in client.components)
        assert client.store.closed
        # Injected API is owned by the caller
        assert fake_api.closed is False

    @pytest.mark.asyncio
    async def test_disabled_components_are_skipped(self, sync_config: SyncConfig, fake_api: FakeApi):
        config = sync_config.model_copy(update={
            "stream": sync_config.stream.model_copy(update={"enabled": False}),
        })
        async with SyncClient(config, api=fake_api) as client:
            assert [c.name for c in client.components] == ["connectivity", "poller"]

        assert fake_api.stream_server.connections == 0

    @pytest.mark.asyncio
    async def test_refresh_polls_every_kind(self, sync_config: SyncConfig, fake_api: FakeApi):
        client = SyncClient(sync_config, api=fake_api)

        await client.refresh()

        assert len(client.store.snapshot("agents")) == 2
        assert sorted(k.value for k in fake_api.fetch_calls) == ["agents", "events", "tasks"]
        await client.stop()

    @pytest.mark.asyncio
    async def test_apply_config(self, sync_config: SyncConfig, fake_api: FakeApi):
        client = SyncClient(sync_config, api=fake_api)
        new = sync_config.model_copy(update={
            "server": sync_config.server.model_copy(update={"base_url": "http://elsewhere.test"}),
            "polling": sync_config.polling.model_copy(update={"intervals": {"tasks": 0.5}, "events_limit": 50}),
            "mutation": sync_config.mutation.model_copy(update={"timeout": 3.0}),
            "store": sync_config.store.model_copy(update={"event_history_cap": 25}),
        })

        client.apply_config(new)

        assert client.poller.interval_for("tasks") == 0.5
        assert client.poller.interval_for("agents") is None
        assert client.mutator.timeout == 3.0
        assert client.store.event_history_cap == 25
        assert fake_api.events_limit == 50
        assert client.config.server.base_url == "http://board.test"
        await client.stop()

    @pytest.mark.asyncio
    async def test_health(self, sync_config: SyncConfig, fake_api: FakeApi):
        async with SyncClient(sync_config, api=fake_api) as client:
            health = client.health()

        assert [c["component"] for c in health["components"]] == ["connectivity", "poller", "stream"]
        assert "tasks" in health["store"]


class TestCli:

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "mission-sync" in result.output

    def test_invalid_config_is_reported(self):
        result = CliRunner().invoke(cli, ["--base-url", "ftp://nowhere", "probe"])

        assert result.exit_code == 1
        assert "base_url" in result.output

    def test_render_board(self, seeded_store):
        console = Console(record=True, width=120)

        console.print(render_board(BoardView(seeded_store)))
        output = console.export_text()

        assert "OFFLINE" in output
        assert "Backlog (1)" in output
        assert "Task t-3" in output
