"""
Mission Sync client.

Composition root: builds one store and hands it to every component, starts
and stops them together, and applies hot-reloaded tuning.
"""

import asyncio
from typing import Any, Dict, List, Optional, Union

from .board import BoardView
from .models.entities import EntityKind, TaskStatus
from .sync.base import SyncComponent
from .sync.connectivity import ConnectivityMonitor
from .sync.optimistic import MutationResult, OptimisticMutator
from .sync.poller import PollReconciler
from .sync.store import StateStore
from .transport.http import BoardApiClient
from .transport.stream import EventStreamClient
from .utils.config import ConfigLoader, SyncConfig
from .utils.logging import get_logger

logger = get_logger("mission-sync.client")


class SyncClient:
    """
    Keeps a local mirror of the board in sync with the server.

    Usage::

        async with SyncClient(config) as client:
            client.store.subscribe(render)
            await client.board.move_task("t-1", "review")
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        api: Optional[BoardApiClient] = None,
        store: Optional[StateStore] = None,
    ):
        self.config = config or SyncConfig()
        self.store = store or StateStore(event_history_cap=self.config.store.event_history_cap)

        self._owns_api = api is None
        self.api = api or BoardApiClient(self.config.server, events_limit=self.config.polling.events_limit)

        self.connectivity = ConnectivityMonitor(self.store, self.api.probe, self.config.connectivity)
        self.poller = PollReconciler(self.store, self.api.fetch_collection, self.config.polling)
        self.stream = EventStreamClient(
            self.store,
            self.api.open_stream,
            self.config.stream,
            connectivity=self.connectivity,
        )
        self.mutator = OptimisticMutator(self.store, timeout=self.config.mutation.timeout)
        self.board = BoardView(self.store, self.mutator, self.api.patch_entity)

        self._started: List[SyncComponent] = []
        self._loader: Optional[ConfigLoader] = None

    @property
    def components(self) -> List[SyncComponent]:
        """Enabled components in start order."""
        components: List[SyncComponent] = []
        if self.config.connectivity.enabled:
            components.append(self.connectivity)
        if self.config.polling.enabled:
            components.append(self.poller)
        if self.config.stream.enabled:
            components.append(self.stream)
        return components

    @property
    def running(self) -> bool:
        return bool(self._started)

    async def start(self) -> None:
        """Start all enabled components."""
        if self._started:
            return

        logger.info(
            "starting_sync_client",
            base_url=self.config.server.base_url,
            workspace_id=self.config.server.workspace_id,
        )
        try:
            for component in self.components:
                await component.start()
                self._started.append(component)
        except Exception:
            await self.stop()
            raise

        logger.info("sync_client_started", components=[c.name for c in self._started])

    async def stop(self) -> None:
        """Cancel every background task, close the store and the HTTP session."""
        started, self._started = self._started, []
        for component in reversed(started):
            await component.stop()

        if self._loader is not None:
            self._loader.shutdown()
            self._loader = None

        self.store.close()
        if self._owns_api:
            await self.api.close()
        logger.info("sync_client_stopped")

    async def __aenter__(self) -> "SyncClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def refresh(self) -> None:
        """Run one poll of every configured kind now."""
        kinds = [EntityKind(name) for name in self.config.polling.intervals]
        await asyncio.gather(*(self.poller.poll_once(kind) for kind in kinds))

    async def move_task(self, task_id: str, status: Union[TaskStatus, str]) -> Optional[MutationResult]:
        return await self.board.move_task(task_id, status)

    def watch_config(self, loader: ConfigLoader) -> None:
        """Apply configuration changes from ``loader`` while running."""
        self._loader = loader
        loader.register_callback(self.apply_config)
        loader.watch(asyncio.get_running_loop())

    def apply_config(self, config: SyncConfig) -> None:
        """
        Apply new tuning values to running components.

        Intervals, thresholds, timeouts and backoff take effect on the next
        tick or connection attempt. Server address changes need a restart.
        """
        if config.server != self.config.server:
            logger.warning("server_config_change_requires_restart")

        self.poller.update_config(config.polling)
        self.connectivity.update_config(config.connectivity)
        self.stream.update_config(config.stream)
        self.mutator.timeout = config.mutation.timeout
        self.store.event_history_cap = config.store.event_history_cap
        self.api.events_limit = config.polling.events_limit

        self.config = config.model_copy(update={"server": self.config.server})
        logger.info("configuration_applied")

    def health(self) -> Dict[str, Any]:
        return {
            "store": self.store.stats(),
            "components": [c.health() for c in self.components],
        }


__all__ = ['SyncClient']
