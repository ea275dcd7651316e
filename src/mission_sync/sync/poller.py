"""
Periodic full-collection reconciliation.

Each resource kind gets its own loop on its own interval. A tick fetches the
complete collection and hands it to ``StateStore.reconcile``; a failed fetch
is logged and skipped, and the next tick retries.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from ..models.entities import EntityKind, coerce_kind
from ..utils.config import PollingConfig
from ..utils.errors import NetworkError
from .base import SyncComponent
from .store import ReconcileReport, StateStore


Fetcher = Callable[[EntityKind], Awaitable[List[Mapping[str, Any]]]]


class PollReconciler(SyncComponent):
    """Safety net that keeps the store converging when the stream misses events."""

    def __init__(self, store: StateStore, fetch: Fetcher, config: Optional[PollingConfig] = None):
        super().__init__(store, "poller")
        self.fetch = fetch
        self.config = config or PollingConfig()

        self._loops: Dict[EntityKind, asyncio.Task] = {}
        self._failures: Dict[EntityKind, int] = {}
        self._last_success: Dict[EntityKind, datetime] = {}

    def interval_for(self, kind: Union[EntityKind, str]) -> Optional[float]:
        """Current interval for a kind, or None if the kind is not polled."""
        return self.config.intervals.get(coerce_kind(kind).value)

    async def _start(self) -> None:
        self._spawn_missing_loops()

    async def _stop(self) -> None:
        self._loops.clear()

    def update_config(self, config: PollingConfig) -> None:
        """Apply new intervals; loops pick them up on their next tick."""
        self.config = config
        if self.is_running:
            self._spawn_missing_loops()

    def _spawn_missing_loops(self) -> None:
        for name in self.config.intervals:
            kind = coerce_kind(name)
            loop = self._loops.get(kind)
            if loop is None or loop.done():
                self._loops[kind] = self._spawn(self._poll_loop(kind), f"poll-{kind.value}")

    async def _poll_loop(self, kind: EntityKind) -> None:
        self.logger.debug("poll_loop_started", kind=kind.value, interval=self.interval_for(kind))
        while self.is_running:
            interval = self.interval_for(kind)
            if interval is None:
                self.logger.info("poll_loop_retired", kind=kind.value)
                return
            await self.poll_once(kind)
            await asyncio.sleep(interval)

    async def poll_once(self, kind: Union[EntityKind, str]) -> Optional[ReconcileReport]:
        """
        Fetch one collection and reconcile it into the store.

        The store sequence is captured before the fetch, so entities written
        by the stream or a mutation while the request was in flight are not
        deleted for being absent from the (older) response.

        Returns:
            The reconcile report, or None if the fetch failed
        """
        kind = coerce_kind(kind)
        as_of = self.store.sequence

        try:
            entities = await self.fetch(kind)
        except NetworkError as e:
            self._failures[kind] = self._failures.get(kind, 0) + 1
            self.logger.warning(
                "poll_failed",
                kind=kind.value,
                error=str(e),
                consecutive_failures=self._failures[kind],
            )
            return None
        except Exception as e:
            self._failures[kind] = self._failures.get(kind, 0) + 1
            self.logger.error(
                "poll_error",
                kind=kind.value,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return None

        if not isinstance(entities, list):
            self._failures[kind] = self._failures.get(kind, 0) + 1
            self.logger.warning("poll_unexpected_payload", kind=kind.value, payload_type=type(entities).__name__)
            return None

        self._failures[kind] = 0
        self._last_success[kind] = datetime.now(timezone.utc)
        return self.store.reconcile(kind, entities, as_of=as_of)

    def _health(self) -> Dict[str, Any]:
        return {
            "kinds": {
                kind.value: {
                    "interval": self.interval_for(kind),
                    "consecutive_failures": self._failures.get(kind, 0),
                    "last_success": (
                        self._last_success[kind].isoformat() if kind in self._last_success else None
                    ),
                }
                for kind in self._loops
            }
        }


__all__ = ['PollReconciler', 'Fetcher']
