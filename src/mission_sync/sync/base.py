"""
Base class for the active sync components.

This module provides the lifecycle shared by the stream client, the poll
reconciler and the connectivity monitor:
- Start/stop state machine
- Ownership of background tasks
- Cancellation of every owned task at teardown
"""

from abc import ABC, abstractmethod
from typing import Any, Coroutine, Dict, List, Optional
import asyncio
from enum import Enum

from ..utils.errors import SyncError
from ..utils.logging import get_logger
from .store import StateStore


class ComponentState(Enum):
    """Component lifecycle states."""
    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class ComponentError(SyncError):
    """Raised on invalid lifecycle transitions."""
    code = "COMPONENT_ERROR"
    default_message = "Invalid component lifecycle transition"


class SyncComponent(ABC):
    """
    Abstract base for components that feed the store from background tasks.

    Every timer and subscription is an ``asyncio.Task`` created through
    ``_spawn`` so that ``stop`` can cancel all of them together and nothing
    writes into a store that has been torn down.
    """

    def __init__(self, store: StateStore, name: str):
        self.store = store
        self.name = name
        self.logger = get_logger(f"mission-sync.{name}")
        self.state = ComponentState.CREATED
        self._tasks: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return self.state == ComponentState.RUNNING

    async def start(self) -> None:
        """Start background activity."""
        if self.is_running:
            raise ComponentError(f"{self.name} already running")

        self.logger.info("starting_component")
        self.state = ComponentState.RUNNING
        try:
            await self._start()
        except Exception:
            await self.stop()
            raise

    async def stop(self) -> None:
        """Cancel every owned task and wait for them to finish."""
        if self.state in (ComponentState.STOPPING, ComponentState.STOPPED):
            return

        self.state = ComponentState.STOPPING
        self.logger.info("stopping_component", tasks=len(self._tasks))

        tasks, self._tasks = self._tasks, []
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._stop()

        self.state = ComponentState.STOPPED
        self.logger.info("component_stopped")

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        """Create an owned background task."""
        task = asyncio.create_task(coro, name=f"{self.name}:{name}")
        self._tasks.append(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        if task in self._tasks:
            self._tasks.remove(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(
                "background_task_failed",
                task=task.get_name(),
                error=str(error),
                error_type=type(error).__name__,
            )

    def health(self) -> Dict[str, Any]:
        """Lifecycle and task summary."""
        return {
            "component": self.name,
            "state": self.state.value,
            "tasks": len(self._tasks),
            **self._health(),
        }

    @abstractmethod
    async def _start(self) -> None:
        """Component-specific start logic."""
        pass

    async def _stop(self) -> None:
        """Component-specific stop logic."""
        pass

    def _health(self) -> Dict[str, Any]:
        return {}


async def sleep_or_wake(delay: float, wake: Optional[asyncio.Event]) -> bool:
    """Sleep for ``delay``; return True early if ``wake`` is set."""
    if wake is None:
        await asyncio.sleep(delay)
        return False
    try:
        await asyncio.wait_for(wake.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False


__all__ = [
    'SyncComponent',
    'ComponentState',
    'ComponentError',
    'sleep_or_wake',
]
