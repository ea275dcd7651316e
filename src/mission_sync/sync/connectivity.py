"""
Gateway reachability tracking.

The monitor probes the status endpoint on an adaptive interval (slow while
online, fast while offline) and also accepts observations from the push
stream. Flips of the online flag are debounced: a single failed probe does not
take the client offline and a single success does not bring it back.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from ..utils.config import ConnectivityConfig
from ..utils.errors import NetworkError
from .base import SyncComponent, sleep_or_wake
from .store import StateStore


Probe = Callable[[], Awaitable[bool]]


class ConnectivityMonitor(SyncComponent):
    """Debounced owner of the store's connectivity flag."""

    def __init__(self, store: StateStore, probe: Probe, config: Optional[ConnectivityConfig] = None):
        super().__init__(store, "connectivity")
        self.probe = probe
        self.config = config or ConnectivityConfig()

        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._settled = False
        self._probes = 0
        self._flips = 0
        self._wake: Optional[asyncio.Event] = None

    @property
    def online(self) -> bool:
        return self.store.connection.online

    @property
    def current_interval(self) -> float:
        if self.online:
            return self.config.online_interval
        return self.config.offline_interval

    def update_config(self, config: ConnectivityConfig) -> None:
        self.config = config
        if self._wake is not None:
            self._wake.set()

    async def _start(self) -> None:
        self._wake = asyncio.Event()
        self._spawn(self._probe_loop(), "probe")

    async def _probe_loop(self) -> None:
        while self.is_running:
            await self.probe_once()
            self._wake.clear()
            await sleep_or_wake(self.current_interval, self._wake)

    async def probe_once(self) -> bool:
        """Run one probe bounded by the probe timeout and record the result."""
        self._probes += 1
        try:
            reachable = bool(await asyncio.wait_for(self.probe(), timeout=self.config.probe_timeout))
        except asyncio.TimeoutError:
            self.logger.debug("probe_timed_out", timeout=self.config.probe_timeout)
            reachable = False
        except NetworkError as e:
            self.logger.debug("probe_failed", error=str(e))
            reachable = False
        except Exception as e:
            self.logger.warning("probe_error", error=str(e), error_type=type(e).__name__)
            reachable = False

        self.observe(reachable, source="probe")
        return reachable

    def observe(self, success: bool, source: str = "probe") -> bool:
        """
        Record one reachability observation.

        The first observation settles the initial state directly. After that
        the flag only flips once ``failure_threshold`` consecutive failures (or
        ``success_threshold`` consecutive successes) have been seen.

        Returns:
            True if the online flag flipped
        """
        now = datetime.now(timezone.utc)

        if success:
            self._consecutive_successes += 1
            self._consecutive_failures = 0
        else:
            self._consecutive_failures += 1
            self._consecutive_successes = 0

        if not self._settled:
            self._settled = True
            target = success
        elif self.online and self._consecutive_failures >= self.config.failure_threshold:
            target = False
        elif not self.online and self._consecutive_successes >= self.config.success_threshold:
            target = True
        else:
            target = self.online

        flipped = self.store.set_connection(target, now)
        if flipped:
            self._flips += 1
            self.logger.info("connectivity_changed", online=target, source=source)
            if self._wake is not None:
                self._wake.set()
        return flipped

    def _health(self) -> Dict[str, Any]:
        return {
            "online": self.online,
            "probes": self._probes,
            "flips": self._flips,
            "consecutive_failures": self._consecutive_failures,
            "interval": self.current_interval,
        }


__all__ = ['ConnectivityMonitor', 'Probe']
