"""
Push subscription client.

Holds one long-lived stream connection, decodes frames into messages, drops
duplicates and forwards every message to the store. Disconnects, server
closes and stalls lead to a reconnect with capped exponential backoff.
"""

import asyncio
import random
from collections import deque
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Deque, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from ..models.entities import EntityKind, Event, parse_entity
from ..streaming.frames import FrameDecoder, FrameKind, RecentIds, StreamMessage, decode_message
from ..sync.base import SyncComponent
from ..sync.connectivity import ConnectivityMonitor
from ..sync.store import MergeOutcome, StateStore
from ..utils.config import StreamConfig
from ..utils.errors import MalformedMessageError, TransientNetworkError, ValidationError
from .base import ReconnectBackoff, StreamState


StreamOpener = Callable[[], AsyncContextManager[AsyncIterator[str]]]

TASK_UPSERT_TYPES = frozenset({"task_created", "task_updated"})
TASK_DELETE_TYPES = frozenset({"task_deleted"})
AGENT_UPSERT_TYPES = frozenset({"agent_created", "agent_updated", "agent_status_changed"})
AGENT_DELETE_TYPES = frozenset({"agent_deleted"})
EVENT_TYPES = frozenset({"event_created"})

_FEED_FIELDS = ("message", "task_id", "agent_id", "task", "agent")

Applied = List[Tuple[EntityKind, MergeOutcome]]


def _entity_payload(payload: Dict[str, Any], key: str) -> Dict[str, Any]:
    nested = payload.get(key)
    if isinstance(nested, dict):
        return nested
    return payload


def _entity_id(payload: Dict[str, Any], key: str) -> Optional[str]:
    nested = payload.get(key)
    if isinstance(nested, dict):
        payload = nested
    value = payload.get("id") or payload.get(f"{key}_id")
    return str(value) if value is not None else None


def _removed(changed: bool) -> MergeOutcome:
    return MergeOutcome.REMOVED if changed else MergeOutcome.UNCHANGED


def feed_event_from_message(message: StreamMessage) -> Event:
    """
    Build the live-feed record for a message that is not an entity write.

    Raises:
        ValidationError: the payload carries ill-typed feed fields
    """
    payload = message.payload
    task_id = payload.get("task_id")
    if task_id is None and isinstance(payload.get("task"), dict):
        task_id = _entity_id(payload, "task")
    agent_id = payload.get("agent_id")
    if agent_id is None and isinstance(payload.get("agent"), dict):
        agent_id = _entity_id(payload, "agent")

    return parse_entity(EntityKind.EVENTS, {
        "id": message.id,
        "type": message.type,
        "message": str(payload.get("message") or ""),
        "task_id": task_id,
        "agent_id": agent_id,
        "created_at": message.created_at,
        "metadata": {k: v for k, v in payload.items() if k not in _FEED_FIELDS},
    })


def apply_message(store: StateStore, message: StreamMessage) -> Applied:
    """
    Route one decoded message into the store.

    Raises:
        ValidationError: the payload does not describe a valid entity
    """
    payload = message.payload
    kind_type = message.type

    if kind_type in TASK_UPSERT_TYPES:
        return [(EntityKind.TASKS, store.upsert(EntityKind.TASKS, _entity_payload(payload, "task")))]

    if kind_type in TASK_DELETE_TYPES:
        entity_id = _entity_id(payload, "task")
        if entity_id is None:
            raise ValidationError("payload.id", None, "deletion without an id")
        return [(EntityKind.TASKS, _removed(store.remove(EntityKind.TASKS, entity_id)))]

    if kind_type in AGENT_UPSERT_TYPES:
        return [(EntityKind.AGENTS, store.upsert(EntityKind.AGENTS, _entity_payload(payload, "agent")))]

    if kind_type in AGENT_DELETE_TYPES:
        entity_id = _entity_id(payload, "agent")
        if entity_id is None:
            raise ValidationError("payload.id", None, "deletion without an id")
        return [(EntityKind.AGENTS, _removed(store.remove(EntityKind.AGENTS, entity_id)))]

    if kind_type in EVENT_TYPES:
        return [(EntityKind.EVENTS, store.upsert(EntityKind.EVENTS, _entity_payload(payload, "event")))]

    applied: Applied = []
    if isinstance(payload.get("task"), dict):
        applied.append((EntityKind.TASKS, store.upsert(EntityKind.TASKS, payload["task"])))
    if isinstance(payload.get("agent"), dict):
        applied.append((EntityKind.AGENTS, store.upsert(EntityKind.AGENTS, payload["agent"])))
    applied.append((EntityKind.EVENTS, store.upsert(EntityKind.EVENTS, feed_event_from_message(message))))
    return applied


class EventStreamClient(SyncComponent):
    """
    Owner of the push subscription and its reconnect state machine.

    ``open_stream`` is an async context manager factory: entering it
    establishes the connection (raising ``TransientNetworkError`` on failure)
    and yields an async iterator of text lines.
    """

    def __init__(
        self,
        store: StateStore,
        open_stream: StreamOpener,
        config: Optional[StreamConfig] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
        rng: Optional[random.Random] = None,
    ):
        super().__init__(store, "stream")
        self.open_stream = open_stream
        self.config = config or StreamConfig()
        self.connectivity = connectivity
        self.backoff = ReconnectBackoff.from_config(self.config, rng)
        self.recent_ids = RecentIds(self.config.dedup_window)

        self.stream_state = StreamState.DISCONNECTED
        self.history: Deque[StreamState] = deque([StreamState.DISCONNECTED], maxlen=32)
        self.connected_at: Optional[datetime] = None
        self._stats = {
            "connects": 0,
            "reconnects": 0,
            "messages": 0,
            "duplicates": 0,
            "heartbeats": 0,
            "malformed": 0,
        }

    def update_config(self, config: StreamConfig) -> None:
        """New tuning takes effect from the next connection attempt."""
        self.config = config
        attempts = self.backoff.attempts
        self.backoff = ReconnectBackoff.from_config(config, self.backoff.rng)
        self.backoff.attempts = attempts
        self.recent_ids.capacity = config.dedup_window

    def _set_state(self, state: StreamState) -> None:
        if state == self.stream_state:
            return
        self.logger.debug("stream_state_changed", previous=self.stream_state.value, state=state.value)
        self.stream_state = state
        self.history.append(state)

    async def _start(self) -> None:
        self._spawn(self._run(), "subscription")

    async def _stop(self) -> None:
        self._set_state(StreamState.CLOSED)
        self.logger.info("stream_closed", **self._stats)

    async def _run(self) -> None:
        while self.is_running:
            self._set_state(StreamState.CONNECTING)
            try:
                await self._consume()
                reason = "server_closed"
            except TransientNetworkError as e:
                reason = str(e)
            except Exception as e:
                self.logger.error("stream_error", error=str(e), error_type=type(e).__name__, exc_info=True)
                reason = type(e).__name__

            if not self.is_running:
                return

            self._set_state(StreamState.RECONNECTING)
            if self.connectivity is not None:
                self.connectivity.observe(False, source="stream")

            delay = self.backoff.next_delay()
            self._stats["reconnects"] += 1
            self.logger.warning(
                "stream_reconnecting",
                reason=reason,
                attempt=self.backoff.attempts,
                delay=round(delay, 3),
            )
            await asyncio.sleep(delay)

    async def _consume(self) -> None:
        decoder = FrameDecoder()
        async with self.open_stream() as lines:
            self._on_connected()
            iterator = aiter(lines)
            while True:
                try:
                    line = await asyncio.wait_for(anext(iterator, None), timeout=self.config.silence_timeout)
                except asyncio.TimeoutError:
                    raise TransientNetworkError(
                        f"Stream silent for {self.config.silence_timeout}s"
                    ) from None
                if line is None:
                    break

                frame = decoder.feed(line)
                if frame is None or frame.kind is FrameKind.CONTROL:
                    continue
                if frame.kind is FrameKind.HEARTBEAT:
                    self._stats["heartbeats"] += 1
                    continue
                self.handle_text(frame.text)

            pending = decoder.flush()
            if pending is not None:
                self.handle_text(pending.text)

    def _on_connected(self) -> None:
        self._set_state(StreamState.CONNECTED)
        self.connected_at = datetime.now(timezone.utc)
        self._stats["connects"] += 1
        self.backoff.reset()
        self.logger.info("stream_connected", connects=self._stats["connects"])
        if self.connectivity is not None:
            self.connectivity.observe(True, source="stream")

    def handle_text(self, text: str) -> Optional[Applied]:
        """
        Decode and apply one data frame.

        Returns:
            The merge outcomes, or None if the frame was a heartbeat, a
            duplicate or malformed
        """
        try:
            message = decode_message(text)
        except MalformedMessageError as e:
            self._stats["malformed"] += 1
            self.logger.warning("malformed_message_dropped", reason=e.reason, raw=e.raw)
            return None

        if message is None:
            self._stats["heartbeats"] += 1
            return None

        if self.recent_ids.seen(message.id):
            self._stats["duplicates"] += 1
            self.logger.debug("duplicate_message_dropped", message_id=message.id, type=message.type)
            return None

        self._stats["messages"] += 1
        try:
            applied = apply_message(self.store, message)
        except (ValidationError, PydanticValidationError) as e:
            self._stats["malformed"] += 1
            self.logger.warning(
                "invalid_payload_dropped",
                message_id=message.id,
                type=message.type,
                error=str(e),
            )
            return None

        self.logger.debug(
            "message_applied",
            message_id=message.id,
            type=message.type,
            outcomes=[outcome.value for _, outcome in applied],
        )
        return applied

    def _health(self) -> Dict[str, Any]:
        return {
            "stream_state": self.stream_state.value,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "backoff_attempts": self.backoff.attempts,
            **self._stats,
        }


__all__ = [
    'EventStreamClient',
    'StreamOpener',
    'apply_message',
    'feed_event_from_message',
]
