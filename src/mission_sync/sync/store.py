"""
Canonical in-memory mirror of the board.

The store is the single point of serialization and truth. The push stream,
the poll loops and optimistic mutations only propose merges through its
methods; the presentation layer reads snapshots and subscribes to changes.

Every mutating method is synchronous and never awaits, so under the
single-threaded asyncio model each call is atomic: no reader can observe a
merge half applied. Change notifications are delivered after the outermost
operation completes.
"""

import asyncio
import bisect
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from ..models.entities import (
    BoardEntity,
    ConnectionState,
    Entity,
    EntityKind,
    Event,
    Revision,
    apply_patch,
    coerce_kind,
    compare_revisions,
    parse_entity,
)
from ..utils.errors import (
    ConflictError,
    EntityNotFoundError,
    UnknownTokenError,
    ValidationError,
)
from ..utils.logging import get_logger


logger = get_logger("mission-sync.store")

KindLike = Union[EntityKind, str]


class MergeOutcome(Enum):
    """Result of a merge proposal."""
    INSERTED = "inserted"
    UPDATED = "updated"
    REMOVED = "removed"
    UNCHANGED = "unchanged"
    STALE = "stale"
    # Accepted as the rollback target of an in-flight optimistic write
    DEFERRED = "deferred"

    @property
    def changed(self) -> bool:
        """Whether observable state changed."""
        return self in (MergeOutcome.INSERTED, MergeOutcome.UPDATED, MergeOutcome.REMOVED)


class ChangeAction(Enum):
    UPSERTED = "upserted"
    REMOVED = "removed"
    OPTIMISTIC_APPLIED = "optimistic_applied"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    CONNECTION = "connection"


@dataclass(frozen=True)
class StoreChange:
    """Notification delivered to subscribers."""
    kind: Optional[EntityKind]
    entity_id: Optional[str]
    action: ChangeAction
    sequence: int


@dataclass
class OptimisticEntry:
    """An unconfirmed local write and everything needed to undo it."""
    entity_id: str
    kind: EntityKind
    prior_snapshot: Optional[BoardEntity]
    applied_patch: Dict[str, Any]
    token: str
    # Marker the speculative value was derived under
    base_marker: Revision = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    resolved: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class ReconcileReport:
    """Summary of a complete-set merge."""
    kind: EntityKind
    changed: int = 0
    unchanged: int = 0
    stale: int = 0
    deferred: int = 0
    skipped: int = 0
    removed: List[str] = field(default_factory=list)

    def tally(self, outcome: MergeOutcome) -> None:
        if outcome.changed:
            self.changed += 1
        elif outcome is MergeOutcome.STALE:
            self.stale += 1
        elif outcome is MergeOutcome.DEFERRED:
            self.deferred += 1
        else:
            self.unchanged += 1


Listener = Callable[[StoreChange], Any]


class StateStore:
    """
    Last-writer-wins mirror of tasks, agents, events and connectivity.

    Tasks and agents are replaced only by values whose revision marker is not
    older than the stored one. Events are append/dedup-by-id and kept as a
    bounded history ordered by ``created_at``.
    """

    def __init__(self, event_history_cap: int = 100):
        self.event_history_cap = event_history_cap

        self._entities: Dict[EntityKind, Dict[str, BoardEntity]] = {
            EntityKind.TASKS: {},
            EntityKind.AGENTS: {},
        }
        self._written_at: Dict[EntityKind, Dict[str, int]] = {
            EntityKind.TASKS: {},
            EntityKind.AGENTS: {},
        }
        # Marker each server value was accepted under (its own or the hint)
        self._markers: Dict[EntityKind, Dict[str, Revision]] = {
            EntityKind.TASKS: {},
            EntityKind.AGENTS: {},
        }
        self._events: Dict[str, Event] = {}
        self._event_order: List[Tuple[datetime, str]] = []

        self._optimistic: Dict[str, OptimisticEntry] = {}
        self._optimistic_by_key: Dict[Tuple[EntityKind, str], OptimisticEntry] = {}

        self._connection = ConnectionState()
        self._sequence = 0
        self._closed = False

        self._listeners: List[Listener] = []
        self._pending_changes: List[StoreChange] = []
        self._depth = 0

    # ------------------------------------------------------------------
    # Reads

    @property
    def sequence(self) -> int:
        """Monotonic counter incremented by every accepted write."""
        return self._sequence

    @property
    def connection(self) -> ConnectionState:
        return self._connection

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, kind: KindLike, entity_id: str) -> Optional[Entity]:
        kind = coerce_kind(kind)
        if kind is EntityKind.EVENTS:
            return self._events.get(entity_id)
        return self._entities[kind].get(entity_id)

    def snapshot(self, kind: KindLike) -> Tuple[Entity, ...]:
        """
        Point-in-time view of one kind.

        Stored entities are immutable, so the tuple can never reflect a later
        or partially applied merge. Events are returned newest first.
        """
        kind = coerce_kind(kind)
        if kind is EntityKind.EVENTS:
            return tuple(self._events[event_id] for _, event_id in reversed(self._event_order))
        return tuple(self._entities[kind].values())

    def pending(self, kind: KindLike, entity_id: str) -> Optional[OptimisticEntry]:
        """The outstanding optimistic entry for an entity, if any."""
        return self._optimistic_by_key.get((coerce_kind(kind), entity_id))

    async def wait_resolved(self, kind: KindLike, entity_id: str) -> None:
        """Wait until no optimistic entry is outstanding for the entity."""
        entry = self.pending(kind, entity_id)
        if entry is not None:
            await entry.resolved.wait()

    def stats(self) -> Dict[str, Any]:
        return {
            "tasks": len(self._entities[EntityKind.TASKS]),
            "agents": len(self._entities[EntityKind.AGENTS]),
            "events": len(self._events),
            "optimistic_in_flight": len(self._optimistic),
            "sequence": self._sequence,
            "online": self._connection.online,
        }

    # ------------------------------------------------------------------
    # Change notification

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1
            if self._depth == 0 and self._pending_changes:
                changes, self._pending_changes = self._pending_changes, []
                self._dispatch(changes)

    def _record(self, kind: Optional[EntityKind], entity_id: Optional[str], action: ChangeAction) -> None:
        self._pending_changes.append(StoreChange(kind, entity_id, action, self._sequence))

    def _dispatch(self, changes: List[StoreChange]) -> None:
        for change in changes:
            for listener in list(self._listeners):
                try:
                    listener(change)
                except Exception as e:
                    logger.error(
                        "listener_failed",
                        action=change.action.value,
                        entity_id=change.entity_id,
                        error=str(e),
                        exc_info=True,
                    )

    def _bump(self, kind: EntityKind, entity_id: str) -> None:
        self._sequence += 1
        if kind is not EntityKind.EVENTS:
            self._written_at[kind][entity_id] = self._sequence

    # ------------------------------------------------------------------
    # Merges

    def upsert(
        self,
        kind: KindLike,
        entity: Union[Entity, Mapping[str, Any]],
        revision_hint: Revision = None,
    ) -> MergeOutcome:
        """
        Merge one entity using last-writer-wins.

        Args:
            kind: Resource kind
            entity: Model instance or raw server mapping
            revision_hint: Marker to compare against the stored one; defaults
                to the entity's own revision marker

        Returns:
            The merge outcome; ``outcome.changed`` tells whether observable
            state changed
        """
        kind = coerce_kind(kind)
        entity = parse_entity(kind, entity)

        if self._closed:
            logger.debug("merge_ignored_store_closed", kind=kind.value, entity_id=entity.id)
            return MergeOutcome.UNCHANGED

        with self._transaction():
            if kind is EntityKind.EVENTS:
                return self._append_event(entity)

            marker = revision_hint if revision_hint is not None else entity.revision_marker

            entry = self._optimistic_by_key.get((kind, entity.id))
            if entry is not None:
                return self._merge_rollback_target(entry, entity, marker)

            stored = self._entities[kind].get(entity.id)
            if stored is None:
                self._entities[kind][entity.id] = entity
                self._markers[kind][entity.id] = marker
                self._bump(kind, entity.id)
                self._record(kind, entity.id, ChangeAction.UPSERTED)
                logger.debug("entity_inserted", kind=kind.value, entity_id=entity.id)
                return MergeOutcome.INSERTED

            stored_marker = self._markers[kind].get(entity.id)
            if compare_revisions(marker, stored_marker) < 0:
                logger.debug(
                    "stale_update_ignored",
                    kind=kind.value,
                    entity_id=entity.id,
                    incoming=str(marker),
                    stored=str(stored_marker),
                )
                return MergeOutcome.STALE

            if stored == entity:
                if compare_revisions(marker, stored_marker) > 0:
                    self._markers[kind][entity.id] = marker
                return MergeOutcome.UNCHANGED

            self._markers[kind][entity.id] = marker
            self._entities[kind][entity.id] = entity
            self._bump(kind, entity.id)
            self._record(kind, entity.id, ChangeAction.UPSERTED)
            logger.debug("entity_updated", kind=kind.value, entity_id=entity.id)
            return MergeOutcome.UPDATED

    def _merge_rollback_target(
        self,
        entry: OptimisticEntry,
        entity: BoardEntity,
        marker: Revision,
    ) -> MergeOutcome:
        # The speculative value stays visible; the server value becomes what a
        # rollback would restore.
        target = entry.prior_snapshot
        markers = self._markers[entry.kind]
        if target is not None:
            target_marker = markers.get(entity.id)
            if compare_revisions(marker, target_marker) < 0:
                return MergeOutcome.STALE
            if target == entity:
                if compare_revisions(marker, target_marker) > 0:
                    markers[entity.id] = marker
                return MergeOutcome.UNCHANGED

        entry.prior_snapshot = entity
        markers[entity.id] = marker
        self._bump(entry.kind, entity.id)
        logger.debug(
            "rollback_target_superseded",
            kind=entry.kind.value,
            entity_id=entity.id,
            token=entry.token,
        )
        return MergeOutcome.DEFERRED

    def _append_event(self, event: Event) -> MergeOutcome:
        if event.id in self._events:
            return MergeOutcome.UNCHANGED

        key = (event.sort_key, event.id)
        bisect.insort(self._event_order, key)
        self._events[event.id] = event

        evicted_self = False
        while len(self._event_order) > self.event_history_cap:
            _, oldest_id = self._event_order.pop(0)
            del self._events[oldest_id]
            if oldest_id == event.id:
                evicted_self = True
            else:
                self._record(EntityKind.EVENTS, oldest_id, ChangeAction.REMOVED)

        if evicted_self:
            return MergeOutcome.STALE

        self._bump(EntityKind.EVENTS, event.id)
        self._record(EntityKind.EVENTS, event.id, ChangeAction.UPSERTED)
        return MergeOutcome.INSERTED

    def remove(self, kind: KindLike, entity_id: str) -> bool:
        """
        Remove an entity. Idempotent: removing an absent id is a no-op.

        Returns:
            True if observable state changed
        """
        kind = coerce_kind(kind)

        if self._closed:
            return False

        with self._transaction():
            if kind is EntityKind.EVENTS:
                if self._events.pop(entity_id, None) is None:
                    return False
                self._event_order = [k for k in self._event_order if k[1] != entity_id]
                self._bump(kind, entity_id)
                self._record(kind, entity_id, ChangeAction.REMOVED)
                return True

            entry = self._optimistic_by_key.get((kind, entity_id))
            if entry is not None:
                if entry.prior_snapshot is not None:
                    entry.prior_snapshot = None
                    self._markers[kind].pop(entity_id, None)
                    self._bump(kind, entity_id)
                    logger.debug("rollback_target_removed", kind=kind.value, entity_id=entity_id)
                return False

            if self._entities[kind].pop(entity_id, None) is None:
                return False

            self._bump(kind, entity_id)
            self._written_at[kind].pop(entity_id, None)
            self._markers[kind].pop(entity_id, None)
            self._record(kind, entity_id, ChangeAction.REMOVED)
            logger.debug("entity_removed", kind=kind.value, entity_id=entity_id)
            return True

    def reconcile(
        self,
        kind: KindLike,
        entities: Iterable[Union[Entity, Mapping[str, Any]]],
        as_of: Optional[int] = None,
    ) -> ReconcileReport:
        """
        Merge a complete collection fetched from the server.

        Every fetched entity is upserted. For tasks and agents, stored entities
        absent from the collection are removed, except those written after
        ``as_of`` (the store sequence captured before the fetch started).
        Events are a recent window, never a complete set, so they are only
        merged.
        """
        kind = coerce_kind(kind)
        report = ReconcileReport(kind=kind)

        if self._closed:
            return report

        with self._transaction():
            present = set()
            for raw in entities:
                try:
                    entity = parse_entity(kind, raw)
                except ValidationError as e:
                    report.skipped += 1
                    if isinstance(raw, Mapping) and raw.get("id"):
                        present.add(str(raw["id"]))
                    logger.warning("malformed_entity_skipped", kind=kind.value, error=str(e))
                    continue

                present.add(entity.id)
                report.tally(self.upsert(kind, entity))

            if kind is not EntityKind.EVENTS:
                written_at = self._written_at[kind]
                for entity_id in list(self._entities[kind]):
                    if entity_id in present:
                        continue
                    if as_of is not None and written_at.get(entity_id, 0) > as_of:
                        continue
                    if self.remove(kind, entity_id):
                        report.removed.append(entity_id)

        if report.changed or report.removed:
            logger.info(
                "collection_reconciled",
                kind=kind.value,
                changed=report.changed,
                removed=len(report.removed),
                stale=report.stale,
            )
        return report

    # ------------------------------------------------------------------
    # Optimistic transactions

    def begin_optimistic(self, kind: KindLike, entity_id: str, patch: Mapping[str, Any]) -> str:
        """
        Apply ``patch`` speculatively and return an opaque token.

        Raises:
            ConflictError: an optimistic write is already in flight for the entity
            EntityNotFoundError: the entity is not in the store
            ValidationError: the patch does not validate, or kind is events
        """
        kind = coerce_kind(kind)
        if kind is EntityKind.EVENTS:
            raise ValidationError("kind", kind.value, "events are immutable")

        key = (kind, entity_id)
        if key in self._optimistic_by_key:
            raise ConflictError(kind.value, entity_id)

        current = self._entities[kind].get(entity_id)
        if current is None:
            raise EntityNotFoundError(kind.value, entity_id)

        patched = apply_patch(current, patch)

        with self._transaction():
            token = uuid.uuid4().hex
            entry = OptimisticEntry(
                entity_id=entity_id,
                kind=kind,
                prior_snapshot=current,
                applied_patch=dict(patch),
                token=token,
                base_marker=self._markers[kind].get(entity_id),
            )
            self._optimistic[token] = entry
            self._optimistic_by_key[key] = entry

            self._entities[kind][entity_id] = patched
            self._sequence += 1
            if patched != current:
                self._record(kind, entity_id, ChangeAction.OPTIMISTIC_APPLIED)

        logger.info(
            "optimistic_applied",
            kind=kind.value,
            entity_id=entity_id,
            fields=sorted(patch),
            token=token,
        )
        return token

    def _entry_for(self, token: str) -> OptimisticEntry:
        entry = self._optimistic.get(token)
        if entry is None:
            raise UnknownTokenError(f"Optimistic token {token} is unknown or already resolved")
        return entry

    def _discard(self, entry: OptimisticEntry) -> None:
        del self._optimistic[entry.token]
        del self._optimistic_by_key[(entry.kind, entry.entity_id)]
        entry.resolved.set()

    def commit_optimistic(
        self,
        token: str,
        canonical_entity: Optional[Union[Entity, Mapping[str, Any]]] = None,
    ) -> MergeOutcome:
        """
        Replace the speculative value with the server-confirmed entity.

        A server value with a strictly newer revision that arrived while the
        write was in flight wins over the mutation's own answer. With no
        canonical entity the speculative value is kept as confirmed.

        Raises:
            UnknownTokenError: the token was already resolved
            ValidationError: the canonical entity does not validate or names
                another entity (the entry stays outstanding)
        """
        entry = self._entry_for(token)
        kind = entry.kind

        visible = self._entities[kind].get(entry.entity_id)
        if canonical_entity is None:
            final = visible
            final_marker = entry.base_marker
        else:
            final = parse_entity(kind, canonical_entity)
            if final.id != entry.entity_id:
                raise ValidationError("id", final.id, f"expected {entry.entity_id}")
            final_marker = final.revision_marker

        markers = self._markers[kind]
        target = entry.prior_snapshot
        if target is not None and compare_revisions(markers.get(entry.entity_id), final_marker) > 0:
            final = target
        elif canonical_entity is not None or target is None:
            markers[entry.entity_id] = final_marker

        with self._transaction():
            self._discard(entry)
            self._entities[kind][entry.entity_id] = final
            self._bump(kind, entry.entity_id)
            outcome = MergeOutcome.UNCHANGED if final == visible else MergeOutcome.UPDATED
            if outcome.changed:
                self._record(kind, entry.entity_id, ChangeAction.COMMITTED)

        logger.info("optimistic_committed", kind=kind.value, entity_id=entry.entity_id, token=token)
        return outcome

    def rollback_optimistic(self, token: str) -> MergeOutcome:
        """
        Restore the prior snapshot exactly and discard the entry.

        Raises:
            UnknownTokenError: the token was already resolved
        """
        entry = self._entry_for(token)
        kind = entry.kind

        with self._transaction():
            self._discard(entry)
            visible = self._entities[kind].get(entry.entity_id)
            prior = entry.prior_snapshot

            if prior is None:
                self._entities[kind].pop(entry.entity_id, None)
                self._written_at[kind].pop(entry.entity_id, None)
                self._markers[kind].pop(entry.entity_id, None)
                self._sequence += 1
                outcome = MergeOutcome.REMOVED
            else:
                self._entities[kind][entry.entity_id] = prior
                self._sequence += 1
                outcome = MergeOutcome.UNCHANGED if prior == visible else MergeOutcome.UPDATED

            if outcome.changed:
                self._record(kind, entry.entity_id, ChangeAction.ROLLED_BACK)

        logger.info("optimistic_rolled_back", kind=kind.value, entity_id=entry.entity_id, token=token)
        return outcome

    # ------------------------------------------------------------------
    # Connectivity

    def set_connection(self, online: bool, checked_at: Optional[datetime] = None) -> bool:
        """Overwrite the connectivity flag. Returns True when ``online`` flipped."""
        if self._closed:
            return False

        flipped = online != self._connection.online
        self._connection = ConnectionState(
            online=online,
            last_checked_at=checked_at or datetime.now(timezone.utc),
        )
        if flipped:
            with self._transaction():
                self._sequence += 1
                self._record(None, None, ChangeAction.CONNECTION)
        return flipped

    def close(self) -> None:
        """Stop accepting merges; late writers after teardown are ignored."""
        self._closed = True
        self._listeners.clear()
        logger.debug("store_closed", **self.stats())


__all__ = [
    'StateStore',
    'MergeOutcome',
    'ChangeAction',
    'StoreChange',
    'OptimisticEntry',
    'ReconcileReport',
]
