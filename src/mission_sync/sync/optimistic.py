"""
Optimistic mutation workflow.

A user edit is applied to the store before the server confirms it, then either
committed with the server's canonical entity or rolled back to exactly the
prior value. Mutations for the same entity are queued behind each other.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from ..models.entities import Entity, EntityKind, coerce_kind
from ..utils.errors import ConflictError, TransientNetworkError, UnknownTokenError, ValidationError
from ..utils.logging import get_logger
from .store import MergeOutcome, StateStore


logger = get_logger("mission-sync.optimistic")

ServerCall = Callable[[], Awaitable[Optional[Union[Entity, Mapping[str, Any]]]]]


@dataclass
class MutationResult:
    """Outcome of a confirmed mutation."""
    kind: EntityKind
    entity_id: str
    entity: Optional[Entity]
    outcome: MergeOutcome
    queued: bool = False
    duration_ms: float = 0.0


class OptimisticMutator:
    """
    Drives begin / server call / commit-or-rollback for single-entity edits.

    Failures of the server call (rejection, network error, timeout,
    cancellation) roll the entity back and re-raise exactly once. A resolution
    that arrives for an already resolved token is logged and ignored.
    """

    def __init__(self, store: StateStore, timeout: Optional[float] = 15.0):
        self.store = store
        self.timeout = timeout

    async def mutate(
        self,
        kind: Union[EntityKind, str],
        entity_id: str,
        patch: Mapping[str, Any],
        server_call: ServerCall,
    ) -> MutationResult:
        """
        Apply ``patch`` optimistically and confirm it with ``server_call``.

        ``server_call`` performs the request and returns the canonical entity
        (or None when the server returns no body). A 2xx body that does not
        validate is treated like an empty one.

        Raises:
            MutationRejectedError: the server refused the change (rolled back)
            TransientNetworkError: the request failed or timed out (rolled back)
            EntityNotFoundError: the entity is not in the store
            ValidationError: the patch does not validate
        """
        kind = coerce_kind(kind)
        queued = False

        while True:
            try:
                token = self.store.begin_optimistic(kind, entity_id, patch)
                break
            except ConflictError:
                if not queued:
                    logger.info("mutation_queued", kind=kind.value, entity_id=entity_id)
                queued = True
                await self.store.wait_resolved(kind, entity_id)

        start = time.monotonic()
        try:
            if self.timeout:
                response = await asyncio.wait_for(server_call(), timeout=self.timeout)
            else:
                response = await server_call()
        except asyncio.TimeoutError as e:
            self._rollback(token, kind, entity_id, reason="timeout")
            raise TransientNetworkError(
                f"Mutation of {kind.value}/{entity_id} timed out after {self.timeout}s",
                cause=e,
            ) from e
        except (Exception, asyncio.CancelledError) as e:
            self._rollback(token, kind, entity_id, reason=type(e).__name__)
            raise

        try:
            outcome = self.store.commit_optimistic(token, response)
        except UnknownTokenError:
            logger.debug("duplicate_resolution_ignored", kind=kind.value, entity_id=entity_id, token=token)
            outcome = MergeOutcome.UNCHANGED
        except ValidationError as e:
            # The server accepted the write; keep the speculative value as for an empty body
            logger.warning("invalid_mutation_response", kind=kind.value, entity_id=entity_id, error=str(e))
            outcome = self.store.commit_optimistic(token)

        duration_ms = (time.monotonic() - start) * 1000
        logger.info(
            "mutation_confirmed",
            kind=kind.value,
            entity_id=entity_id,
            outcome=outcome.value,
            queued=queued,
            duration_ms=round(duration_ms, 1),
        )
        return MutationResult(
            kind=kind,
            entity_id=entity_id,
            entity=self.store.get(kind, entity_id),
            outcome=outcome,
            queued=queued,
            duration_ms=duration_ms,
        )

    def _rollback(self, token: str, kind: EntityKind, entity_id: str, reason: str) -> None:
        try:
            outcome = self.store.rollback_optimistic(token)
        except UnknownTokenError:
            logger.debug("duplicate_resolution_ignored", kind=kind.value, entity_id=entity_id, token=token)
            return
        logger.warning(
            "mutation_rolled_back",
            kind=kind.value,
            entity_id=entity_id,
            reason=reason,
            outcome=outcome.value,
        )


__all__ = ['OptimisticMutator', 'MutationResult', 'ServerCall']
