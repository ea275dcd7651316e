"""
Board presentation selectors and the drag-and-drop move.

Everything here reads point-in-time snapshots from the store; nothing keeps
its own copy of board state.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .models.entities import Agent, AgentStatus, EntityKind, Event, Task, TaskStatus, coerce_kind
from .sync.optimistic import MutationResult, OptimisticMutator
from .sync.store import StateStore
from .utils.errors import EntityNotFoundError, ValidationError
from .utils.logging import get_logger

logger = get_logger("mission-sync.board")

Patcher = Callable[[EntityKind, str, Mapping[str, Any]], Awaitable[Optional[Dict[str, Any]]]]


@dataclass(frozen=True)
class Column:
    status: TaskStatus
    label: str
    description: str


COLUMNS: Tuple[Column, ...] = (
    Column(TaskStatus.BACKLOG, "Backlog", "Ready to be pulled"),
    Column(TaskStatus.IN_PROGRESS, "In Progress", "Currently being built"),
    Column(TaskStatus.REVIEW, "Review", "Needs approval"),
    Column(TaskStatus.DONE, "Done", "Shipped"),
)


class FeedFilter(str, Enum):
    ALL = "all"
    TASKS = "tasks"
    AGENTS = "agents"


FEED_TYPES = {
    FeedFilter.TASKS: frozenset({"task_created", "task_assigned", "task_status_changed", "task_completed"}),
    FeedFilter.AGENTS: frozenset({"agent_joined", "agent_status_changed", "message_sent"}),
}

DEFAULT_TAG_COLOR = "#f97316"


def parse_project_tag(value: Optional[str]) -> Tuple[str, str]:
    """Split a ``label|color`` project tag; untagged tasks are "General"."""
    if not value:
        return "General", DEFAULT_TAG_COLOR
    if "|" in value:
        label, _, color = value.partition("|")
        return label or "General", color or DEFAULT_TAG_COLOR
    return value, DEFAULT_TAG_COLOR


@dataclass(frozen=True)
class BoardStats:
    """Header and board pulse counters."""
    total: int
    in_progress: int
    done: int
    blocked: int
    queued: int
    working_agents: int
    online: bool


class BoardView:
    """Read-side selectors over the store plus the task move workflow."""

    def __init__(self, store: StateStore, mutator: Optional[OptimisticMutator] = None,
                 patch: Optional[Patcher] = None):
        self.store = store
        self.mutator = mutator or OptimisticMutator(store)
        self.patch = patch

    def tasks(self) -> List[Task]:
        return list(self.store.snapshot(EntityKind.TASKS))

    def agents(self, status: Optional[Union[AgentStatus, str]] = None) -> List[Agent]:
        agents = list(self.store.snapshot(EntityKind.AGENTS))
        if status is None or status == "all":
            return agents
        status = AgentStatus(status)
        return [a for a in agents if a.status == status]

    def columns(self) -> Dict[TaskStatus, List[Task]]:
        """Tasks grouped into kanban columns, in column order."""
        grouped: Dict[TaskStatus, List[Task]] = {column.status: [] for column in COLUMNS}
        for task in self.tasks():
            grouped[task.status].append(task)
        return grouped

    def feed(self, filter: Union[FeedFilter, str] = FeedFilter.ALL) -> List[Event]:
        """Live-feed events, newest first, optionally restricted to task or agent activity."""
        filter = FeedFilter(filter)
        events = list(self.store.snapshot(EntityKind.EVENTS))
        if filter is FeedFilter.ALL:
            return events
        types = FEED_TYPES[filter]
        return [e for e in events if e.type in types]

    def stats(self) -> BoardStats:
        tasks = self.tasks()
        return BoardStats(
            total=len(tasks),
            in_progress=sum(1 for t in tasks if t.status is TaskStatus.IN_PROGRESS),
            done=sum(1 for t in tasks if t.status is TaskStatus.DONE),
            blocked=sum(1 for t in tasks if t.is_blocked),
            queued=sum(1 for t in tasks if t.status not in (TaskStatus.DONE, TaskStatus.REVIEW)),
            working_agents=sum(1 for a in self.agents() if a.status is AgentStatus.WORKING),
            online=self.store.connection.online,
        )

    async def update_entity(
        self,
        kind: Union[EntityKind, str],
        entity_id: str,
        patch: Mapping[str, Any],
    ) -> MutationResult:
        """Optimistically patch a task or agent through the configured patcher."""
        if self.patch is None:
            raise ValidationError("patch", None, "board view has no server patcher")
        kind = coerce_kind(kind)
        body = dict(patch)
        return await self.mutator.mutate(
            kind,
            entity_id,
            body,
            lambda: self.patch(kind, entity_id, body),
        )

    async def move_task(self, task_id: str, status: Union[TaskStatus, str]) -> Optional[MutationResult]:
        """
        Move a task to another column.

        The store shows the new column immediately. On confirmation a local
        feed event records the move; on failure the task snaps back to its
        previous column and the error propagates.

        Returns:
            The mutation result, or None when the task is already in ``status``
        """
        try:
            status = TaskStatus(status)
        except ValueError:
            raise ValidationError("status", status, "unknown task status") from None

        task = self.store.get(EntityKind.TASKS, task_id)
        if task is None:
            raise EntityNotFoundError(EntityKind.TASKS.value, task_id)
        if task.status is status:
            return None

        result = await self.update_entity(EntityKind.TASKS, task_id, {"status": status.value})

        self.store.upsert(EntityKind.EVENTS, Event(
            id=str(uuid.uuid4()),
            type="task_completed" if status is TaskStatus.DONE else "task_status_changed",
            task_id=task_id,
            message=f'Task "{task.title}" moved to {status.value}',
            created_at=datetime.now(timezone.utc),
        ))
        logger.info("task_moved", task_id=task_id, status=status.value, queued=result.queued)
        return result


__all__ = [
    'BoardView',
    'BoardStats',
    'Column',
    'COLUMNS',
    'FeedFilter',
    'FEED_TYPES',
    'parse_project_tag',
]
