"""
Entity models for the Mission Sync board mirror.

Tasks and agents are server-owned records carrying a revision marker used for
last-writer-wins merging. Events are immutable live-feed records.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from ..utils.errors import ValidationError


class EntityKind(str, Enum):
    """Resource kinds mirrored by the store."""
    TASKS = "tasks"
    AGENTS = "agents"
    EVENTS = "events"


class TaskStatus(str, Enum):
    """Kanban columns."""
    BACKLOG = "backlog"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


class TaskPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class AgentStatus(str, Enum):
    STANDBY = "standby"
    WORKING = "working"
    OFFLINE = "offline"


Revision = Union[int, datetime, None]


def _as_utc(value: datetime) -> datetime:
    # Naive server timestamps are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def compare_revisions(incoming: Revision, stored: Revision) -> int:
    """
    Compare two revision markers.

    Returns 1 when ``incoming`` is newer, -1 when older and 0 on a tie. Markers
    of different kinds (counter vs. timestamp) or a missing marker are not
    comparable and count as a tie, which lets the incoming value win.
    """
    if incoming is None or stored is None:
        return 0

    if isinstance(incoming, datetime) and isinstance(stored, datetime):
        a, b = _as_utc(incoming), _as_utc(stored)
    elif (
        isinstance(incoming, int) and isinstance(stored, int)
        and not isinstance(incoming, bool) and not isinstance(stored, bool)
    ):
        a, b = incoming, stored
    else:
        return 0

    return (a > b) - (a < b)


class BoardEntity(BaseModel):
    """Base for server-owned records. Unknown server fields are preserved."""

    model_config = ConfigDict(frozen=True, extra="allow", use_enum_values=False)

    id: str = Field(min_length=1)
    revision: Optional[int] = None
    updated_at: Optional[datetime] = None

    @property
    def revision_marker(self) -> Revision:
        """Explicit counter when the server supplies one, else ``updated_at``."""
        if self.revision is not None:
            return self.revision
        return self.updated_at


class Task(BoardEntity):
    title: str = ""
    description: Optional[str] = None
    status: TaskStatus = TaskStatus.BACKLOG
    priority: TaskPriority = TaskPriority.NORMAL
    owner: Optional[str] = None
    blockers: Optional[str] = None
    assigned_agent_id: Optional[str] = None
    workspace_id: Optional[str] = None
    project_tag: Optional[str] = None
    due_date: Optional[str] = None

    @property
    def is_blocked(self) -> bool:
        return bool(self.blockers and self.blockers.strip())


class Agent(BoardEntity):
    name: str = ""
    role: Optional[str] = None
    description: Optional[str] = None
    avatar_emoji: Optional[str] = None
    status: AgentStatus = AgentStatus.STANDBY
    workspace_id: Optional[str] = None


class Event(BaseModel):
    """Immutable live-feed record."""

    model_config = ConfigDict(frozen=True, extra="allow")

    id: str = Field(min_length=1)
    type: str
    message: str = ""
    task_id: Optional[str] = None
    agent_id: Optional[str] = None
    created_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def sort_key(self) -> datetime:
        return _as_utc(self.created_at)


Entity = Union[Task, Agent, Event]

MODELS: Dict[EntityKind, Type[BaseModel]] = {
    EntityKind.TASKS: Task,
    EntityKind.AGENTS: Agent,
    EntityKind.EVENTS: Event,
}


def coerce_kind(kind: Union[EntityKind, str]) -> EntityKind:
    """Accept ``EntityKind`` members or their string values."""
    try:
        return EntityKind(kind)
    except ValueError:
        raise ValidationError("kind", kind, "must be one of tasks, agents, events") from None


def parse_entity(kind: Union[EntityKind, str], data: Union[BaseModel, Mapping[str, Any]]) -> Entity:
    """Validate a raw mapping (or pass through a model) as the kind's entity."""
    model = MODELS[coerce_kind(kind)]
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(x) for x in first["loc"]) or "entity"
        raise ValidationError(field, first.get("input"), first["msg"]) from e


def apply_patch(entity: BoardEntity, patch: Mapping[str, Any]) -> BoardEntity:
    """Return a new validated entity with ``patch`` applied."""
    if "id" in patch and patch["id"] != entity.id:
        raise ValidationError("id", patch["id"], "entity id is immutable")

    data = entity.model_dump()
    data.update(patch)
    try:
        return type(entity).model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(x) for x in first["loc"]) or "patch"
        raise ValidationError(field, first.get("input"), first["msg"]) from e


@dataclass(frozen=True)
class ConnectionState:
    """Process-wide connectivity flag; overwritten in place, no history."""
    online: bool = False
    last_checked_at: Optional[datetime] = None


__all__ = [
    'EntityKind',
    'TaskStatus',
    'TaskPriority',
    'AgentStatus',
    'Revision',
    'compare_revisions',
    'BoardEntity',
    'Task',
    'Agent',
    'Event',
    'Entity',
    'MODELS',
    'coerce_kind',
    'parse_entity',
    'apply_patch',
    'ConnectionState',
]
