"""
Board entity models for Mission Sync.
"""

from .entities import (
    EntityKind,
    TaskStatus,
    TaskPriority,
    AgentStatus,
    Task,
    Agent,
    Event,
    ConnectionState,
    compare_revisions,
    parse_entity,
    apply_patch,
)

__all__ = [
    'EntityKind',
    'TaskStatus',
    'TaskPriority',
    'AgentStatus',
    'Task',
    'Agent',
    'Event',
    'ConnectionState',
    'compare_revisions',
    'parse_entity',
    'apply_patch',
]
