"""
Error handling framework for Mission Sync.

This module provides the error taxonomy of the synchronization core:
- Hierarchical exception classes
- Error context preservation
- Retryable vs. user-facing classification
- Structured error payloads for the presentation layer

No error raised here is fatal to the process. The worst outcome of any of
them is degraded freshness until the next poll or reconnect.
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for classification."""
    NETWORK = "network"
    CONFLICT = "conflict"
    MUTATION = "mutation"
    PROTOCOL = "protocol"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    component: Optional[str] = None
    operation: Optional[str] = None
    entity_kind: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class SyncError(Exception):
    """Base exception for all Mission Sync errors."""

    code: str = "SYNC_ERROR"
    default_message: str = "An error occurred in the sync engine"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    is_retryable: bool = False
    user_facing: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        **kwargs
    ):
        """Initialize sync error."""
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        self.kwargs = kwargs
        super().__init__(self.message)

    def get_suggestions(self) -> List[str]:
        """Get error resolution suggestions."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "is_retryable": self.is_retryable,
                "user_facing": self.user_facing,
                "suggestions": self.get_suggestions(),
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "entity_kind": self.context.entity_kind,
                    "entity_id": self.context.entity_id,
                    "metadata": self.context.metadata,
                },
            }
        }


# Configuration Errors

class ConfigurationError(SyncError):
    """Configuration errors."""
    code = "CONFIG_ERROR"
    default_message = "Configuration error"
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check your configuration file syntax",
            "Verify MISSION_SYNC__* environment variables",
        ]


# Network Errors

class NetworkError(SyncError):
    """Network-related errors."""
    code = "NETWORK_ERROR"
    default_message = "Network error occurred"
    category = ErrorCategory.NETWORK
    severity = ErrorSeverity.WARNING
    is_retryable = True


class TransientNetworkError(NetworkError):
    """Stream disconnects, fetch timeouts, probe failures.

    Retried automatically (backoff for the stream, next tick for polling and
    probing) and never surfaced directly to the user.
    """
    code = "TRANSIENT_NETWORK_ERROR"
    default_message = "Transient network failure"


# Optimistic mutation errors

class ConflictError(SyncError):
    """An optimistic mutation is already in flight for this entity."""
    code = "OPTIMISTIC_CONFLICT"
    default_message = "Optimistic mutation already in flight"
    category = ErrorCategory.CONFLICT
    severity = ErrorSeverity.INFO

    def __init__(self, kind: str, entity_id: str, **kwargs):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(
            f"Mutation already in flight for {kind}/{entity_id}",
            context=ErrorContext(entity_kind=kind, entity_id=entity_id),
            **kwargs
        )


class MutationRejectedError(SyncError):
    """The server refused a mutation (non-success status)."""
    code = "MUTATION_REJECTED"
    default_message = "The server rejected the change"
    category = ErrorCategory.MUTATION
    user_facing = True

    def __init__(
        self,
        status: int,
        detail: Optional[str] = None,
        **kwargs
    ):
        self.status = status
        self.detail = detail
        message = f"Server rejected mutation with HTTP {status}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return ["The change was undone; refresh and try again"]


class UnknownTokenError(SyncError):
    """A resolution arrived for an optimistic token already resolved."""
    code = "UNKNOWN_OPTIMISTIC_TOKEN"
    default_message = "Optimistic token is unknown or already resolved"
    category = ErrorCategory.CONFLICT
    severity = ErrorSeverity.DEBUG


class EntityNotFoundError(SyncError):
    """An operation targeted an entity the store does not hold."""
    code = "ENTITY_NOT_FOUND"
    default_message = "Entity not found in store"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, kind: str, entity_id: str, **kwargs):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(
            f"{kind}/{entity_id} is not in the store",
            context=ErrorContext(entity_kind=kind, entity_id=entity_id),
            **kwargs
        )


# Protocol errors

class MalformedMessageError(SyncError):
    """An undecodable push event."""
    code = "MALFORMED_MESSAGE"
    default_message = "Malformed push message"
    category = ErrorCategory.PROTOCOL
    severity = ErrorSeverity.WARNING

    def __init__(self, reason: str, raw: Optional[str] = None, **kwargs):
        self.reason = reason
        self.raw = raw[:200] if raw else raw
        super().__init__(f"Malformed message: {reason}", **kwargs)


# Validation Errors

class ValidationError(SyncError):
    """Input validation errors."""
    code = "VALIDATION_ERROR"
    default_message = "Validation error"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.WARNING

    def __init__(self, field: str, value: Any, constraint: str, **kwargs):
        self.field = field
        self.value = value
        self.constraint = constraint
        message = f"Validation failed for field '{field}': {constraint}"
        super().__init__(message, **kwargs)

    def get_suggestions(self) -> List[str]:
        return [
            f"Check the value of field '{self.field}'",
            f"Ensure it meets the constraint: {self.constraint}"
        ]


# Export public API
__all__ = [
    'SyncError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'ConfigurationError',
    'NetworkError',
    'TransientNetworkError',
    'ConflictError',
    'MutationRejectedError',
    'UnknownTokenError',
    'EntityNotFoundError',
    'MalformedMessageError',
    'ValidationError',
]
