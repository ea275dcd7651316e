"""
Synchronization core: the canonical store and the components feeding it.
"""

from .base import ComponentState, SyncComponent
from .connectivity import ConnectivityMonitor
from .optimistic import MutationResult, OptimisticMutator
from .poller import PollReconciler
from .store import (
    ChangeAction,
    MergeOutcome,
    OptimisticEntry,
    ReconcileReport,
    StateStore,
    StoreChange,
)

__all__ = [
    'ComponentState',
    'SyncComponent',
    'ConnectivityMonitor',
    'MutationResult',
    'OptimisticMutator',
    'PollReconciler',
    'ChangeAction',
    'MergeOutcome',
    'OptimisticEntry',
    'ReconcileReport',
    'StateStore',
    'StoreChange',
]
