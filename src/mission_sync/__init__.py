"""
Mission Sync - real-time coordination board client.

This package keeps a client-local mirror of a shared task board consistent
under three update sources:
- A push event stream
- Periodic full-collection polling
- Optimistic local mutations confirmed or rolled back by the server
"""

__version__ = "0.1.0"

from .client import SyncClient
from .sync.store import MergeOutcome, StateStore

__all__ = [
    'SyncClient',
    'StateStore',
    'MergeOutcome',
    '__version__',
]
