"""
Transport layer for Mission Sync: push stream client, reconnect policy and
the aiohttp board API adapter.
"""

from .base import ReconnectBackoff, StreamState
from .http import BoardApiClient
from .stream import EventStreamClient, StreamOpener, apply_message

__all__ = [
    'ReconnectBackoff',
    'StreamState',
    'BoardApiClient',
    'EventStreamClient',
    'StreamOpener',
    'apply_message',
]
