"""
Test utilities for Mission Sync.
"""

from .async_helpers import AsyncTestHelper, settle, wait_for_condition
from .mock_helpers import MockBoardApi, MockStreamServer

__all__ = [
    "AsyncTestHelper",
    "settle",
    "wait_for_condition",
    "MockBoardApi",
    "MockStreamServer",
]
