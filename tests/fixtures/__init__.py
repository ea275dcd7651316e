"""
Test fixtures for Mission Sync.

Provides reusable board entities and push messages.
"""

from .board_fixtures import BASE_TIME, BoardFixtures

__all__ = [
    "BASE_TIME",
    "BoardFixtures",
]
