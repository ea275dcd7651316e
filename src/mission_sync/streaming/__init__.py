"""
Push stream framing for Mission Sync.
"""

from .frames import (
    Frame,
    FrameDecoder,
    FrameKind,
    RecentIds,
    StreamMessage,
    decode_message,
)

__all__ = [
    'Frame',
    'FrameDecoder',
    'FrameKind',
    'RecentIds',
    'StreamMessage',
    'decode_message',
]
