"""
Session module for streaming chat sessions.

This module provides the relay that owns each streaming request and
delivers its chunk, done and error events to one subscriber.
"""

from llamadesk.session.relay import (
    SessionRelay, StreamSession, StreamEvent,
    ChunkEvent, DoneEvent, ErrorEvent, is_terminal
)

__all__ = [
    "SessionRelay",
    "StreamSession",
    "StreamEvent",
    "ChunkEvent",
    "DoneEvent",
    "ErrorEvent",
    "is_terminal"
]
