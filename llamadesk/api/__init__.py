"""
API module for llama-server communication.

This module provides the chat client, the streaming bridge that decodes
server-sent events into text deltas, and the wire models.
"""

from llamadesk.api.llama_client import LlamaChatClient
from llamadesk.api.streaming import StreamingBridge, SSEDecoder, parse_event_line
from llamadesk.api.models import (
    Role, ChatMessage, ChatCompletionRequest, ChatCompletionResponse, StreamOptions
)

__all__ = [
    "LlamaChatClient",
    "StreamingBridge",
    "SSEDecoder",
    "parse_event_line",
    "Role",
    "ChatMessage",
    "ChatCompletionRequest",
    "ChatCompletionResponse",
    "StreamOptions"
]
