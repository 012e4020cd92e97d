"""
Pydantic models for llama-server request/response data.

This module defines the OpenAI-compatible chat completion payloads
exchanged with llama-server.
"""

from enum import Enum
from typing import Optional, List, Any, Dict
from pydantic import BaseModel, Field


class Role(str, Enum):
    """Chat message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """A chat message."""
    role: Role = Field(..., description="Message role (system, user, assistant)")
    content: str = Field(..., description="Message content")

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class ChatCompletionRequest(BaseModel):
    """Request model for chat completion."""
    model: str = Field(default="local", description="Model name")
    messages: List[ChatMessage] = Field(..., description="Conversation messages")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    stream: bool = Field(default=False)

    def to_payload(self) -> Dict[str, Any]:
        """Serialise for the wire, leaving out unset sampling options."""
        return self.model_dump(mode="json", exclude_none=True)


class CompletionMessage(BaseModel):
    """Assistant message inside a completion choice."""
    role: str = "assistant"
    content: Optional[str] = None


class ChatCompletionChoice(BaseModel):
    """A completion choice in the response."""
    index: int = 0
    message: CompletionMessage = Field(default_factory=CompletionMessage)
    finish_reason: Optional[str] = None


class Usage(BaseModel):
    """Token usage information."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletionResponse(BaseModel):
    """Response model for chat completion."""
    id: str = ""
    object: str = "chat.completion"
    created: int = 0
    model: str = ""
    choices: List[ChatCompletionChoice] = Field(default_factory=list)
    usage: Optional[Usage] = None

    @property
    def text(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].message.content or ""


class StreamOptions(BaseModel):
    """Per-request options for a streaming completion."""
    model: str = "local"
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1)
