"""
llama.cpp chat client for the local inference server.

This module provides the LlamaChatClient class, which builds chat
payloads, runs buffered and streaming completions against llama-server's
OpenAI-compatible API, and starts relayed streaming sessions.
"""

import os
import asyncio
from typing import Optional, List, Dict, AsyncIterator, Sequence, Union

import httpx

from llamadesk.api.models import (
    ChatMessage, ChatCompletionRequest, ChatCompletionResponse,
    StreamOptions, Role
)
from llamadesk.api.streaming import StreamingBridge, CHAT_COMPLETIONS_PATH
from llamadesk.config import ChatConfig
from llamadesk.exceptions import HTTPError, StreamUnavailable
from llamadesk.session.relay import SessionRelay
from llamadesk.utils.logging_config import setup_logging

logger = setup_logging("llama_client")

MessageLike = Union[ChatMessage, Dict[str, str]]

MOCK_RESPONSE = "[MOCK] This is a mock response from the local model."


class LlamaChatClient:
    """
    Async client for llama-server chat completions.

    All requests pass through an admission semaphore so that at most
    ``max_concurrent_requests`` generations hit the server at once;
    the rest wait in FIFO order.

    Example:
        client = LlamaChatClient("http://127.0.0.1:18777")
        text = await client.ask(client.build_messages([
            {"role": "user", "content": "Hello"}
        ]))
    """

    def __init__(
        self,
        base_url: str,
        config: Optional[ChatConfig] = None,
        relay: Optional[SessionRelay] = None,
        mock_mode: Optional[bool] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize llama chat client.

        Args:
            base_url: llama-server base URL
            config: Chat configuration
            relay: Session relay for streaming sessions
            mock_mode: Whether to use mock mode
            http_client: Optional pre-built client (used by tests)
        """
        self.base_url = base_url
        self.config = config or ChatConfig()
        self.relay = relay or SessionRelay()
        self.mock_mode = mock_mode
        if self.mock_mode is None:
            self.mock_mode = os.getenv("LLM_TYPE", "LOCAL").upper() == "MOCK"

        self._http_client = http_client
        self._owns_client = http_client is None
        self._admission = asyncio.Semaphore(max(1, self.config.max_concurrent_requests))

        logger.info(f"LlamaChatClient initialized (mock_mode={self.mock_mode})")

    def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client is initialized."""
        if self._http_client is None:
            # generation time is unbounded; callers cancel instead
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.config.timeout, read=None),
                headers={"Content-Type": "application/json"}
            )
            self._owns_client = True
        return self._http_client

    async def close(self):
        """Cancel open sessions and close the HTTP client."""
        await self.relay.close()
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def build_messages(
        self,
        conversation: Sequence[MessageLike],
        system_prompt: Optional[str] = None
    ) -> List[ChatMessage]:
        """
        Prepend the system message to a caller-supplied conversation.

        Args:
            conversation: Messages in caller order (not reordered or validated)
            system_prompt: Overrides the configured system prompt

        Returns:
            List[ChatMessage]: System message followed by the conversation
        """
        prompt = system_prompt if system_prompt is not None else self.config.system_prompt
        messages = []
        if prompt:
            messages.append(ChatMessage(role=Role.SYSTEM, content=prompt))
        for m in conversation:
            messages.append(m if isinstance(m, ChatMessage) else ChatMessage(**m))
        return messages

    def _options(
        self,
        model: Optional[str],
        temperature: Optional[float],
        max_tokens: Optional[int]
    ) -> StreamOptions:
        return StreamOptions(
            model=model or self.config.model,
            temperature=temperature if temperature is not None else self.config.temperature,
            max_tokens=max_tokens or self.config.max_tokens
        )

    async def ask(
        self,
        messages: Sequence[ChatMessage],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> str:
        """
        Send chat messages and wait for the full completion.

        Args:
            messages: Role-ordered conversation
            model: Model name sent to the server
            temperature: Sampling temperature
            max_tokens: Maximum response tokens

        Returns:
            str: Response text

        Raises:
            HTTPError: Non-success status from llama-server
            StreamUnavailable: llama-server could not be reached
        """
        if self.mock_mode:
            return MOCK_RESPONSE

        options = self._options(model, temperature, max_tokens)
        request = ChatCompletionRequest(
            model=options.model,
            messages=list(messages),
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            stream=False
        )

        client = self._ensure_client()
        async with self._admission:
            try:
                response = await client.post(
                    CHAT_COMPLETIONS_PATH,
                    json=request.to_payload()
                )
            except httpx.HTTPError as e:
                raise StreamUnavailable(f"llama-server request failed: {e}") from e

        if not response.is_success:
            self._handle_error_response(response)

        completion = ChatCompletionResponse(**response.json())
        return completion.text

    def _handle_error_response(self, response: httpx.Response) -> None:
        """Handle error response from llama-server."""
        try:
            data = response.json()
            message = data.get("error", {}).get("message", "Unknown error")
        except (ValueError, AttributeError):
            message = response.text or "Unknown error"
        raise HTTPError(response.status_code, message)

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> AsyncIterator[str]:
        """
        Stream a completion as text deltas.

        Args:
            messages: Role-ordered conversation
            model: Model name sent to the server
            temperature: Sampling temperature
            max_tokens: Maximum response tokens

        Yields:
            str: Text deltas
        """
        if self.mock_mode:
            for word in MOCK_RESPONSE.split():
                yield word + " "
                await asyncio.sleep(0.05)
            return

        options = self._options(model, temperature, max_tokens)
        bridge = StreamingBridge(self._ensure_client())
        async with self._admission:
            async for delta in bridge.stream(messages, options):
                yield delta

    def stream_chat(
        self,
        messages: Sequence[ChatMessage],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> str:
        """
        Start a relayed streaming session.

        Args:
            messages: Role-ordered conversation
            model: Model name sent to the server
            temperature: Sampling temperature
            max_tokens: Maximum response tokens

        Returns:
            str: Session id; events are read with ``relay.events(session_id)``
        """
        messages = list(messages)
        return self.relay.start(
            lambda: self.stream(messages, model, temperature, max_tokens)
        )
