"""
Streaming bridge for llama-server chat completions.

This module issues streaming chat requests and decodes the
server-sent-event body into text deltas. Reads may split lines (and
multi-byte characters) anywhere, so undecoded bytes are carried over
between reads.
"""

import json
import codecs
from typing import Optional, List, AsyncIterator, Sequence

import httpx

from llamadesk.api.models import ChatMessage, ChatCompletionRequest, StreamOptions
from llamadesk.exceptions import HTTPError, StreamUnavailable, StreamParseError
from llamadesk.utils.logging_config import setup_logging

logger = setup_logging("streaming_bridge")

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
CHAT_COMPLETIONS_PATH = "/v1/chat/completions"


def parse_event_line(line: str) -> Optional[str]:
    """
    Extract the text delta from one complete event line.

    Args:
        line: A single line of the event stream (without newline)

    Returns:
        The delta text ("" when the event carries none), DONE_SENTINEL at
        end of stream, or None for lines that are not data events

    Raises:
        StreamParseError: The data payload is not a valid event envelope
    """
    line = line.strip()
    if not line.startswith(DATA_PREFIX):
        return None

    payload = line[len(DATA_PREFIX):].strip()
    if payload == DONE_SENTINEL:
        return DONE_SENTINEL

    try:
        event = json.loads(payload)
    except json.JSONDecodeError as e:
        raise StreamParseError(line, e.msg) from e

    if not isinstance(event, dict):
        raise StreamParseError(line, "event is not an object")

    choices = event.get("choices") or []
    if not isinstance(choices, list):
        raise StreamParseError(line, "choices is not a list")
    if not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) else ""


class SSEDecoder:
    """
    Incremental decoder for a ``data: <json>`` event stream.

    Each session owns its own decoder; the carry-over buffer is never
    shared.
    """

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.finished = False
        self.parse_errors = 0

    def feed(self, chunk: bytes) -> List[str]:
        """
        Add a chunk of bytes and return the deltas it completes.

        Args:
            chunk: Raw bytes from the response body

        Returns:
            List of text deltas, in stream order
        """
        if self.finished:
            return []
        self._buffer += self._utf8.decode(chunk)
        lines = self._buffer.split("\n")
        # keep the last partial line for the next read
        self._buffer = lines.pop()
        return self._process(lines)

    def close(self) -> List[str]:
        """Flush the decoder at end of body, treating any tail as a full line."""
        if self.finished:
            return []
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        deltas = self._process([tail]) if tail.strip() else []
        self.finished = True
        return deltas

    def _process(self, lines: List[str]) -> List[str]:
        deltas = []
        for line in lines:
            try:
                delta = parse_event_line(line)
            except StreamParseError as e:
                self.parse_errors += 1
                logger.warning(f"Skipping stream line: {e}")
                continue

            if delta is None:
                continue
            if delta == DONE_SENTINEL:
                self.finished = True
                break
            if delta:
                deltas.append(delta)
        return deltas


class StreamingBridge:
    """
    Streams chat completions from llama-server as text deltas.

    Example:
        bridge = StreamingBridge(http_client)
        async for delta in bridge.stream(messages, StreamOptions()):
            print(delta, end="")
    """

    def __init__(self, http_client: httpx.AsyncClient):
        self._http_client = http_client

    async def stream(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[StreamOptions] = None
    ) -> AsyncIterator[str]:
        """
        Issue a streaming chat request and yield text deltas.

        Args:
            messages: Role-ordered conversation
            options: Model name and sampling options

        Yields:
            str: Text deltas in the order they were decoded

        Raises:
            HTTPError: llama-server answered with a non-success status
            StreamUnavailable: The connection failed or was lost
        """
        options = options or StreamOptions()
        request = ChatCompletionRequest(
            model=options.model,
            messages=list(messages),
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            stream=True
        )
        decoder = SSEDecoder()

        try:
            async with self._http_client.stream(
                "POST",
                CHAT_COMPLETIONS_PATH,
                json=request.to_payload(),
                timeout=httpx.Timeout(30.0, read=None)
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise HTTPError(response.status_code, body.strip()[:200])

                async for chunk in response.aiter_bytes():
                    for delta in decoder.feed(chunk):
                        yield delta
                    if decoder.finished:
                        return

                for delta in decoder.close():
                    yield delta

        except httpx.HTTPError as e:
            raise StreamUnavailable(f"Stream from llama-server failed: {e}") from e
        finally:
            if decoder.parse_errors:
                logger.info(f"Stream finished with {decoder.parse_errors} skipped line(s)")
