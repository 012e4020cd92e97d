"""
Session relay for streaming chat requests.

This module runs each streaming request as an owned asyncio task keyed
by a session id and hands its output to a single subscriber as a typed
event sequence (chunk, then exactly one done or error).
"""

import uuid
import asyncio
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Union, AsyncIterator, Callable

from llamadesk.exceptions import (
    LlamaDeskError, SessionNotFound, SessionAlreadySubscribed
)
from llamadesk.utils.logging_config import setup_logging

logger = setup_logging("session_relay")


@dataclass(frozen=True)
class ChunkEvent:
    """A text delta."""
    text: str
    type: str = field(default="chunk", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(frozen=True)
class DoneEvent:
    """The stream completed normally."""
    type: str = field(default="done", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type}


@dataclass(frozen=True)
class ErrorEvent:
    """The stream ended with an error."""
    message: str
    type: str = field(default="error", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "message": self.message}


StreamEvent = Union[ChunkEvent, DoneEvent, ErrorEvent]

SourceFactory = Callable[[], AsyncIterator[str]]


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, (DoneEvent, ErrorEvent))


@dataclass
class StreamSession:
    """State owned by one streaming request."""
    session_id: str
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: Optional[asyncio.Task] = None
    closed: bool = False
    subscribed: bool = False
    delivered: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "session_id": self.session_id,
            "closed": self.closed,
            "subscribed": self.subscribed,
            "delivered": self.delivered
        }


class SessionRelay:
    """
    Registry of live streaming sessions.

    Example:
        relay = SessionRelay()
        session_id = relay.start(lambda: client.stream(messages))
        async for event in relay.events(session_id):
            ...
    """

    def __init__(self, unclaimed_ttl: float = 30.0):
        """
        Initialize the relay.

        Args:
            unclaimed_ttl: Seconds a finished session waits for a subscriber
                before it is dropped
        """
        self._sessions: Dict[str, StreamSession] = {}
        self.unclaimed_ttl = unclaimed_ttl

        logger.info("SessionRelay initialized")

    def start(self, source: SourceFactory) -> str:
        """
        Begin a streaming session and return its id immediately.

        Args:
            source: Zero-argument callable returning the delta iterator

        Returns:
            str: Session id
        """
        session_id = str(uuid.uuid4())
        session = StreamSession(session_id=session_id)
        session.task = asyncio.create_task(
            self._produce(session, source), name=f"stream-{session_id}"
        )
        self._sessions[session_id] = session
        logger.info(f"Started stream session: {session_id}")
        return session_id

    def get(self, session_id: str) -> StreamSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    async def events(self, session_id: str) -> AsyncIterator[StreamEvent]:
        """
        Consume a session's events until its terminal event.

        Only one consumer may subscribe. Leaving the loop early cancels
        the session.

        Args:
            session_id: Session to consume

        Yields:
            StreamEvent: Chunk events followed by one done or error event

        Raises:
            SessionNotFound: Unknown or already finished session
            SessionAlreadySubscribed: Another consumer is attached
        """
        session = self.get(session_id)
        if session.subscribed:
            raise SessionAlreadySubscribed(session_id)
        session.subscribed = True

        try:
            while not session.closed:
                event = await session.queue.get()
                if session.closed:
                    break
                if is_terminal(event):
                    self._teardown(session)
                    yield event
                    return
                session.delivered += 1
                yield event
        finally:
            if not session.closed:
                await self.cancel(session_id)

    async def cancel(self, session_id: str) -> bool:
        """
        Stop a session and abort its underlying request.

        Args:
            session_id: Session to cancel

        Returns:
            bool: True if a live session was cancelled
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False

        self._teardown(session)
        task = session.task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info(f"Cancelled stream session: {session_id}")
        return True

    async def close(self) -> None:
        """Cancel every live session."""
        for session_id in list(self._sessions):
            await self.cancel(session_id)

    def _teardown(self, session: StreamSession) -> None:
        session.closed = True
        self._sessions.pop(session.session_id, None)
        # drop anything still queued so nothing is delivered after teardown
        while not session.queue.empty():
            session.queue.get_nowait()
        # wake a consumer blocked on get(); it sees closed and stops
        session.queue.put_nowait(None)

    async def _produce(self, session: StreamSession, source: SourceFactory) -> None:
        try:
            async for delta in source():
                if session.closed:
                    return
                session.queue.put_nowait(ChunkEvent(delta))
            terminal: StreamEvent = DoneEvent()
        except asyncio.CancelledError:
            raise
        except LlamaDeskError as e:
            logger.warning(f"Stream session {session.session_id} failed: {e}")
            terminal = ErrorEvent(str(e))
        except Exception as e:
            logger.exception(f"Unexpected error in stream session {session.session_id}")
            terminal = ErrorEvent(str(e) or e.__class__.__name__)

        if not session.closed:
            session.queue.put_nowait(terminal)
            if not session.subscribed:
                asyncio.get_running_loop().call_later(
                    self.unclaimed_ttl, self._reap_unclaimed, session
                )

    def _reap_unclaimed(self, session: StreamSession) -> None:
        if not session.subscribed and not session.closed:
            logger.warning(f"Dropping unclaimed stream session: {session.session_id}")
            self._teardown(session)
