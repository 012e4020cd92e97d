"""
FastAPI routes for the UI message channel.

This module provides the boundary the UI collaborator talks to: a
request/response ``ask`` endpoint, a WebSocket carrying streaming
sessions as chunk/done/error frames, session cancellation, and health.
"""

import asyncio
from typing import Optional, List, Dict, Any
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

from llamadesk.api.models import ChatMessage, Role
from llamadesk.exceptions import LlamaDeskError, SessionError
from llamadesk.utils.logging_config import setup_logging

logger = setup_logging("channel_routes")


class AskRequest(BaseModel):
    """Ask / stream request model."""
    message: str = Field(..., description="User message")
    model: Optional[str] = Field(None, description="Model name")
    history: List[ChatMessage] = Field(
        default_factory=list, description="Earlier turns, oldest first"
    )


class AskResponse(BaseModel):
    """Ask response model. Exactly one field is set."""
    response: Optional[str] = None
    error: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    server_state: str
    active_sessions: int


def _conversation(request: AskRequest) -> List[ChatMessage]:
    return [*request.history, ChatMessage(role=Role.USER, content=request.message)]


def create_channel_routes(controller) -> APIRouter:
    """
    Create FastAPI router with channel endpoints.

    Args:
        controller: AppController instance

    Returns:
        FastAPI router
    """
    router = APIRouter(prefix="/chat", tags=["chat"])
    client = controller.client
    relay = controller.relay

    @router.post("/ask", response_model=AskResponse, response_model_exclude_none=True)
    async def ask(request: AskRequest):
        """Buffered chat completion. Failures are returned, not raised."""
        try:
            messages = client.build_messages(_conversation(request))
            text = await client.ask(messages, model=request.model)
            return {"response": text}
        except LlamaDeskError as e:
            logger.error(f"Ask error: {e}")
            return {"error": str(e)}

    @router.delete("/sessions/{session_id}")
    async def cancel_session(session_id: str):
        """Cancel a streaming session."""
        if not await relay.cancel(session_id):
            raise HTTPException(status_code=404, detail="Session not found")
        return {"status": "cancelled", "session_id": session_id}

    @router.websocket("/stream")
    async def stream(websocket: WebSocket):
        """
        Streaming sessions over one socket.

        Client frames: ``{"message", "model"?, "history"?}`` starts a
        session; ``{"action": "cancel", "session_id"}`` cancels one.
        Server frames carry ``session_id`` and ``type`` in
        started/chunk/done/error.
        """
        await websocket.accept()
        pumps: Dict[str, asyncio.Task] = {}
        send_lock = asyncio.Lock()

        async def send(frame: Dict[str, Any]) -> None:
            async with send_lock:
                await websocket.send_json(frame)

        async def pump(session_id: str) -> None:
            try:
                async for event in relay.events(session_id):
                    await send({"session_id": session_id, **event.to_dict()})
            except SessionError as e:
                logger.warning(f"Relay error for {session_id}: {e}")
            finally:
                pumps.pop(session_id, None)

        try:
            while True:
                try:
                    data = await websocket.receive_json()
                except ValueError as e:
                    await send({"type": "error", "message": f"Invalid request: {e}"})
                    continue
                if not isinstance(data, dict):
                    await send({"type": "error", "message": "Invalid request: expected an object"})
                    continue

                if data.get("action") == "cancel":
                    # the pump sees the closed session and ends without a terminal frame
                    await relay.cancel(str(data.get("session_id", "")))
                    continue

                try:
                    request = AskRequest(**data)
                except ValidationError as e:
                    reasons = "; ".join(err["msg"] for err in e.errors())
                    await send({"type": "error", "message": f"Invalid request: {reasons}"})
                    continue

                messages = client.build_messages(_conversation(request))
                session_id = client.stream_chat(messages, model=request.model)
                await send({"type": "started", "session_id": session_id})
                pumps[session_id] = asyncio.create_task(pump(session_id))

        except WebSocketDisconnect:
            logger.info(f"Channel closed with {len(pumps)} open session(s)")
        finally:
            owned = list(pumps.items())
            for _, task in owned:
                task.cancel()
            await asyncio.gather(*(task for _, task in owned), return_exceptions=True)
            # a pump cancelled before its first step never subscribed
            for session_id, _ in owned:
                await relay.cancel(session_id)

    return router


def create_app(controller) -> FastAPI:
    """
    Create FastAPI application.

    Args:
        controller: A started AppController

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app):
        yield
        # Shutdown
        await controller.shutdown()

    app = FastAPI(
        title="llamadesk channel",
        description="Local chat channel backed by llama-server",
        version="1.0.0",
        lifespan=lifespan
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "server_state": controller.server_state,
            "active_sessions": controller.relay.active_count
        }

    app.include_router(create_channel_routes(controller))

    return app
