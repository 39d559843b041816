"""
FastAPI app: HTTP control surface and audio WebSocket for the call assistant.

HTTP:
- POST /api/call/start              -> SessionInfo (idempotent while a call is active)
- POST /api/call/{session_id}/stop  -> {"stopped": true}
- GET  /api/call/active             -> SessionInfo or null
- GET  /api/call/question           -> most recent question-like turn
WebSocket /ws/call/{session_id}:
  client sends binary PCM 16-bit interleaved frames for the session;
  server pushes every orchestrator event for that session as JSON { "type": ..., ... }.
  A text frame {"type": "stop"} stops the call.
"""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect

from callassist.config import get_settings
from callassist.errors import MissingCredentialsError
from callassist.events import EventType, event_to_json
from callassist.logging_config import configure_logging
from callassist.orchestrator import CallSessionOrchestrator
from callassist.schemas.call import (
    QuestionResponse,
    SessionInfoResponse,
    StartCallRequest,
    StopCallResponse,
)
from callassist.services.chat import CloudflareChatService
from callassist.services.memory import SupermemoryService

logger = logging.getLogger(__name__)

# Events buffered per WebSocket client before new ones are dropped
_CLIENT_QUEUE_MAX = 256


def build_orchestrator() -> CallSessionOrchestrator:
    """Wire the orchestrator with the collaborators that are configured."""
    settings = get_settings()
    chat = CloudflareChatService.from_settings(settings)
    memory = SupermemoryService.from_settings(settings)
    if not chat.configured:
        logger.info("Chat not configured; suggestions and summaries disabled")
    if not memory.configured:
        logger.info("Memory not configured; utterances will not be saved")
    return CallSessionOrchestrator(
        settings,
        chat=chat if chat.configured else None,
        memory=memory if memory.configured else None,
    )


def create_app(orchestrator: CallSessionOrchestrator | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(get_settings())
        app.state.orchestrator = orchestrator or build_orchestrator()
        yield
        # Shutdown: stop any active call and wait for summary/memory writes
        await app.state.orchestrator.aclose()
        app.state.orchestrator = None

    app = FastAPI(
        title="Call Assist",
        description="Real-time call transcription with reply suggestions",
        lifespan=lifespan,
    )
    _register_routes(app)
    return app


def _orchestrator(request: Request) -> CallSessionOrchestrator:
    orch = getattr(request.app.state, "orchestrator", None)
    if orch is None:
        raise HTTPException(status_code=503, detail="Server not initialized")
    return orch


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/api/call/start", response_model=SessionInfoResponse)
    async def start_call(body: StartCallRequest, request: Request) -> SessionInfoResponse:
        orch = _orchestrator(request)
        try:
            info = await orch.start(body.to_params())
        except MissingCredentialsError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            logger.exception("Call start failed: %s", e)
            raise HTTPException(status_code=500, detail="Could not start the call")
        return SessionInfoResponse.from_info(info)

    @app.post("/api/call/{session_id}/stop", response_model=StopCallResponse)
    async def stop_call(session_id: str, request: Request) -> StopCallResponse:
        await _orchestrator(request).stop(session_id)
        return StopCallResponse(stopped=True)

    @app.get("/api/call/active", response_model=SessionInfoResponse | None)
    async def active_call(request: Request) -> SessionInfoResponse | None:
        info = _orchestrator(request).active_session
        return SessionInfoResponse.from_info(info) if info is not None else None

    @app.get("/api/call/question", response_model=QuestionResponse)
    async def recent_question(request: Request, lookback: int | None = None) -> QuestionResponse:
        return QuestionResponse.from_turn(_orchestrator(request).get_most_recent_question(lookback))

    @app.websocket("/ws/call/{session_id}")
    async def call_socket(websocket: WebSocket, session_id: str) -> None:
        await websocket.accept()
        orch: CallSessionOrchestrator | None = getattr(websocket.app.state, "orchestrator", None)
        if orch is None:
            await websocket.close(code=1011)
            return

        outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=_CLIENT_QUEUE_MAX)

        def forward(event_type: EventType, payload: Any) -> None:
            if getattr(payload, "session_id", None) != session_id:
                return
            try:
                outbox.put_nowait(event_to_json(event_type, payload))
            except asyncio.QueueFull:
                logger.warning("Client for %s is not reading; dropping %s event", session_id, event_type.value)

        unsubscribe = orch.events.subscribe_all(forward)
        sender = asyncio.create_task(_pump_events(websocket, outbox))
        try:
            while True:
                message = await websocket.receive()
                if message.get("type") == "websocket.disconnect":
                    break
                frame = message.get("bytes")
                if frame:
                    await orch.handle_audio_frame(session_id, frame)
                    continue
                if _is_stop_command(message.get("text")):
                    await orch.stop(session_id)
        except WebSocketDisconnect:
            pass
        finally:
            unsubscribe()
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            logger.info("Call socket closed for %s", session_id)


async def _pump_events(websocket: WebSocket, outbox: asyncio.Queue[str]) -> None:
    while True:
        text = await outbox.get()
        try:
            await websocket.send_text(text)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("Event send failed: %s", e)
            return


def _is_stop_command(text: str | None) -> bool:
    if not text:
        return False
    try:
        data = json.loads(text)
    except ValueError:
        return False
    return isinstance(data, dict) and data.get("type") == "stop"


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8000) -> None:
    import uvicorn

    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
