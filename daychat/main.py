from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Iterator, Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .config import Settings, load_settings
from .errors import ChatError
from .normalize import message_from_body, normalize_chat_body, to_ui_messages
from .router import ChatRouter
from .schemas import (
    ClearResponse,
    HistoryResponse,
    NonStreamResponse,
    SessionListResponse,
    StatusResponse,
    SubmitAck,
    today,
)

logger = logging.getLogger(__name__)

TEXT_STREAM = "text/plain; charset=utf-8"


def _text_stream(fragments: Iterator[str]) -> Iterator[bytes]:
    # headers are already sent, so failures are reported inside the body
    try:
        for fragment in fragments:
            yield fragment.encode("utf-8")
    except ChatError as e:
        logger.error("[Stream Error] %s", e.detail)
        yield f"\n\n[Error: {e.detail}]".encode("utf-8")
    except Exception as e:
        logger.exception("[Stream Error] unexpected failure")
        yield f"\n\n[Error: {e}]".encode("utf-8")


def create_app(settings: Optional[Settings] = None, router: Optional[ChatRouter] = None) -> FastAPI:
    settings = settings or load_settings()
    router = router or ChatRouter(settings)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        router.shutdown()

    app = FastAPI(title="daychat", version="0.1.0", lifespan=lifespan)
    app.state.router = router
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChatError)
    async def chat_error_handler(_request: Request, exc: ChatError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.get("/health")
    def health():
        return {"status": "ok", "provider": settings.provider, "model": settings.resolved_model()}

    @app.post("/chat")
    def chat(body: Any = Body(None)):
        inbound = normalize_chat_body(body)
        session_id = inbound.session_id or today()
        if not inbound.stream:
            ack: SubmitAck = router.submit(inbound.text, session_id)
            return ack
        fragments = router.stream(session_id, inbound.text)
        return StreamingResponse(_text_stream(fragments), media_type=TEXT_STREAM)

    @app.get("/status/{date}", response_model=StatusResponse)
    def status(date: str):
        return StatusResponse(status=router.poll_status(date))

    @app.post("/session/{session_id}/message")
    def session_message(session_id: str, body: Any = Body(None)):
        fragments = router.stream(session_id, message_from_body(body))
        return StreamingResponse(_text_stream(fragments), media_type=TEXT_STREAM)

    @app.post("/session/{session_id}/message/non-stream", response_model=NonStreamResponse)
    def session_message_non_stream(session_id: str, body: Any = Body(None)):
        response = router.prompt(session_id, message_from_body(body))
        return NonStreamResponse(sessionID=session_id, response=response)

    @app.get("/session/{session_id}/history", response_model=HistoryResponse)
    def session_history(session_id: str, shape: str = Query("raw", alias="format", pattern="^(raw|ui)$")):
        messages = router.history(session_id)
        if shape == "ui":
            shaped = to_ui_messages(messages, session_id)
        else:
            shaped = [m.model_dump() for m in messages]
        return HistoryResponse(sessionID=session_id, messages=shaped)

    @app.get("/sessions", response_model=SessionListResponse)
    def sessions():
        return SessionListResponse(sessions=router.session_ids())

    @app.delete("/session/{session_id}", response_model=ClearResponse)
    def clear_session(session_id: str):
        router.clear(session_id)
        return ClearResponse(message=f"Session {session_id} cleared")

    return app
