"""FastAPI entry point for the chat relay."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from .auth import ADMIN_KEY_HEADER, CLIENT_KEY_HEADER, bearer_token
from .config import RelayConfig
from .errors import InvalidInput, RateLimited, RelayError
from .schemas import ChatCompletionResponse, ConversationListResponse
from .service import ChatRelayService
from .utils import client_address, setup_logging
from .writer import EventStreamWriter

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


def create_app(
    config: RelayConfig,
    *,
    service: Optional[ChatRelayService] = None,
    log_dir: Optional[str] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    config.validate()
    service = service or ChatRelayService(config)

    app = FastAPI(title="Chat Relay", version="0.1.0")
    app.state.config = config
    app.state.service = service

    origins = config.allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", CLIENT_KEY_HEADER, ADMIN_KEY_HEADER, "Authorization"],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        if config.is_production:
            response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        return response

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
        # 5xx detail stays in the logs
        message = exc.public_message if exc.status_code >= 500 else str(exc)
        body = {"error": message}
        headers = {}
        if isinstance(exc, InvalidInput) and config.is_development and exc.details is not None:
            body["details"] = exc.details
        if isinstance(exc, RateLimited):
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(status_code=exc.status_code, content=body, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        body = {"error": InvalidInput.public_message}
        if config.is_development:
            body["details"] = [
                {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
                for error in exc.errors()
            ]
        return JSONResponse(status_code=400, content=body)

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok"}, headers={"Cache-Control": "no-store"})

    @app.get("/widget/chat-widget.js")
    async def widget_bundle():
        bundle = Path(config.widget_bundle_path)
        if not bundle.is_file():
            return JSONResponse(
                status_code=404,
                content={"error": "Widget bundle not found. Build the widget before serving it."},
            )
        cache_control = "public, max-age=300, immutable" if config.is_production else "no-store"
        return FileResponse(
            bundle,
            media_type="application/javascript; charset=utf-8",
            headers={"Cache-Control": cache_control},
        )

    @app.post("/chat")
    async def chat(request: Request):
        chat_request = app.state.service.accept(
            client_address(request),
            request.headers.get(CLIENT_KEY_HEADER),
            await request.body(),
        )
        logger.info("Streaming chat for session %s", chat_request.session_id)
        turn = await run_in_threadpool(app.state.service.prepare, chat_request)
        writer = EventStreamWriter(app.state.service.stream_events(turn))
        return writer.response()

    @app.post("/chat/complete", response_model=ChatCompletionResponse)
    async def chat_complete(request: Request):
        chat_request = app.state.service.accept(
            client_address(request),
            request.headers.get(CLIENT_KEY_HEADER),
            await request.body(),
        )
        logger.info("Buffered chat for session %s", chat_request.session_id)
        turn = await run_in_threadpool(app.state.service.prepare, chat_request)
        return await run_in_threadpool(app.state.service.complete, turn)

    def _admin_key(request: Request) -> Optional[str]:
        return request.headers.get(ADMIN_KEY_HEADER) or bearer_token(request.headers.get("Authorization"))

    @app.get("/admin/conversations", response_model=ConversationListResponse)
    async def list_conversations(request: Request, limit: Optional[int] = Query(None)):
        app.state.service.gate.require_admin(_admin_key(request))
        logger.info("Listing conversations (limit=%s)", limit)
        return await run_in_threadpool(app.state.service.list_conversations, limit)

    @app.get("/admin/conversations/{conversation_id}")
    async def conversation_thread(request: Request, conversation_id: str):
        app.state.service.gate.require_admin(_admin_key(request))
        logger.info("Fetching conversation %s", conversation_id)
        return await run_in_threadpool(app.state.service.get_thread, conversation_id)

    return app
