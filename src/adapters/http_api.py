"""FastAPI surface for the bridge.

Routes:
- POST /bridge          action dispatch (one named action per request)
- POST /poll            one guarded poll pass for the caller's context
- GET  /messages        recent processed messages
- GET  /messages/stream server-sent events for new processed messages
- GET  /health

The caller identity comes from the ``X-User-Id`` header; without it the
operator credentials from the environment are used. The identity also scopes
the stored selections and message log.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from adapters.sqlite_storage import SQLiteStorage
from bridge import Bridge
from client import CredentialResolver
from core.config import Credentials
from core.errors import BadRequest, ConfigurationError, NotFound, RoomLostError, UpstreamError
from core.models import PollReport
from core.scheduler import DEFAULT_CONTEXT, PollGuard, PollScheduler

LOGGER = logging.getLogger(__name__)

BridgeOpener = Callable[[Credentials], AsyncContextManager[Bridge]]


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, **extra, "timestamp": _timestamp()},
    )


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(BadRequest)
    async def _bad_request(request: Request, exc: BadRequest) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(ConfigurationError)
    async def _configuration(request: Request, exc: ConfigurationError) -> JSONResponse:
        LOGGER.error("Configuration error: %s", exc)
        return _error(500, str(exc))

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound) -> JSONResponse:
        return _error(404, str(exc), upstreamStatus=exc.status_code, upstreamBody=exc.body)

    @app.exception_handler(UpstreamError)
    async def _upstream(request: Request, exc: UpstreamError) -> JSONResponse:
        LOGGER.error("Upstream error: %s", exc)
        return _error(
            502,
            str(exc),
            reason="upstream_error",
            upstreamStatus=exc.status_code,
            upstreamBody=exc.body,
            attempts=[{"status": status, "body": body} for status, body in exc.attempts],
        )

    @app.exception_handler(RoomLostError)
    async def _room_lost(request: Request, exc: RoomLostError) -> JSONResponse:
        return _error(502, str(exc), reason="room_lost", room=exc.room.to_dict())

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
        LOGGER.exception("Unhandled error on %s", request.url.path)
        return _error(500, "Internal server error")


def create_app(
    storage: SQLiteStorage,
    resolver: CredentialResolver,
    bridge_opener: BridgeOpener,
    interval_seconds: float = 60.0,
    scheduler_enabled: bool = False,
    guard: Optional[PollGuard] = None,
) -> FastAPI:
    """Build the FastAPI app around an initialized storage and bridge opener."""

    guard = guard or PollGuard()

    async def run_pass(user_id: Optional[str]) -> PollReport:
        credentials = resolver.resolve(user_id)
        async with bridge_opener(credentials) as bridge:
            return await bridge.orchestrator.run_pass()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        scheduler = None
        if scheduler_enabled:
            scheduler = PollScheduler(
                lambda: run_pass(None), interval_seconds, guard=guard, context=DEFAULT_CONTEXT
            )
            scheduler.start()
        app.state.scheduler = scheduler
        try:
            yield
        finally:
            if scheduler is not None:
                await scheduler.stop()

    app = FastAPI(title="nomi-bridge", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type", "x-user-id"],
    )
    _install_error_handlers(app)

    @app.post("/bridge")
    async def bridge_action(
        request: Request, x_user_id: Optional[str] = Header(default=None)
    ) -> dict[str, Any]:
        try:
            payload = await request.json()
        except ValueError:
            raise BadRequest("request body must be valid JSON") from None
        if not isinstance(payload, dict):
            raise BadRequest("request body must be a JSON object")

        credentials = resolver.resolve(x_user_id)
        async with bridge_opener(credentials) as bridge:
            return await bridge.dispatcher.dispatch(payload)

    @app.post("/poll")
    async def poll(x_user_id: Optional[str] = Header(default=None)) -> dict[str, Any]:
        context = x_user_id or DEFAULT_CONTEXT
        report = await guard.run_exclusive(context, lambda: run_pass(x_user_id))
        if report is None:
            return {
                "success": False,
                "skipped": True,
                "reason": "poll_in_progress",
                "timestamp": _timestamp(),
            }
        return report.to_dict()

    @app.get("/messages")
    async def list_messages(
        limit: int = Query(default=50, ge=1, le=500),
        x_user_id: Optional[str] = Header(default=None),
    ) -> dict[str, Any]:
        records = storage.for_user(x_user_id).list_recent(limit)
        return {"messages": [record.to_dict() for record in records]}

    @app.get("/messages/stream")
    async def stream_messages(x_user_id: Optional[str] = Header(default=None)) -> StreamingResponse:
        scoped = storage.for_user(x_user_id)

        async def events() -> AsyncIterator[str]:
            stream = scoped.stream_inserts()
            try:
                async for record in stream:
                    yield f"data: {json.dumps(record.to_dict())}\n\n"
            finally:
                await stream.aclose()

        return StreamingResponse(events(), media_type="text/event-stream")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "pollInProgress": guard.is_running(DEFAULT_CONTEXT)}

    return app
