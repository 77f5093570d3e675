import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse

from .client import ZoningClient
from .config import Settings
from .dispatcher import INVALID_SESSION, SESSION_NOT_FOUND, ProtocolDispatcher, rpc_error
from .sessions import SessionStore
from .tools import build_registry
from .transport import (
    SESSION_HEADER,
    Reply,
    SessionTransport,
    decode_body,
    parse_error_reply,
)
from .utils import logger

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _to_response(reply: Reply) -> Response:
    headers = {SESSION_HEADER: reply.session_id} if reply.session_id else None
    if reply.body is None:
        return Response(status_code=reply.status, headers=headers)
    return JSONResponse(content=reply.body, status_code=reply.status, headers=headers)


def create_app(
    settings: Settings,
    client: Optional[ZoningClient] = None,
    store: Optional[SessionStore] = None,
) -> FastAPI:
    """Build the HTTP app. The session store lives exactly as long as the app."""
    client = client or ZoningClient(settings)
    store = store or SessionStore()
    dispatcher = ProtocolDispatcher(settings, build_registry(settings, client))
    transport = SessionTransport(settings, store, dispatcher)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "server_start",
            extra={
                "server": settings.server_name,
                "version": settings.server_version,
                "zoning_layer": settings.zoning_layer,
                "address_layer": settings.address_layer,
                "keepalive_s": settings.keepalive_s,
                "session_idle_s": settings.session_idle_s,
            },
        )
        sweeper = asyncio.create_task(
            store.sweep(settings.session_idle_s, settings.sweep_interval_s),
            name="session-sweeper",
        )
        try:
            yield
        finally:
            sweeper.cancel()
            closed = store.close_all()
            await client.close()
            logger.info("server_stop", extra={"closed_sessions": closed})

    app = FastAPI(
        title="Zoning Lookup MCP Server",
        description=f"MCP tools for zoning lookups in {settings.location_name}",
        version=settings.server_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.sessions = store
    app.state.transport = transport

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[SESSION_HEADER],
    )

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": settings.server_version,
            "activeSessions": store.active_count,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # ---------- request/response mode ----------
    @app.post("/mcp")
    async def mcp_post(request: Request):
        try:
            payload = decode_body(await request.body())
        except ValueError as e:
            return _to_response(parse_error_reply(str(e)))
        reply = await transport.handle_post(payload, request.headers.get(SESSION_HEADER))
        return _to_response(reply)

    @app.get("/mcp")
    async def mcp_get(request: Request):
        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return transport.describe()

        session = store.get(session_id)
        if session is None:
            return _to_response(Reply(404, rpc_error(SESSION_NOT_FOUND, "Session not found", None)))
        if not transport.attach_stream(session):
            return JSONResponse(
                status_code=409,
                content=rpc_error(INVALID_SESSION, "An event stream is already open for this session", None),
            )
        return StreamingResponse(
            transport.events(session, announce_endpoint=False),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, SESSION_HEADER: session_id},
        )

    @app.delete("/mcp")
    async def mcp_delete(request: Request):
        return _to_response(transport.terminate(request.headers.get(SESSION_HEADER)))

    # ---------- streaming mode ----------
    @app.get("/sse")
    async def sse(request: Request):
        session = transport.open_stream()
        logger.info(
            "sse_connect",
            extra={
                "session_id": session.session_id,
                "user_agent": request.headers.get("user-agent", "unknown"),
            },
        )
        return StreamingResponse(
            transport.events(session, announce_endpoint=True),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.post("/messages")
    async def messages(request: Request, session_id: Optional[str] = Query(None, alias="sessionId")):
        try:
            payload = decode_body(await request.body())
        except ValueError as e:
            return _to_response(parse_error_reply(str(e)))
        reply = await transport.handle_message(payload, session_id)
        if reply.status == 202:
            return PlainTextResponse("Accepted", status_code=202)
        return _to_response(reply)

    return app
