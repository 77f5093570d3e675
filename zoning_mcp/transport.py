"""
Session-aware MCP transport over plain HTTP request/response pairs.

Two ways in:
- request/response: every POST /mcp carries the `Mcp-Session-Id` header once
  a session exists. Callers that never send `initialize` get a session
  created and initialized for them on their first call.
- streaming: GET /sse opens a long-lived event stream that owns the session;
  POST /messages?sessionId=... feeds it and replies travel down the stream.
"""

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import mcp.types as types

from .config import Settings
from .dispatcher import (
    INITIALIZE,
    INITIALIZED_NOTIFICATION,
    INTERNAL_ERROR,
    INVALID_REQUEST,
    INVALID_SESSION,
    PARSE_ERROR,
    SESSION_NOT_FOUND,
    EnvelopeError,
    ProtocolDispatcher,
    parse_envelope,
    rpc_error,
)
from .schemas import RequestId
from .sessions import CLOSE, PING, Session, SessionStore
from .utils import logger, new_request_id, short_id

SESSION_HEADER = "Mcp-Session-Id"
MESSAGES_PATH = "/messages"

AUTO_INIT_CLIENT = {"name": "auto-initialized-client", "version": "1.0.0"}


@dataclass
class Reply:
    status: int
    body: Optional[Dict[str, Any]] = None
    session_id: Optional[str] = None


def decode_body(raw: bytes) -> Any:
    """Decode a request body; raises ValueError when it is not JSON."""
    if not raw or not raw.strip():
        raise ValueError("Parse error: Empty request body")
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValueError(f"Parse error: {e}") from e


def parse_error_reply(message: str) -> Reply:
    return Reply(400, rpc_error(PARSE_ERROR, message, None))


def sse_frame(data: str, event: Optional[str] = None) -> str:
    head = f"event: {event}\n" if event else ""
    return f"{head}data: {data}\n\n"


def _invalid_stream_session() -> Reply:
    return Reply(400, rpc_error(INVALID_SESSION, "Invalid session. Please establish SSE connection first.", None))


class SessionTransport:
    def __init__(self, settings: Settings, store: SessionStore, dispatcher: ProtocolDispatcher):
        self.s = settings
        self.store = store
        self.dispatcher = dispatcher

    # ---------- request/response mode ----------
    async def handle_post(self, payload: Any, session_id: Optional[str]) -> Reply:
        try:
            env = parse_envelope(payload)
        except EnvelopeError as e:
            return Reply(400, rpc_error(INVALID_REQUEST, str(e), e.request_id))

        if session_id:
            session = self.store.get(session_id)
            if session is None:
                logger.warning("invalid_session", extra={"session_id": short_id(session_id), "method": env.method})
                return Reply(404, rpc_error(SESSION_NOT_FOUND, "Session not found", env.id))
            return await self._exchange(session, payload, env.id)

        if env.method == INITIALIZE:
            return await self._exchange(self.store.create(), payload, env.id)

        try:
            session = await self.auto_initialize()
        except RuntimeError as e:
            return Reply(500, rpc_error(INTERNAL_ERROR, str(e), env.id))
        return await self._exchange(session, payload, env.id)

    async def auto_initialize(self) -> Session:
        """
        Open a session for a caller that skipped `initialize`.
        The synthetic handshake runs straight through the dispatcher and its
        replies are dropped; the caller only ever sees its own call's result.
        """
        session = self.store.create()
        init = {
            "jsonrpc": "2.0",
            "id": f"auto-init-{new_request_id()}",
            "method": INITIALIZE,
            "params": {
                "protocolVersion": types.LATEST_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": AUTO_INIT_CLIENT,
            },
        }
        async with session.lock:
            reply = await self.dispatcher.dispatch(init, session)
            if reply is None or "error" in reply:
                self.store.close(session.session_id, reason="auto_init_failed")
                raise RuntimeError("Internal error: automatic session initialization failed")
            await self.dispatcher.dispatch({"jsonrpc": "2.0", "method": INITIALIZED_NOTIFICATION}, session)

        logger.info("session_auto_initialized", extra={"session_id": short_id(session.session_id or "")})
        return session

    async def _exchange(self, session: Session, payload: Any, request_id: Optional[RequestId]) -> Reply:
        async with session.lock:
            # the session may have been terminated while this call waited
            if not session.is_open:
                return Reply(404, rpc_error(SESSION_NOT_FOUND, "Session not found", request_id))
            session.touch()
            response = await self.dispatcher.dispatch(payload, session)
            session.touch()

        if response is None:
            return Reply(202, None, session.session_id)
        return Reply(200, response, session.session_id)

    def terminate(self, session_id: Optional[str]) -> Reply:
        if not session_id:
            return Reply(400, rpc_error(INVALID_SESSION, f"Missing {SESSION_HEADER} header", None))
        if not self.store.close(session_id, reason="terminated"):
            logger.warning("invalid_session", extra={"session_id": short_id(session_id), "method": "DELETE"})
            return Reply(404, rpc_error(SESSION_NOT_FOUND, "Session not found", None))
        return Reply(200, {"terminated": True, "sessionId": session_id})

    def describe(self) -> Dict[str, Any]:
        """Capability discovery document for GET /mcp without a session."""
        return {
            "name": self.s.server_name,
            "version": self.s.server_version,
            "protocolVersion": types.LATEST_PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": False}},
            "tools": [
                t.model_dump(by_alias=True, exclude_none=True, mode="json")
                for t in self.dispatcher.registry.list_tools()
            ],
            "transport": {
                "endpoint": "/mcp",
                "sessionHeader": SESSION_HEADER,
                "sse": "/sse",
                "messages": MESSAGES_PATH,
            },
        }

    # ---------- streaming mode ----------
    def open_stream(self) -> Session:
        return self.store.create(streaming=True)

    def attach_stream(self, session: Session) -> bool:
        """Bind a GET /mcp event stream to a request/response session."""
        if session.channel is not None:
            return False
        session.attach_channel()
        return True

    async def handle_message(self, payload: Any, session_id: Optional[str]) -> Reply:
        session = self.store.get(session_id)
        if session is None or not session.streaming:
            logger.warning(
                "invalid_session",
                extra={"session_id": short_id(session_id or ""), "active_sessions": self.store.active_count},
            )
            return _invalid_stream_session()

        async with session.lock:
            # a message queued behind the lock may find the stream gone
            if not session.is_open:
                logger.warning("invalid_session", extra={"session_id": short_id(session_id or ""), "reason": "closed"})
                return _invalid_stream_session()
            session.touch()
            response = await self.dispatcher.dispatch(payload, session)
            if response is not None:
                session.send(response)
        return Reply(202, None, session.session_id)

    async def events(self, session: Session, *, announce_endpoint: bool) -> AsyncIterator[str]:
        """
        Yield SSE frames for `session` until it closes or the client goes away.
        Leaving the generator (normally or by cancellation) always cleans up.
        """
        sid = session.session_id or ""
        channel = session.channel
        assert channel is not None
        try:
            session.stream_open = True
            session.touch()
            session.start_keepalive(self.s.keepalive_s)
            if announce_endpoint:
                yield sse_frame(f"{MESSAGES_PATH}?sessionId={sid}", event="endpoint")
            while True:
                item = await channel.get()
                if item is CLOSE:
                    break
                if item is PING:
                    logger.debug("keepalive_ping", extra={"session_id": short_id(sid)})
                    yield ": ping\n\n"
                    continue
                yield sse_frame(json.dumps(item, ensure_ascii=False), event="message")
        finally:
            session.stream_open = False
            session.touch()
            if session.streaming:
                self.store.close(sid, reason="disconnected")
            else:
                session.detach_channel()
                logger.info("stream_detached", extra={"session_id": short_id(sid)})
