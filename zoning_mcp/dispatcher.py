"""
JSON-RPC method routing for MCP messages.

Tool failures (bad input, upstream trouble, unknown tool) come back as a
normal result with isError=true so the calling agent can correct itself.
Envelope and method problems come back as JSON-RPC errors.
"""

import json
from typing import Any, Dict, Optional

import mcp.types as types
from pydantic import ValidationError

from .client import InputValidationError, UpstreamError
from .config import Settings
from .schemas import RpcEnvelope, ToolCallParams
from .sessions import Session, SessionState
from .tools import ToolRegistry, UnknownToolError
from .utils import Timer, logger, new_request_id, safe_truncate_bytes, short_id

# JSON-RPC / MCP error codes
PARSE_ERROR = types.PARSE_ERROR
INVALID_REQUEST = types.INVALID_REQUEST
METHOD_NOT_FOUND = types.METHOD_NOT_FOUND
INVALID_PARAMS = types.INVALID_PARAMS
INTERNAL_ERROR = types.INTERNAL_ERROR
INVALID_SESSION = -32000
SESSION_NOT_FOUND = -32001

MAX_RESULT_BYTES = 1024 * 1024

INITIALIZE = "initialize"
INITIALIZED_NOTIFICATION = "notifications/initialized"


class MethodNotFoundError(LookupError):
    pass


class EnvelopeError(ValueError):
    def __init__(self, message: str, request_id: Any = None):
        super().__init__(message)
        self.request_id = request_id


def rpc_error(code: int, message: str, request_id: Any = None) -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "error": {"code": code, "message": message},
        "id": request_id,
    }


def rpc_result(request_id: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "result": result, "id": request_id}


def _dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


def parse_envelope(payload: Any) -> RpcEnvelope:
    """Validate a decoded JSON body; raises EnvelopeError with the id when it can be found."""
    request_id = payload.get("id") if isinstance(payload, dict) else None
    if not isinstance(request_id, (str, int)) or isinstance(request_id, bool):
        request_id = None
    if not isinstance(payload, dict):
        raise EnvelopeError("Invalid Request: must be a JSON object")
    try:
        return RpcEnvelope.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ())) or "envelope"
        raise EnvelopeError(f"Invalid Request: {field}: {first.get('msg')}", request_id) from e


class ProtocolDispatcher:
    def __init__(self, settings: Settings, registry: ToolRegistry):
        self.s = settings
        self.registry = registry

    # ---------- shared tool-result shaping ----------
    def tool_result(self, data: Dict[str, Any]) -> types.CallToolResult:
        text = json.dumps(data, ensure_ascii=False, indent=2)
        if len(text.encode("utf-8")) > MAX_RESULT_BYTES:
            text = safe_truncate_bytes(text, MAX_RESULT_BYTES // 2) + "\n...<truncated>"
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=text)],
            isError=False,
        )

    def tool_error(self, message: str) -> types.CallToolResult:
        payload = {"error": message, "examples": self.s.error_examples()}
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=json.dumps(payload, ensure_ascii=False, indent=2))],
            isError=True,
        )

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]]) -> types.CallToolResult:
        rid = new_request_id()
        try:
            with Timer() as t:
                spec = self.registry.get(name)
                data = await spec.handler(arguments or {})
        except (InputValidationError, UpstreamError, UnknownToolError) as e:
            logger.info("tool_error", extra={"rid": rid, "tool": name, "error": str(e)})
            return self.tool_error(str(e))

        logger.info("tool_done", extra={"rid": rid, "tool": name, "elapsed_ms": round(t.elapsed_ms, 2)})
        return self.tool_result(data)

    # ---------- method handlers ----------
    def initialize_result(self) -> types.InitializeResult:
        return types.InitializeResult(
            protocolVersion=types.LATEST_PROTOCOL_VERSION,
            capabilities=types.ServerCapabilities(tools=types.ToolsCapability(listChanged=False)),
            serverInfo=types.Implementation(name=self.s.server_name, version=self.s.server_version),
        )

    async def _handle(self, env: RpcEnvelope, session: Session) -> Any:
        params = env.params or {}

        if env.method == INITIALIZE:
            session.state = SessionState.ACTIVE
            return _dump(self.initialize_result())

        if env.method == "ping":
            return {}

        if env.method == "tools/list":
            return _dump(types.ListToolsResult(tools=self.registry.list_tools()))

        if env.method == "tools/call":
            try:
                p = ToolCallParams.model_validate(params)
            except ValidationError as e:
                raise EnvelopeError(f"Invalid params: {e.errors()[0].get('msg')}", env.id) from e
            return _dump(await self.call_tool(p.name, p.arguments))

        raise MethodNotFoundError(env.method)

    async def dispatch(self, message: Any, session: Session) -> Optional[Dict[str, Any]]:
        """
        Handle one inbound message for `session`.
        Returns the JSON-RPC response, or None for notifications.
        """
        try:
            env = parse_envelope(message)
        except EnvelopeError as e:
            return rpc_error(INVALID_REQUEST, str(e), e.request_id)

        sid = short_id(session.session_id or "")

        if env.is_notification:
            if env.method == INITIALIZED_NOTIFICATION:
                session.state = SessionState.ACTIVE
            logger.info("notification", extra={"session_id": sid, "method": env.method})
            return None

        try:
            result = await self._handle(env, session)
        except EnvelopeError as e:
            return rpc_error(INVALID_PARAMS, str(e), env.id)
        except MethodNotFoundError:
            return rpc_error(METHOD_NOT_FOUND, f"Method not found: {env.method}", env.id)
        except Exception as e:
            logger.exception("dispatch_failed", extra={"session_id": sid, "method": env.method})
            return rpc_error(INTERNAL_ERROR, f"Internal error: {e}", env.id)

        return rpc_result(env.id, result)
