import sys
from typing import Any, Dict, List

import anyio
import mcp.types as types
import uvicorn
from mcp.server import NotificationOptions, Server
from mcp.server.models import InitializationOptions
from mcp.server.stdio import stdio_server

from .client import ZoningClient
from .config import ConfigError, Settings, load_settings
from .dispatcher import ProtocolDispatcher
from .http_app import create_app
from .tools import build_registry
from .utils import logger


def build_stdio_server(dispatcher: ProtocolDispatcher) -> Server:
    """Single-session MCP server over stdin/stdout, sharing the HTTP tool path."""
    server = Server(dispatcher.s.server_name)

    @server.list_tools()
    async def handle_list_tools() -> List[types.Tool]:
        return dispatcher.registry.list_tools()

    # range checks happen in the handlers so agents get the examples payload
    @server.call_tool(validate_input=False)
    async def handle_call_tool(name: str, arguments: Dict[str, Any]) -> types.CallToolResult:
        return await dispatcher.call_tool(name, arguments)

    return server


async def run_stdio(settings: Settings) -> None:
    client = ZoningClient(settings)
    dispatcher = ProtocolDispatcher(settings, build_registry(settings, client))
    server = build_stdio_server(dispatcher)
    try:
        async with stdio_server() as (read, write):
            caps = server.get_capabilities(
                notification_options=NotificationOptions(),
                experimental_capabilities={},
            )
            init_opts = InitializationOptions(
                server_name=settings.server_name,
                server_version=settings.server_version,
                capabilities=caps,
            )
            await server.run(read, write, init_opts)
    finally:
        await client.close()


def run_http(settings: Settings) -> None:
    app = create_app(settings)
    uvicorn.run(app, host=settings.host, port=settings.port)


def main() -> None:
    try:
        settings = load_settings()
    except ConfigError as e:
        logger.error("config_error", extra={"error": str(e)})
        sys.exit(1)

    if settings.transport == "stdio":
        anyio.run(run_stdio, settings)
    else:
        run_http(settings)


if __name__ == "__main__":
    main()
