"""Base class for identity-aware MCP servers.

Pattern: Router-Resolved Tool Registry
---------------------------------------
Each MCP server defines the full set of tools and resources it exposes.  A
handler never holds a client of its own: at call time the base class asks the
``SessionRouter`` for the client bound to the current request and passes it
in.  This means:

  - In stdio mode every handler receives the one client built at startup.
  - In hosted mode every handler receives the client of *its* session, built
    from that session's ``Authorization`` / ``X-Vault-ID`` headers.
  - Handlers depend only on ``VaultApi``, never on HTTP or session details.

The base class also owns both transports: stdio, and Streamable HTTP served by
Starlette + uvicorn with header authentication and session clean-up.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional

import uvicorn
from mcp.server import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.streamable_http_manager import (
    DEFAULT_SESSION_IDLE_TIMEOUT,
    StreamableHTTPSessionManager,
)
from mcp.types import Resource, TextContent, Tool
from pydantic import AnyUrl
from starlette.applications import Starlette
from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from oneclaw_mcp.auth.session import SESSION_ID_HEADER, SessionAuth
from oneclaw_mcp.mcp.session_router import SessionRouter
from oneclaw_mcp.vault.client import VaultApi
from oneclaw_mcp.vault.errors import UnresolvedSessionError

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any], VaultApi], Awaitable[list[TextContent]]]
ResourceLoader = Callable[[VaultApi], Awaitable[str]]

SESSION_SWEEP_INTERVAL = 60.0


class ToolError(Exception):
    """A user-facing tool failure; the message is shown to the agent as-is."""


class BaseMCPServer:
    """Scaffolding shared by vault-backed MCP servers.

    Subclasses must:
      1. Call ``super().__init__(server_name, router)``.
      2. Register tools via ``self._register_tool(name, description, schema, handler)``
         and resources via ``self._register_resource(...)``.
      3. Call ``await self.run()`` (stdio) or ``await self.run_http(host, port)``.
    """

    def __init__(self, server_name: str, router: SessionRouter) -> None:
        self._server = Server(server_name)
        self._router = router
        self._tools: dict[str, Tool] = {}
        self._tool_handlers: dict[str, ToolHandler] = {}
        self._resources: dict[str, Resource] = {}
        self._resource_loaders: dict[str, ResourceLoader] = {}

        logger.info(
            "MCP server '%s' starting, mode=%s",
            server_name,
            "hosted" if router.is_hosted else "local",
        )

    @property
    def router(self) -> SessionRouter:
        return self._router

    # -- registration (called by subclasses) ---------------------------------

    def _register_tool(
        self,
        name: str,
        description: str,
        input_schema: dict[str, Any],
        handler: ToolHandler,
    ) -> None:
        self._tools[name] = Tool(name=name, description=description, inputSchema=input_schema)
        self._tool_handlers[name] = handler

    def _register_resource(
        self,
        uri: str,
        name: str,
        description: str,
        loader: ResourceLoader,
        mime_type: str = "application/json",
    ) -> None:
        self._resources[uri] = Resource(
            uri=AnyUrl(uri), name=name, description=description, mimeType=mime_type
        )
        self._resource_loaders[uri] = loader

    def _get_handler(self, tool_name: str) -> ToolHandler:
        handler = self._tool_handlers.get(tool_name)
        if handler is None:
            raise ToolError(
                f"Unknown tool: {tool_name}. Available tools: {', '.join(sorted(self._tools))}"
            )
        return handler

    # -- client resolution ---------------------------------------------------

    def _client_for_request(self, request: Optional[Request]) -> VaultApi:
        """Resolve the client for a request (None on stdio)."""
        if request is None:
            return self._router.client_for()
        auth = SessionAuth.from_headers(request.headers)
        return self._router.client_for(request.headers.get(SESSION_ID_HEADER), auth)

    def _current_request(self) -> Optional[Request]:
        try:
            ctx = self._server.request_context
        except LookupError:
            return None
        return getattr(ctx, "request", None)

    # -- lifecycle ------------------------------------------------------------

    def setup_handlers(self) -> None:
        """Wire up MCP protocol handlers.  Call after all tools are registered."""
        server = self._server

        @server.list_tools()
        async def list_tools() -> list[Tool]:
            return list(self._tools.values())

        @server.call_tool()
        async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
            handler = self._get_handler(name)
            client = self._client_for_request(self._current_request())
            return await handler(arguments or {}, client)

        @server.list_resources()
        async def list_resources() -> list[Resource]:
            return list(self._resources.values())

        @server.read_resource()
        async def read_resource(uri: AnyUrl) -> Iterable[ReadResourceContents]:
            key = str(uri)
            loader = self._resource_loaders.get(key)
            if loader is None:
                raise ToolError(f"Unknown resource: {key}")
            client = self._client_for_request(self._current_request())
            text = await loader(client)
            return [ReadResourceContents(content=text, mime_type=self._resources[key].mimeType)]

    async def run(self) -> None:
        """Start the MCP server on stdio."""
        from mcp.server.stdio import stdio_server

        self.setup_handlers()
        async with stdio_server() as (read_stream, write_stream):
            await self._server.run(
                read_stream,
                write_stream,
                self._server.create_initialization_options(),
            )

    def build_http_app(
        self,
        *,
        session_idle_timeout: float | None = DEFAULT_SESSION_IDLE_TIMEOUT,
        sweep_interval: float = SESSION_SWEEP_INTERVAL,
    ) -> Starlette:
        """Build the Streamable HTTP application (``/mcp`` and ``/health``).

        The transport ends sessions on DELETE and after *session_idle_timeout*
        seconds without traffic.  Router entries of ended sessions are dropped
        after every request and every *sweep_interval* seconds.
        """
        self.setup_handlers()
        manager = StreamableHTTPSessionManager(
            app=self._server, session_idle_timeout=session_idle_timeout
        )
        router = self._router

        async def health(request: Request) -> JSONResponse:
            return JSONResponse({"status": "ok"})

        @contextlib.asynccontextmanager
        async def lifespan(app: Starlette):
            async with manager.run():
                sweeper = asyncio.create_task(_sweep_sessions(manager, router, sweep_interval))
                try:
                    yield
                finally:
                    sweeper.cancel()

        return Starlette(
            routes=[
                Route("/health", endpoint=health, methods=["GET"]),
                Route("/mcp", endpoint=_AuthenticatedMCPEndpoint(manager, router)),
            ],
            lifespan=lifespan,
        )

    async def run_http(self, host: str, port: int) -> None:
        """Serve Streamable HTTP until interrupted."""
        config = uvicorn.Config(self.build_http_app(), host=host, port=port, log_level="info")
        logger.info("Listening on %s:%d (HTTP streaming)", host, port)
        await uvicorn.Server(config).serve()


class _AuthenticatedMCPEndpoint:
    """ASGI endpoint that checks session headers before handing off to MCP.

    Requests lacking ``Authorization: Bearer ...`` or ``X-Vault-ID`` are
    rejected with 401.  A ``DELETE`` ends the MCP session, so its router entry
    is dropped once the transport has handled it; entries of any other session
    the transport has already ended are dropped at the same point.
    """

    def __init__(self, manager: StreamableHTTPSessionManager, router: SessionRouter) -> None:
        self._manager = manager
        self._router = router

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        headers = Headers(scope=scope)
        try:
            SessionAuth.from_headers(headers)
        except UnresolvedSessionError as exc:
            logger.info("Rejected unauthenticated MCP request: %s", exc)
            await JSONResponse({"error": str(exc)}, status_code=401)(scope, receive, send)
            return

        await self._manager.handle_request(scope, receive, send)

        session_id = headers.get(SESSION_ID_HEADER)
        if scope.get("method") == "DELETE" and session_id:
            self._router.drop(session_id)
        self._router.retain(_live_session_ids(self._manager))


def _live_session_ids(manager: StreamableHTTPSessionManager) -> set[str]:
    # The manager exposes no teardown hook; its session table is the source of truth.
    return set(manager._server_instances)


async def _sweep_sessions(
    manager: StreamableHTTPSessionManager, router: SessionRouter, interval: float
) -> None:
    """Periodically drop router entries of sessions the transport has reaped."""
    while True:
        await asyncio.sleep(interval)
        dropped = router.retain(_live_session_ids(manager))
        if dropped:
            logger.info("Dropped %d ended session(s)", dropped)
