"""MCP client for the wrapped stdio MCP server.

Spawns the server as a child process, performs the MCP handshake, keeps
the advertised capabilities and server identity, and forwards protocol
operations to it.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any, Awaitable, Callable, TypeVar

import mcp.types as types
from mcp import ClientSession, StdioServerParameters, stdio_client
from mcp.shared.session import RequestResponder

from aidr_proxy.version import __version__

logger = logging.getLogger("aidr_proxy.upstream")

ResultT = TypeVar("ResultT", bound=types.Result)

NotificationHandler = Callable[[types.ServerNotification], Awaitable[None]]

CLIENT_NAME = "cs-aidr-mcp-proxy-client"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class UpstreamError(Exception):
    """Base error for upstream MCP connection issues."""


class UpstreamConnectionError(UpstreamError):
    """Failed to connect to or initialize the upstream MCP server."""


class UpstreamTimeoutError(UpstreamError):
    """The upstream MCP handshake timed out."""


# ---------------------------------------------------------------------------
# UpstreamConnection
# ---------------------------------------------------------------------------

class UpstreamConnection:
    """MCP client connection to the wrapped stdio MCP server.

    Usage::

        conn = UpstreamConnection(command="npx", args=["-y", "some-server"])
        await conn.connect()
        try:
            caps = conn.capabilities
            result = await conn.call_tool(
                types.CallToolRequestParams(name="echo", arguments={}),
            )
        finally:
            await conn.close()

    Protocol errors returned by the server (``McpError``) are not caught:
    they propagate unchanged to whoever issued the operation.
    """

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        timeout: float = 30.0,
        notification_handler: NotificationHandler | None = None,
    ) -> None:
        self._command = command
        self._args = args or []
        self._env = env
        self._timeout = timeout
        self._notification_handler = notification_handler
        self._session: ClientSession | None = None
        self._init_result: types.InitializeResult | None = None
        self._exit_stack: AsyncExitStack | None = None
        self._connected = False

    # -- properties ----------------------------------------------------------

    @property
    def capabilities(self) -> types.ServerCapabilities:
        """Capabilities advertised by the upstream server."""
        return self._require_init().capabilities

    @property
    def server_info(self) -> types.Implementation:
        """Name and version the upstream server reported."""
        return self._require_init().serverInfo

    @property
    def instructions(self) -> str | None:
        return self._require_init().instructions

    # -- lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        """Spawn the upstream server and perform the MCP handshake.

        Raises:
            UpstreamConnectionError: If the server cannot be started
                or the MCP handshake fails.
            UpstreamTimeoutError: If the handshake times out.
        """
        if self._connected:
            raise UpstreamConnectionError("Already connected")

        stack = AsyncExitStack()
        try:
            params = StdioServerParameters(
                command=self._command,
                args=self._args,
                env=self._env,
            )

            read_stream, write_stream = await stack.enter_async_context(
                stdio_client(params)
            )

            session = await stack.enter_async_context(
                ClientSession(
                    read_stream,
                    write_stream,
                    message_handler=self._handle_message,
                    client_info=types.Implementation(
                        name=CLIENT_NAME, version=__version__,
                    ),
                )
            )

            self._init_result = await asyncio.wait_for(
                session.initialize(), timeout=self._timeout
            )
            self._session = session
            self._exit_stack = stack
            self._connected = True

        except asyncio.TimeoutError:
            await _safe_close_stack(stack)
            raise UpstreamTimeoutError(
                f"Connection to '{self._command}' timed out "
                f"after {self._timeout}s"
            )
        except (FileNotFoundError, OSError) as e:
            await _safe_close_stack(stack)
            raise UpstreamConnectionError(
                f"Failed to start '{self._command}': {e}"
            ) from e
        except Exception as e:
            await _safe_close_stack(stack)
            raise UpstreamConnectionError(
                f"Failed to connect to '{self._command}': {e}"
            ) from e

        logger.info(
            "Upstream '%s' %s connected",
            self.server_info.name,
            self.server_info.version,
        )

    async def close(self) -> None:
        """Shut down the connection and terminate the child process."""
        self._connected = False
        self._session = None
        if self._exit_stack is not None:
            await _safe_close_stack(self._exit_stack)
            self._exit_stack = None

    # -- tools ---------------------------------------------------------------

    async def list_tools(
        self, params: types.PaginatedRequestParams | None = None,
    ) -> types.ListToolsResult:
        return await self._send(
            types.ListToolsRequest(method="tools/list", params=params),
            types.ListToolsResult,
        )

    async def call_tool(
        self, params: types.CallToolRequestParams,
    ) -> types.CallToolResult:
        return await self._send(
            types.CallToolRequest(method="tools/call", params=params),
            types.CallToolResult,
        )

    # -- prompts -------------------------------------------------------------

    async def list_prompts(
        self, params: types.PaginatedRequestParams | None = None,
    ) -> types.ListPromptsResult:
        return await self._send(
            types.ListPromptsRequest(method="prompts/list", params=params),
            types.ListPromptsResult,
        )

    async def get_prompt(
        self, params: types.GetPromptRequestParams,
    ) -> types.GetPromptResult:
        return await self._send(
            types.GetPromptRequest(method="prompts/get", params=params),
            types.GetPromptResult,
        )

    # -- resources -----------------------------------------------------------

    async def list_resources(
        self, params: types.PaginatedRequestParams | None = None,
    ) -> types.ListResourcesResult:
        return await self._send(
            types.ListResourcesRequest(method="resources/list", params=params),
            types.ListResourcesResult,
        )

    async def list_resource_templates(
        self, params: types.PaginatedRequestParams | None = None,
    ) -> types.ListResourceTemplatesResult:
        return await self._send(
            types.ListResourceTemplatesRequest(
                method="resources/templates/list", params=params,
            ),
            types.ListResourceTemplatesResult,
        )

    async def read_resource(
        self, params: types.ReadResourceRequestParams,
    ) -> types.ReadResourceResult:
        return await self._send(
            types.ReadResourceRequest(method="resources/read", params=params),
            types.ReadResourceResult,
        )

    async def subscribe_resource(
        self, params: types.SubscribeRequestParams,
    ) -> types.EmptyResult:
        return await self._send(
            types.SubscribeRequest(method="resources/subscribe", params=params),
            types.EmptyResult,
        )

    async def unsubscribe_resource(
        self, params: types.UnsubscribeRequestParams,
    ) -> types.EmptyResult:
        return await self._send(
            types.UnsubscribeRequest(
                method="resources/unsubscribe", params=params,
            ),
            types.EmptyResult,
        )

    # -- completions and logging ---------------------------------------------

    async def complete(
        self, params: types.CompleteRequestParams,
    ) -> types.CompleteResult:
        return await self._send(
            types.CompleteRequest(method="completion/complete", params=params),
            types.CompleteResult,
        )

    async def set_logging_level(
        self, params: types.SetLevelRequestParams,
    ) -> types.EmptyResult:
        return await self._send(
            types.SetLevelRequest(method="logging/setLevel", params=params),
            types.EmptyResult,
        )

    # -- internals -----------------------------------------------------------

    def _require_init(self) -> types.InitializeResult:
        if self._init_result is None:
            raise UpstreamConnectionError(
                "Not connected to upstream server"
            )
        return self._init_result

    async def _send(
        self, request: Any, result_type: type[ResultT],
    ) -> ResultT:
        """Send *request* upstream as-is and parse the reply."""
        if not self._connected or self._session is None:
            raise UpstreamConnectionError(
                "Not connected to upstream server"
            )
        return await self._session.send_request(
            types.ClientRequest(request), result_type,
        )

    async def _handle_message(
        self,
        message: (
            RequestResponder[types.ServerRequest, types.ClientResult]
            | types.ServerNotification
            | Exception
        ),
    ) -> None:
        """Hand upstream notifications to the relay callback."""
        if isinstance(message, Exception):
            logger.warning("Upstream session error: %s", message)
            return
        if not isinstance(message, types.ServerNotification):
            return
        if self._notification_handler is not None:
            await self._notification_handler(message)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _safe_close_stack(stack: AsyncExitStack) -> None:
    """Close an ``AsyncExitStack``, suppressing cleanup errors.

    Catches ``BaseException`` because ``asyncio.CancelledError`` can be
    raised while the child process is torn down.
    """
    try:
        await stack.aclose()
    except BaseException:
        logger.debug("Error during stack cleanup", exc_info=True)
