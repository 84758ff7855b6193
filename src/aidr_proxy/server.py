"""Proxy MCP server: wraps one stdio MCP server behind AI Guard checks.

The proxy connects to the wrapped server, then serves the original caller
on stdio as if it were that server: same name, version, instructions and
capabilities. Requests are routed through the handler table built by
:func:`~aidr_proxy.capabilities.mirror`.

Uses the low-level ``mcp.server.lowlevel.Server`` so handlers can return
upstream results untouched, and drives the ``ServerSession`` directly so
upstream notifications can be relayed to the caller.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import AsyncExitStack
from typing import Any

import anyio
import mcp.types as types
from mcp.server.lowlevel import Server
from mcp.server.models import InitializationOptions
from mcp.server.session import ServerSession
from mcp.server.stdio import stdio_server
from mcp.shared.exceptions import McpError

from aidr_proxy.capabilities import MirroredSurface, mirror
from aidr_proxy.config import ProxyConfig
from aidr_proxy.guard import GuardGateway
from aidr_proxy.pipeline import ToolCallPipeline
from aidr_proxy.upstream import UpstreamConnection

logger = logging.getLogger("aidr_proxy.server")

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class AIDRProxy:
    """MCP proxy that guards tool traffic of a wrapped stdio server.

    Usage::

        proxy = AIDRProxy(
            command="npx",
            args=["-y", "@modelcontextprotocol/server-everything"],
            config=load_proxy_config(),
        )
        asyncio.run(proxy.run_stdio())

    ``guard`` may be passed to reuse an existing gateway; otherwise one
    is built from ``config`` once the upstream server's name is known.
    """

    def __init__(
        self,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        *,
        config: ProxyConfig | None = None,
        guard: Any = None,
        timeout: float = 30.0,
    ) -> None:
        if config is None and guard is None:
            raise ValueError("Either 'config' or 'guard' is required")

        self._config = config
        self._guard = guard
        self._owns_guard = guard is None
        self._upstream = UpstreamConnection(
            command=command,
            args=args,
            env=env,
            timeout=timeout,
            notification_handler=self._relay_notification,
        )
        self._server: Server | None = None
        self._surface: MirroredSurface | None = None
        self._session: ServerSession | None = None

    # -- properties ----------------------------------------------------------

    @property
    def upstream(self) -> UpstreamConnection:
        return self._upstream

    @property
    def server(self) -> Server:
        """The downstream MCP server. Only available after :meth:`start`."""
        if self._server is None:
            raise RuntimeError("Proxy not started")
        return self._server

    @property
    def surface(self) -> MirroredSurface:
        if self._surface is None:
            raise RuntimeError("Proxy not started")
        return self._surface

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Connect upstream and build the mirrored downstream server.

        Raises:
            UpstreamConnectionError: If the wrapped server cannot be
                started or the MCP handshake fails.
            UpstreamTimeoutError: If the handshake times out.
        """
        await self._upstream.connect()
        info = self._upstream.server_info

        if self._guard is None:
            self._guard = GuardGateway.from_config(
                self._config, peer_name=info.name,
            )

        self._server = Server(
            info.name,
            version=info.version,
            instructions=self._upstream.instructions,
        )
        pipeline = ToolCallPipeline(self._upstream, self._guard)
        self._surface = mirror(
            self._server,
            self._upstream.capabilities,
            self._upstream,
            pipeline,
        )
        logger.info(
            "Proxy started for '%s': %d handlers",
            info.name,
            len(self._surface.handlers),
        )

    async def shutdown(self) -> None:
        """Disconnect from the wrapped server and release the guard."""
        await self._upstream.close()
        if self._owns_guard and self._guard is not None:
            await self._guard.aclose()
            self._guard = None
        self._server = None
        self._surface = None

    def initialization_options(self) -> InitializationOptions:
        """Identity and capabilities announced to the caller: the upstream's."""
        info = self._upstream.server_info
        return InitializationOptions(
            server_name=info.name,
            server_version=info.version,
            capabilities=self._upstream.capabilities,
            instructions=self._upstream.instructions,
        )

    async def serve(self, read_stream: Any, write_stream: Any) -> None:
        """Serve the caller on the given streams until they close.

        Each incoming message is handled in its own task, so concurrent
        tool calls may interleave.
        """
        server = self.server
        async with AsyncExitStack() as stack:
            lifespan_context = await stack.enter_async_context(
                server.lifespan(server)
            )
            session = await stack.enter_async_context(
                ServerSession(
                    read_stream,
                    write_stream,
                    self.initialization_options(),
                )
            )
            self._session = session
            try:
                async with anyio.create_task_group() as tg:
                    async for message in session.incoming_messages:
                        tg.start_soon(
                            server._handle_message,
                            message,
                            session,
                            lifespan_context,
                        )
            finally:
                self._session = None

    async def run_stdio(self) -> None:
        """Start the proxy, serve on stdio, and shut down on exit."""
        await self.start()
        try:
            async with stdio_server() as (read_stream, write_stream):
                await self.serve(read_stream, write_stream)
        finally:
            await self.shutdown()

    # -- notifications -------------------------------------------------------

    async def _relay_notification(
        self, notification: types.ServerNotification,
    ) -> None:
        """Forward a mirrored upstream notification to the caller.

        Fire-and-forget: a failed relay is logged and dropped.
        """
        method = notification.root.method
        if self._surface is None or not self._surface.relays(notification):
            logger.debug("Not relaying upstream notification %s", method)
            return
        session = self._session
        if session is None:
            logger.debug("No downstream session; dropping %s", method)
            return
        try:
            await session.send_notification(_outgoing(notification))
        except (McpError, anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            logger.warning("Failed to relay %s: %s", method, e)


def _outgoing(notification: types.ServerNotification) -> types.ServerNotification:
    """Rebuild a received notification without its ``jsonrpc`` envelope field.

    ``ServerSession.send_notification`` adds ``jsonrpc`` itself; a
    notification parsed off the upstream stream still carries it as an
    extra field.
    """
    inner = notification.root
    data = inner.model_dump(by_alias=True, mode="json", exclude={"jsonrpc"})
    return types.ServerNotification(type(inner).model_validate(data))


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def run_proxy(argv: list[str] | None = None) -> None:
    """Parse the command line and run the proxy on stdio.

    Exits with status 1 on configuration errors, when no command is
    given, or when the wrapped server cannot be started.
    """
    import argparse
    import asyncio

    from aidr_proxy.config import ProxyConfigError, load_proxy_config
    from aidr_proxy.upstream import UpstreamError

    parser = argparse.ArgumentParser(
        prog="aidr-mcp-proxy",
        description="CrowdStrike AIDR guard proxy for stdio MCP servers",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to an optional YAML config file",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level for stderr output (default: WARNING)",
    )
    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="MCP server command line to wrap",
    )
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)

    try:
        config = load_proxy_config(args.config)
    except ProxyConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("Error: No command provided.", file=sys.stderr)
        sys.exit(1)

    proxy = AIDRProxy(
        command=command[0],
        args=command[1:],
        env=dict(os.environ),
        config=config,
    )
    try:
        asyncio.run(proxy.run_stdio())
    except UpstreamError as e:
        print(f"Upstream error: {e}", file=sys.stderr)
        sys.exit(1)


def _configure_logging(level: str) -> None:
    """Log to stderr; stdout carries the MCP protocol."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root = logging.getLogger("aidr_proxy")
    root.addHandler(handler)
    root.setLevel(level)
