"""Mirror the upstream server's capabilities onto the downstream server.

The handler table is built once, at startup, from the capabilities the
upstream server advertised in its ``initialize`` result. A request type
whose capability is absent gets no handler at all, so the MCP server
answers it with "method not found" before it reaches the proxy.

Every mirrored request is forwarded verbatim except tool traffic, which
goes through :class:`~aidr_proxy.pipeline.ToolCallPipeline`.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import mcp.types as types
from mcp.server.lowlevel import Server

from aidr_proxy.pipeline import ToolCallPipeline
from aidr_proxy.upstream import UpstreamConnection

logger = logging.getLogger("aidr_proxy.capabilities")

RequestHandler = Callable[[Any], Awaitable[types.ServerResult]]


class Capability(enum.Enum):
    """Optional MCP server features the proxy knows how to mirror."""
    LOGGING = "logging"
    PROMPTS = "prompts"
    RESOURCES = "resources"
    RESOURCE_SUBSCRIBE = "resources.subscribe"
    TOOLS = "tools"
    COMPLETIONS = "completions"


# Request type -> name of the UpstreamConnection operation it forwards to
_PASSTHROUGH: dict[Capability, tuple[tuple[type, str], ...]] = {
    Capability.LOGGING: (
        (types.SetLevelRequest, "set_logging_level"),
    ),
    Capability.PROMPTS: (
        (types.ListPromptsRequest, "list_prompts"),
        (types.GetPromptRequest, "get_prompt"),
    ),
    Capability.RESOURCES: (
        (types.ListResourcesRequest, "list_resources"),
        (types.ListResourceTemplatesRequest, "list_resource_templates"),
        (types.ReadResourceRequest, "read_resource"),
    ),
    Capability.RESOURCE_SUBSCRIBE: (
        (types.SubscribeRequest, "subscribe_resource"),
        (types.UnsubscribeRequest, "unsubscribe_resource"),
    ),
    Capability.COMPLETIONS: (
        (types.CompleteRequest, "complete"),
    ),
}

_GUARDED: dict[type, str] = {
    types.ListToolsRequest: "list_tools",
    types.CallToolRequest: "call_tool",
}

# Upstream notifications relayed downstream, by capability
_RELAYED: dict[Capability, tuple[type, ...]] = {
    Capability.LOGGING: (types.LoggingMessageNotification,),
    Capability.RESOURCE_SUBSCRIBE: (types.ResourceUpdatedNotification,),
}


@dataclass(frozen=True)
class MirroredSurface:
    """What :func:`mirror` registered.

    ``handlers`` maps each registered request type to the capability it
    belongs to; ``notifications`` holds the relayed notification types.
    """
    capabilities: frozenset[Capability]
    handlers: dict[type, Capability]
    notifications: frozenset[type]

    def relays(self, notification: types.ServerNotification) -> bool:
        return type(notification.root) in self.notifications


def advertised_capabilities(
    capabilities: types.ServerCapabilities | None,
) -> frozenset[Capability]:
    """Flags present in *capabilities*.

    A capability counts as present when its field is set at all, even to
    an empty object. ``resources.subscribe`` needs ``resources`` too.
    """
    if capabilities is None:
        return frozenset()

    found: set[Capability] = set()
    if capabilities.logging is not None:
        found.add(Capability.LOGGING)
    if capabilities.prompts is not None:
        found.add(Capability.PROMPTS)
    if capabilities.resources is not None:
        found.add(Capability.RESOURCES)
        if capabilities.resources.subscribe:
            found.add(Capability.RESOURCE_SUBSCRIBE)
    if capabilities.tools is not None:
        found.add(Capability.TOOLS)
    if capabilities.completions is not None:
        found.add(Capability.COMPLETIONS)
    return frozenset(found)


def mirror(
    server: Server,
    capabilities: types.ServerCapabilities | None,
    upstream: UpstreamConnection,
    pipeline: ToolCallPipeline,
) -> MirroredSurface:
    """Register on *server* the handlers for every advertised capability."""
    flags = advertised_capabilities(capabilities)
    registered: dict[type, Capability] = {}

    for flag in Capability:
        if flag not in flags:
            continue
        if flag is Capability.TOOLS:
            operations = [
                (request_type, getattr(pipeline, name))
                for request_type, name in _GUARDED.items()
            ]
        else:
            operations = [
                (request_type, getattr(upstream, name))
                for request_type, name in _PASSTHROUGH[flag]
            ]
        for request_type, operation in operations:
            server.request_handlers[request_type] = _forwarder(operation)
            registered[request_type] = flag

    notifications = frozenset(
        notification_type
        for flag in flags
        for notification_type in _RELAYED.get(flag, ())
    )

    logger.info(
        "Mirrored capabilities: %s",
        ", ".join(sorted(f.value for f in flags)) or "none",
    )
    return MirroredSurface(
        capabilities=flags,
        handlers=registered,
        notifications=notifications,
    )


def _forwarder(
    operation: Callable[[Any], Awaitable[types.Result]],
) -> RequestHandler:
    """Wrap an operation taking request params as a low-level handler."""
    async def handler(request: Any) -> types.ServerResult:
        return types.ServerResult(await operation(request.params))

    return handler
