"""Guarded handling of ``tools/list`` and ``tools/call``.

Tool listing gets one ``tool_listing`` checkpoint. A tool call runs
through four stages, in order, and never revisits one:

1. INPUT_GUARD: the call arguments are checked as one ``user`` message.
2. UPSTREAM_CALL: the tool is invoked on the upstream server with the
   original or guard-substituted arguments.
3. OUTPUT_GUARD: structured output is checked as one ``tool`` message;
   otherwise every text item is checked on its own, in order.
4. RESPOND: the (possibly rewritten) result goes back downstream.

A block ends the call early with a tool result carrying a block notice.
A guard failure ends it with an MCP error response for that request only.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import mcp.types as types
from mcp.shared.exceptions import McpError

from aidr_proxy.guard import (
    Block,
    EventType,
    GuardContractError,
    GuardError,
    Transform,
    Verdict,
    message,
)

logger = logging.getLogger("aidr_proxy.pipeline")

INPUT_BLOCKED = "Input has been blocked by CrowdStrike AIDR."
OUTPUT_BLOCKED = "Output has been blocked by CrowdStrike AIDR."


class ToolUpstream(Protocol):
    async def list_tools(
        self, params: types.PaginatedRequestParams | None = None,
    ) -> types.ListToolsResult: ...

    async def call_tool(
        self, params: types.CallToolRequestParams,
    ) -> types.CallToolResult: ...


class Guard(Protocol):
    async def evaluate(
        self,
        event_type: EventType,
        messages: list[dict[str, str]],
        *,
        tools: list[dict[str, Any]] | None = None,
        tool_name: str | None = None,
    ) -> Verdict: ...


# ---------------------------------------------------------------------------
# Invocation context
# ---------------------------------------------------------------------------

@dataclass
class ToolInvocation:
    """State of a single ``tools/call`` round trip.

    ``checkpoints`` counts guard evaluations started for this call.
    """
    params: types.CallToolRequestParams
    arguments: dict[str, Any] | None = None
    response: types.CallToolResult | None = None
    checkpoints: int = 0

    @classmethod
    def start(cls, params: types.CallToolRequestParams) -> ToolInvocation:
        return cls(params=params, arguments=params.arguments)

    @property
    def tool_name(self) -> str:
        return self.params.name


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class ToolCallPipeline:
    """Runs tool traffic through the guard before forwarding it."""

    def __init__(self, upstream: ToolUpstream, guard: Guard) -> None:
        self._upstream = upstream
        self._guard = guard

    # -- tools/list ----------------------------------------------------------

    async def list_tools(
        self, params: types.PaginatedRequestParams | None = None,
    ) -> types.ListToolsResult:
        """Fetch the upstream listing and guard it as a whole.

        A blocked listing keeps every field except ``tools``, which is
        emptied. Transform verdicts do not apply to listings.
        """
        response = await self._upstream.list_tools(params)
        tools = [
            tool.model_dump(mode="json", by_alias=True, exclude_none=True)
            for tool in response.tools
        ]
        try:
            verdict = await self._guard.evaluate(
                EventType.TOOL_LISTING, [], tools=tools,
            )
        except GuardError as e:
            raise _guard_failure("Failed to guard tools list", e) from e

        if isinstance(verdict, Block):
            logger.warning(
                "Tool listing blocked (%d tools withheld)", len(tools),
            )
            return response.model_copy(update={"tools": []})
        return response

    # -- tools/call ----------------------------------------------------------

    async def call_tool(
        self, params: types.CallToolRequestParams,
    ) -> types.CallToolResult:
        """Guard, forward, and guard the result of one tool call.

        Raises:
            McpError: If a guard checkpoint fails. Upstream ``McpError``
                responses propagate unchanged.
        """
        invocation = ToolInvocation.start(params)
        try:
            return await self.run(invocation)
        except GuardError as e:
            raise _guard_failure(
                f"Failed to guard tool '{invocation.tool_name}'", e,
            ) from e

    async def run(self, invocation: ToolInvocation) -> types.CallToolResult:
        """Drive *invocation* through all stages and return its result."""
        blocked = await self._guard_input(invocation)
        if blocked is not None:
            return blocked

        invocation.response = await self._upstream.call_tool(
            invocation.params.model_copy(
                update={"arguments": invocation.arguments},
            )
        )

        if invocation.response.structuredContent is not None:
            return await self._guard_structured_output(invocation)
        return await self._guard_text_output(invocation)

    # -- stages --------------------------------------------------------------

    async def _guard_input(
        self, invocation: ToolInvocation,
    ) -> types.CallToolResult | None:
        """Check the arguments; return a result only if the call must stop."""
        content = "" if invocation.arguments is None else _dumps(invocation.arguments)
        verdict = await self._check(
            invocation, EventType.TOOL_INPUT, "user", content,
        )

        if isinstance(verdict, Block):
            logger.warning("Input to tool '%s' blocked", invocation.tool_name)
            return _notice(INPUT_BLOCKED, verdict)

        if isinstance(verdict, Transform):
            invocation.arguments = _parse_arguments(verdict.content)
            logger.info(
                "Input to tool '%s' transformed", invocation.tool_name,
            )
        return None

    async def _guard_structured_output(
        self, invocation: ToolInvocation,
    ) -> types.CallToolResult:
        response = invocation.response
        verdict = await self._check(
            invocation,
            EventType.TOOL_OUTPUT,
            "tool",
            _dumps(response.structuredContent),
        )

        if isinstance(verdict, Block):
            logger.warning("Output of tool '%s' blocked", invocation.tool_name)
            return _notice(OUTPUT_BLOCKED, verdict)

        if isinstance(verdict, Transform):
            substitute = verdict.content
            try:
                structured = json.loads(substitute)
            except ValueError:
                structured = None
            if isinstance(structured, dict):
                return response.model_copy(update={
                    "structuredContent": structured,
                    "content": [_text(_dumps(structured))],
                })
            logger.info(
                "Transformed output of tool '%s' is not a JSON object; "
                "returning it as text",
                invocation.tool_name,
            )
            return response.model_copy(update={
                "structuredContent": None,
                "content": [_text(substitute)],
            })

        return response

    async def _guard_text_output(
        self, invocation: ToolInvocation,
    ) -> types.CallToolResult:
        """Check each text item in order, stopping at the first block."""
        response = invocation.response
        content = list(response.content)
        transformed = False

        for index, item in enumerate(content):
            if not isinstance(item, types.TextContent):
                continue
            verdict = await self._check(
                invocation, EventType.TOOL_OUTPUT, "tool", item.text,
            )
            if isinstance(verdict, Block):
                logger.warning(
                    "Output item %d of tool '%s' blocked",
                    index, invocation.tool_name,
                )
                return _notice(OUTPUT_BLOCKED, verdict, is_error=True)
            if isinstance(verdict, Transform):
                content[index] = item.model_copy(update={"text": verdict.content})
                transformed = True

        if transformed:
            return response.model_copy(update={"content": content})
        return response

    async def _check(
        self,
        invocation: ToolInvocation,
        event_type: EventType,
        role: str,
        content: str,
    ) -> Verdict:
        invocation.checkpoints += 1
        return await self._guard.evaluate(
            event_type,
            [message(role, content)],
            tool_name=invocation.tool_name,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _dumps(value: Any) -> str:
    """Compact JSON, the form the guard sees for structured values."""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _text(text: str) -> types.TextContent:
    return types.TextContent(type="text", text=text)


def _notice(
    headline: str, verdict: Block, *, is_error: bool = False,
) -> types.CallToolResult:
    details = json.dumps(verdict.diagnostics, indent=2, ensure_ascii=False)
    return types.CallToolResult(
        content=[_text(f"{headline}\n\n{details}")],
        isError=is_error,
    )


def _parse_arguments(substitute: str) -> dict[str, Any]:
    """Parse guard-substituted arguments, which must be a JSON object."""
    try:
        arguments = json.loads(substitute)
    except ValueError as e:
        raise GuardContractError(
            "Guard substituted tool arguments that are not valid JSON"
        ) from e
    if not isinstance(arguments, dict):
        raise GuardContractError(
            "Guard substituted tool arguments that are not a JSON object "
            f"(got {type(arguments).__name__})"
        )
    return arguments


def _guard_failure(context: str, error: GuardError) -> McpError:
    logger.error("%s: %s", context, error)
    return McpError(
        types.ErrorData(code=types.INTERNAL_ERROR, message=f"{context}. {error}")
    )
