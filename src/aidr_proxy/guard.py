"""AI Guard client for content-safety checkpoints.

Every checkpoint is one ``guard_chat_completions`` call to the CrowdStrike
AIDR API. The raw ``{status, result}`` envelope is reduced to a tagged
verdict:

- :class:`Allow`: forward the content unchanged.
- :class:`Block`: stop, and report the non-sensitive diagnostics.
- :class:`Transform`: forward the guard's substitute content instead.

A non-success status or a transport failure raises :class:`GuardError`.
There is no retry, cache or rate limiting here; each checkpoint is an
independent remote evaluation.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Union

import httpx

from aidr_proxy.config import ProxyConfig

logger = logging.getLogger("aidr_proxy.guard")

# Substituted for ``{SERVICE_NAME}`` in the base URL template
SERVICE_NAME = "aiguard"

GUARD_CHAT_COMPLETIONS_PATH = "v1/guard_chat_completions"

_SUCCESS = "Success"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class GuardError(Exception):
    """The guard call failed or did not return a usable decision."""


class GuardContractError(GuardError):
    """The guard returned a decision whose payload cannot be applied."""


# ---------------------------------------------------------------------------
# Requests and verdicts
# ---------------------------------------------------------------------------

class EventType(str, enum.Enum):
    """Checkpoint category sent as ``event_type``."""
    TOOL_LISTING = "tool_listing"
    TOOL_INPUT = "tool_input"
    TOOL_OUTPUT = "tool_output"


@dataclass(frozen=True)
class Allow:
    """Forward the content unchanged."""


@dataclass(frozen=True)
class Block:
    """Content was blocked.

    ``diagnostics`` is the guard result without ``guard_output``, so the
    guard's internal rewrite is never echoed back to the caller.
    """
    diagnostics: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Transform:
    """Content was rewritten by the guard; ``messages`` is its output."""
    messages: tuple[dict[str, Any], ...] = ()

    @property
    def content(self) -> str:
        """Content of the first substitute message.

        Raises:
            GuardContractError: If the guard sent no usable message.
        """
        if not self.messages:
            raise GuardContractError(
                "Guard returned a transform verdict without guard_output"
            )
        content = self.messages[0].get("content")
        if not isinstance(content, str):
            raise GuardContractError(
                "Guard transform message has no string content"
            )
        return content


Verdict = Union[Allow, Block, Transform]


def verdict_from_result(result: dict[str, Any] | None) -> Verdict:
    """Reduce a successful guard ``result`` to a verdict.

    ``blocked`` wins over ``transformed``; neither set means allow.
    """
    if not result:
        return Allow()
    if result.get("blocked"):
        return Block({k: v for k, v in result.items() if k != "guard_output"})
    if result.get("transformed"):
        guard_output = result.get("guard_output")
        messages: list[Any] = []
        if isinstance(guard_output, dict):
            messages = guard_output.get("messages") or []
        return Transform(tuple(m for m in messages if isinstance(m, dict)))
    return Allow()


def message(role: str, content: str) -> dict[str, str]:
    """A role-tagged guard input message."""
    return {"role": role, "content": content}


# ---------------------------------------------------------------------------
# GuardGateway
# ---------------------------------------------------------------------------

class GuardGateway:
    """Async client for the AI Guard ``guard_chat_completions`` endpoint.

    ``peer_name`` identifies the wrapped MCP server and is sent as
    ``extra_info.mcp_server_name`` with every request.

    Pass ``client`` to reuse an existing ``httpx.AsyncClient``; the
    gateway only closes clients it created itself.
    """

    def __init__(
        self,
        token: str,
        base_url_template: str,
        *,
        peer_name: str,
        app_id: str | None = None,
        app_name: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token = token
        self._url = _build_url(base_url_template)
        self._peer_name = peer_name
        self._app_id = app_id
        self._app_name = app_name
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(
        cls,
        config: ProxyConfig,
        *,
        peer_name: str,
        client: httpx.AsyncClient | None = None,
    ) -> GuardGateway:
        return cls(
            config.token,
            config.base_url_template,
            peer_name=peer_name,
            app_id=config.app_id,
            app_name=config.app_name,
            timeout=config.timeout,
            client=client,
        )

    @property
    def url(self) -> str:
        return self._url

    @property
    def peer_name(self) -> str:
        return self._peer_name

    def build_request(
        self,
        event_type: EventType,
        messages: list[dict[str, str]],
        *,
        tools: list[dict[str, Any]] | None = None,
        tool_name: str | None = None,
    ) -> dict[str, Any]:
        """Build the JSON body for one checkpoint.

        Unset optional values are left out of the body.
        """
        guard_input: dict[str, Any] = {"messages": messages}
        if tools is not None:
            guard_input["tools"] = tools

        extra_info: dict[str, Any] = {"mcp_server_name": self._peer_name}
        if self._app_name is not None:
            extra_info["app_name"] = self._app_name
        if tool_name is not None:
            extra_info["tool_name"] = tool_name

        body: dict[str, Any] = {
            "event_type": event_type.value,
            "guard_input": guard_input,
            "extra_info": extra_info,
        }
        if self._app_id is not None:
            body["app_id"] = self._app_id
        return body

    async def evaluate(
        self,
        event_type: EventType,
        messages: list[dict[str, str]],
        *,
        tools: list[dict[str, Any]] | None = None,
        tool_name: str | None = None,
    ) -> Verdict:
        """Run one checkpoint and return its verdict.

        Raises:
            GuardError: If the HTTP call fails, the response is not a
                JSON object, or its status is not ``Success``.
        """
        body = self.build_request(
            event_type, messages, tools=tools, tool_name=tool_name,
        )
        envelope = await self._post(body)

        status = envelope.get("status")
        if status != _SUCCESS:
            summary = envelope.get("summary")
            raise GuardError(
                f"Guard {event_type.value} check failed with status "
                f"{status!r}" + (f": {summary}" if summary else "")
            )

        result = envelope.get("result")
        verdict = verdict_from_result(result if isinstance(result, dict) else None)
        logger.info(
            "Guard %s check for %s: %s",
            event_type.value,
            tool_name or self._peer_name,
            type(verdict).__name__.lower(),
        )
        return verdict

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(
                self._url,
                json=body,
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.HTTPError as e:
            raise GuardError(
                f"Guard request failed: {type(e).__name__}: {e}"
            ) from e

        try:
            envelope = response.json()
        except ValueError as e:
            raise GuardError(
                f"Guard returned a non-JSON response "
                f"(HTTP {response.status_code})"
            ) from e

        if not isinstance(envelope, dict):
            raise GuardError(
                f"Guard returned {type(envelope).__name__}, expected an object "
                f"(HTTP {response.status_code})"
            )
        return envelope


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _build_url(base_url_template: str) -> str:
    base = base_url_template.replace("{SERVICE_NAME}", SERVICE_NAME)
    return f"{base.rstrip('/')}/{GUARD_CHAT_COMPLETIONS_PATH}"
