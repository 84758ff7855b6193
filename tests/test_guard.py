"""Tests for the AI Guard gateway.

Tests cover: request body shape, URL template expansion, verdict
reduction (allow, block, transform), and failure handling for
non-success statuses, transport errors and malformed responses.
"""

import asyncio
import json

import httpx
import pytest

from aidr_proxy.config import ProxyConfig
from aidr_proxy.guard import (
    Allow,
    Block,
    EventType,
    GuardContractError,
    GuardError,
    GuardGateway,
    Transform,
    message,
    verdict_from_result,
)

TEMPLATE = "https://api.example.test/aidr/{SERVICE_NAME}"


# =============================================================================
# HELPERS
# =============================================================================

def _gateway(handler, **kwargs):
    """Gateway whose HTTP traffic is served by *handler*. Returns
    ``(gateway, requests)`` where ``requests`` collects sent requests."""
    requests = []

    def _record(request):
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(_record))
    kwargs.setdefault("peer_name", "weather-server")
    gateway = GuardGateway("secret-token", TEMPLATE, client=client, **kwargs)
    return gateway, requests


def _respond(body, status_code=200):
    return lambda request: httpx.Response(status_code, json=body)


def _evaluate(gateway, *args, **kwargs):
    return asyncio.run(gateway.evaluate(*args, **kwargs))


# =============================================================================
# 1. REQUEST SHAPE
# =============================================================================

class TestRequestShape:
    def test_posts_to_guard_chat_completions(self):
        gateway, requests = _gateway(_respond({"status": "Success", "result": {}}))

        _evaluate(gateway, EventType.TOOL_INPUT, [message("user", "{}")])

        assert len(requests) == 1
        request = requests[0]
        assert request.method == "POST"
        assert str(request.url) == (
            "https://api.example.test/aidr/aiguard/v1/guard_chat_completions"
        )
        assert request.headers["Authorization"] == "Bearer secret-token"

    def test_body_for_tool_input(self):
        gateway, requests = _gateway(
            _respond({"status": "Success", "result": {}}),
            app_id="app-1",
            app_name="My App",
        )

        _evaluate(
            gateway,
            EventType.TOOL_INPUT,
            [message("user", '{"q":"x"}')],
            tool_name="search",
        )

        body = json.loads(requests[0].content)
        assert body == {
            "event_type": "tool_input",
            "guard_input": {
                "messages": [{"role": "user", "content": '{"q":"x"}'}],
            },
            "app_id": "app-1",
            "extra_info": {
                "app_name": "My App",
                "mcp_server_name": "weather-server",
                "tool_name": "search",
            },
        }

    def test_body_for_tool_listing_carries_tools(self):
        gateway, requests = _gateway(_respond({"status": "Success", "result": {}}))
        tools = [{"name": "search", "inputSchema": {"type": "object"}}]

        _evaluate(gateway, EventType.TOOL_LISTING, [], tools=tools)

        body = json.loads(requests[0].content)
        assert body["event_type"] == "tool_listing"
        assert body["guard_input"] == {"messages": [], "tools": tools}
        assert "app_id" not in body
        assert body["extra_info"] == {"mcp_server_name": "weather-server"}

    def test_template_without_placeholder_is_used_as_is(self):
        gateway = GuardGateway(
            "t", "https://guard.internal/", peer_name="p",
            client=httpx.AsyncClient(),
        )
        assert gateway.url == "https://guard.internal/v1/guard_chat_completions"

    def test_from_config(self):
        config = ProxyConfig(
            token="tok",
            base_url_template=TEMPLATE,
            app_id="app",
            app_name="name",
            timeout=5.0,
        )
        gateway = GuardGateway.from_config(
            config, peer_name="peer", client=httpx.AsyncClient(),
        )
        body = gateway.build_request(EventType.TOOL_OUTPUT, [])
        assert body["app_id"] == "app"
        assert body["extra_info"]["app_name"] == "name"
        assert gateway.peer_name == "peer"


# =============================================================================
# 2. VERDICTS
# =============================================================================

class TestVerdicts:
    def test_success_without_flags_is_allow(self):
        gateway, _ = _gateway(_respond({
            "status": "Success",
            "result": {"blocked": False, "transformed": False},
        }))

        assert _evaluate(gateway, EventType.TOOL_OUTPUT, []) == Allow()

    def test_success_without_result_is_allow(self):
        gateway, _ = _gateway(_respond({"status": "Success"}))

        assert _evaluate(gateway, EventType.TOOL_OUTPUT, []) == Allow()

    def test_blocked_result_keeps_diagnostics_without_guard_output(self):
        gateway, _ = _gateway(_respond({
            "status": "Success",
            "result": {
                "blocked": True,
                "transformed": False,
                "reason": "pii",
                "guard_output": {"messages": [{"role": "user", "content": "x"}]},
            },
        }))

        verdict = _evaluate(gateway, EventType.TOOL_INPUT, [])

        assert verdict == Block({
            "blocked": True, "transformed": False, "reason": "pii",
        })

    def test_transformed_result_exposes_substitute_content(self):
        gateway, _ = _gateway(_respond({
            "status": "Success",
            "result": {
                "blocked": False,
                "transformed": True,
                "guard_output": {
                    "messages": [{"role": "tool", "content": "<REDACTED>"}],
                },
            },
        }))

        verdict = _evaluate(gateway, EventType.TOOL_OUTPUT, [])

        assert isinstance(verdict, Transform)
        assert verdict.content == "<REDACTED>"

    def test_blocked_wins_over_transformed(self):
        verdict = verdict_from_result({
            "blocked": True,
            "transformed": True,
            "guard_output": {"messages": [{"role": "tool", "content": "x"}]},
        })
        assert isinstance(verdict, Block)

    def test_transform_without_guard_output_is_contract_error(self):
        verdict = verdict_from_result({"transformed": True})

        assert isinstance(verdict, Transform)
        with pytest.raises(GuardContractError):
            verdict.content

    def test_transform_with_non_string_content_is_contract_error(self):
        verdict = verdict_from_result({
            "transformed": True,
            "guard_output": {"messages": [{"role": "tool", "content": 7}]},
        })
        with pytest.raises(GuardContractError):
            verdict.content


# =============================================================================
# 3. FAILURES
# =============================================================================

class TestFailures:
    def test_non_success_status_raises(self):
        gateway, _ = _gateway(_respond(
            {"status": "ValidationError", "summary": "bad event_type"},
            status_code=400,
        ))

        with pytest.raises(GuardError, match="ValidationError.*bad event_type"):
            _evaluate(gateway, EventType.TOOL_INPUT, [])

    def test_transport_error_raises(self):
        def _fail(request):
            raise httpx.ConnectError("connection refused", request=request)

        gateway, _ = _gateway(_fail)

        with pytest.raises(GuardError, match="ConnectError"):
            _evaluate(gateway, EventType.TOOL_OUTPUT, [])

    def test_non_json_response_raises(self):
        gateway, _ = _gateway(
            lambda request: httpx.Response(502, text="<html>Bad Gateway</html>"),
        )

        with pytest.raises(GuardError, match="HTTP 502"):
            _evaluate(gateway, EventType.TOOL_OUTPUT, [])

    def test_non_object_json_raises(self):
        gateway, _ = _gateway(_respond(["Success"]))

        with pytest.raises(GuardError, match="expected an object"):
            _evaluate(gateway, EventType.TOOL_OUTPUT, [])

    def test_each_checkpoint_is_a_separate_request(self):
        gateway, requests = _gateway(_respond({"status": "Success", "result": {}}))

        _evaluate(gateway, EventType.TOOL_INPUT, [message("user", "{}")])
        _evaluate(gateway, EventType.TOOL_INPUT, [message("user", "{}")])

        assert len(requests) == 2


# =============================================================================
# 4. CLIENT OWNERSHIP
# =============================================================================

class TestClientOwnership:
    def test_injected_client_is_not_closed(self):
        client = httpx.AsyncClient()
        gateway = GuardGateway("t", TEMPLATE, peer_name="p", client=client)

        asyncio.run(gateway.aclose())

        assert not client.is_closed

    def test_own_client_is_closed(self):
        gateway = GuardGateway("t", TEMPLATE, peer_name="p")

        asyncio.run(gateway.aclose())

        assert gateway._client.is_closed
