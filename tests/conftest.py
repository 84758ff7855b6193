"""Shared fixtures for the aidr-mcp-proxy test suite."""

import pytest


@pytest.fixture()
def proxy_env(monkeypatch):
    """Minimal valid guard configuration in the environment."""
    monkeypatch.setenv("CS_AIDR_TOKEN", "test-token")
    monkeypatch.setenv(
        "CS_AIDR_BASE_URL_TEMPLATE", "https://guard.test/aidr/{SERVICE_NAME}",
    )
    monkeypatch.delenv("APP_ID", raising=False)
    monkeypatch.delenv("APP_NAME", raising=False)
