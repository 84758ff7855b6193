"""aidr-mcp-proxy: CrowdStrike AIDR guard proxy for stdio MCP servers.

Wraps an MCP server subprocess, mirrors its capabilities, and runs tool
listings, tool inputs and tool outputs through AI Guard before they are
forwarded.
"""

from .version import __version__

__all__ = ["__version__", "main"]


def main() -> None:
    """CLI entry point for ``aidr-mcp-proxy``."""
    from aidr_proxy.server import run_proxy

    run_proxy()
