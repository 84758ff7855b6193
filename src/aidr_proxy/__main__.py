"""
Entry point for running the proxy as a module.

    python -m aidr_proxy -- npx -y @modelcontextprotocol/server-everything
    aidr-mcp-proxy -- npx -y @modelcontextprotocol/server-everything
"""

from aidr_proxy import main


if __name__ == "__main__":
    main()
