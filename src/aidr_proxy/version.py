"""Single source of truth for the aidr-mcp-proxy version."""

__version__ = "1.0.0"
