"""ActionFlow MCP: scheduled work item execution engine for agent platforms."""

__version__ = "0.1.0"
