"""mcpgate: validation and deployment gateway for MCP server plugins."""

__version__ = "0.1.0"
