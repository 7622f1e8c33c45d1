"""HTTP endpoints for mcpgate."""
