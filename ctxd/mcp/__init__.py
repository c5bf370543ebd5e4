"""ctxd MCP server: the retrieval contract as read-only MCP tools."""
