"""RISKEN MCP server with an OAuth 2.1 proxy in front of an external IdP."""
