"""Tool Executor MCP gateway.

Wraps N stdio MCP servers behind three tools (search, schema lookup, code
execution). Connections are opened lazily, shared, and evicted when idle.
"""
