"""
MCP tools exposed by the Slack MCP server
"""
