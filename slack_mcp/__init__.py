"""
Slack MCP Server
Exposes Slack workspace operations as MCP tools backed by a cached,
rate-limit aware request infrastructure
"""

__version__ = "1.0.0"
