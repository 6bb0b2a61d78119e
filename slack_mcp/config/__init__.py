"""
Configuration for the Slack MCP server
"""

from .settings import Settings, load_settings

__all__ = ["Settings", "load_settings"]
