"""
Error types for the Slack MCP server
"""

from typing import Optional


class SlackMCPError(Exception):
    """Base class for all errors raised by this package"""


class ConfigurationError(SlackMCPError, ValueError):
    """Invalid configuration detected at construction time"""


class SlackAPIError(SlackMCPError):
    """A Slack Web API call failed or returned ok=false"""

    def __init__(self, message: str, code: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class RateLimitError(SlackAPIError):
    """Slack kept answering 429 after the retry budget was spent"""

    def __init__(self, message: str, retry_after: Optional[float] = None,
                 status_code: Optional[int] = 429):
        super().__init__(message, code="ratelimited", status_code=status_code)
        self.retry_after = retry_after


def format_error(error: BaseException) -> str:
    """Render an exception as a short message for tool responses"""
    message = str(error)
    return message if message else error.__class__.__name__
