"""
Slack Utility Functions
Helper functions shared by the Slack tools
"""

import re
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from slack_mcp.cache.keys import CacheKeyBuilder
from slack_mcp.utils.errors import SlackAPIError, SlackMCPError, format_error
from slack_mcp.utils.logging import get_logger

logger = get_logger(__name__)

TOOL_ERRORS = (SlackMCPError, httpx.HTTPError, ValidationError)

FRIENDLY_ERRORS = {
    "channel_not_found": "Channel not found or the bot has no access",
    "not_in_channel": "The bot must be added to the channel first",
    "invalid_auth": "Invalid authentication token",
    "missing_scope": "Token is missing a required scope",
    "thread_not_found": "Thread not found",
    "user_not_found": "User not found",
    "file_not_found": "File not found",
    "message_not_found": "Message not found",
    "already_reacted": "Reaction already added",
    "no_reaction": "No such reaction on the message",
    "ratelimited": "Slack rate limit exceeded, try again later",
    "missing_user_token": "This operation requires SLACK_USER_TOKEN",
}


def ensure_ok(response: Dict[str, Any], action: str) -> Dict[str, Any]:
    """Raise SlackAPIError for an ok=false response"""
    if not response.get("ok"):
        code = response.get("error", "unknown_error")
        raise SlackAPIError(f"Failed to {action}: {code}", code=code)
    return response


def next_cursor(response: Dict[str, Any]) -> Optional[str]:
    return (response.get("response_metadata") or {}).get("next_cursor") or None


def error_response(error: Exception, action: str) -> Dict[str, Any]:
    """Tool failure payload"""
    logger.error("Failed to %s: %s", action, error)
    message = format_error(error)
    if not message.startswith("Failed to"):
        message = f"Failed to {action}: {message}"
    result: Dict[str, Any] = {"success": False, "error": message}
    code = getattr(error, "code", None)
    if code:
        result["error_code"] = code
        if code in FRIENDLY_ERRORS:
            result["hint"] = FRIENDLY_ERRORS[code]
    return result


def looks_like_channel_id(channel: str) -> bool:
    return bool(re.fullmatch(r"[CDG][A-Z0-9]{6,}", channel))


async def fetch_all_channels(client: Any, types: str = "public_channel,private_channel") -> List[Dict]:
    """Walk conversations.list to the end"""
    channels: List[Dict] = []
    cursor = None
    while True:
        response = ensure_ok(await client.conversations_list(cursor=cursor, types=types), "list channels")
        channels.extend(response.get("channels", []))
        cursor = next_cursor(response)
        if not cursor:
            return channels


async def resolve_channel_id(infra: Any, channel: str) -> str:
    """
    Convert channel name to ID if needed

    Args:
        infra: SlackInfrastructure
        channel: Channel name (with or without #) or channel ID

    Returns:
        Channel ID

    Raises:
        SlackAPIError: If no channel has that name
    """
    if looks_like_channel_id(channel):
        return channel

    channel_name = channel.lstrip("#")
    client = infra.client_manager.get_client_for_operation("read")
    channels = await infra.cache_or_fetch(
        "channels",
        CacheKeyBuilder.channel("directory"),
        lambda: fetch_all_channels(client),
    )

    for ch in channels:
        if ch.get("name") == channel_name:
            return ch["id"]

    raise SlackAPIError(f"Channel '{channel_name}' not found", code="channel_not_found")


def format_message_data(message: Dict, include_user: bool = True) -> Dict:
    """
    Format raw Slack message into clean structure

    Args:
        message: Raw message from Slack API
        include_user: Whether to include user information

    Returns:
        Formatted message dict
    """
    formatted = {
        "text": message.get("text", ""),
        "parsed_text": parse_message_text(message.get("text", "")),
        "ts": message.get("ts", ""),
        "thread_ts": message.get("thread_ts"),
    }

    if include_user:
        formatted["user"] = message.get("user", "")

    if "reply_count" in message:
        formatted["thread_info"] = {
            "reply_count": message.get("reply_count", 0),
            "reply_users_count": message.get("reply_users_count", 0),
            "latest_reply": message.get("latest_reply"),
        }

    if "reactions" in message:
        formatted["reactions"] = [
            {"name": r.get("name"), "count": r.get("count"), "users": r.get("users", [])}
            for r in message.get("reactions", [])
        ]

    if message.get("files"):
        formatted["files"] = [
            {"id": f.get("id"), "name": f.get("name"), "filetype": f.get("filetype")}
            for f in message["files"]
        ]

    return formatted


def parse_message_text(text: str) -> str:
    """Parse Slack's mrkdwn mentions and links into readable text"""
    text = re.sub(r"<@(U\w+)>", r"@\1", text)
    text = re.sub(r"<#C\w+\|([^>]+)>", r"#\1", text)
    text = re.sub(r"<(https?://[^|>]+)\|([^>]+)>", r"\2 (\1)", text)
    text = re.sub(r"<(https?://[^>]+)>", r"\1", text)
    return text
