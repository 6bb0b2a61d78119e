"""
Slack Messages Tools
Tools for sending and searching Slack messages
"""

from typing import Any, Dict, List, Optional

from slack_mcp.utils.logging import get_logger
from .utils import TOOL_ERRORS, ensure_ok, error_response, format_message_data, resolve_channel_id

logger = get_logger(__name__)


async def send_message(
    infra: Any,
    channel: str,
    text: str,
    blocks: Optional[List[Dict]] = None,
    thread_ts: Optional[str] = None
) -> Dict[str, Any]:
    """
    Send a message to a Slack channel

    Cached history, thread and search entries for the channel are dropped
    after a successful post.

    Args:
        infra: SlackInfrastructure
        channel: Channel name (with or without #) or channel ID
        text: Plain text message (fallback for blocks)
        blocks: Block Kit formatted message blocks
        thread_ts: Thread timestamp to reply to

    Returns:
        Dict with success status, message ts, and channel
    """
    try:
        channel_id = await resolve_channel_id(infra, channel)
        client = infra.client_manager.get_client_for_operation("write")

        result = ensure_ok(
            await client.post_message(channel=channel_id, text=text, blocks=blocks, thread_ts=thread_ts),
            "send message",
        )

        invalidated = infra.invalidate_channel(channel_id)
        logger.debug("Dropped %d cache entries after posting to %s", invalidated, channel_id)

        return {
            "success": True,
            "message_ts": result.get("ts"),
            "channel": result.get("channel", channel_id),
            "thread_ts": thread_ts,
            "message": "Message sent successfully"
        }

    except TOOL_ERRORS as e:
        return error_response(e, "send message")


async def search_messages(
    infra: Any,
    query: str,
    count: int = 20,
    page: int = 1,
    sort: str = "score",
    sort_dir: str = "desc"
) -> Dict[str, Any]:
    """
    Search messages across the workspace (needs SLACK_USER_TOKEN)

    Results sorted by timestamp are cached as volatile, which shortens
    their TTL.

    Args:
        infra: SlackInfrastructure
        query: Slack search query, e.g. 'deploy in:#ops from:@alice after:2024-01-01'
        count: Results per page
        page: Result page
        sort: "score" or "timestamp"
        sort_dir: "asc" or "desc"

    Returns:
        Dict with matching messages and paging info
    """
    try:
        client = infra.client_manager.get_user_client()

        async def fetch() -> Dict[str, Any]:
            response = ensure_ok(
                await client.search_messages(query, count=count, page=page, sort=sort, sort_dir=sort_dir),
                "search messages",
            )
            found = response.get("messages", {})
            matches = []
            for match in found.get("matches", []):
                formatted = format_message_data(match)
                formatted["channel"] = {
                    "id": (match.get("channel") or {}).get("id"),
                    "name": (match.get("channel") or {}).get("name"),
                }
                formatted["permalink"] = match.get("permalink")
                matches.append(formatted)

            paging = found.get("paging", {})
            return {
                "success": True,
                "query": query,
                "messages": matches,
                "total": found.get("total", len(matches)),
                "page": paging.get("page", page),
                "pages": paging.get("pages", 1),
            }

        return await infra.cache_or_fetch(
            "search",
            query,
            fetch,
            options={"count": count, "page": page, "sort": sort, "sort_dir": sort_dir},
            volatile=sort == "timestamp",
        )

    except TOOL_ERRORS as e:
        return error_response(e, "search messages")
