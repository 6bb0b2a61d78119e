"""
Slack Thread Tools
Tools for reading thread replies and discovering threads in a channel
"""

from typing import Any, Dict, List, Optional

from slack_mcp.cache.keys import CacheKeyBuilder
from slack_mcp.utils.concurrency import map_concurrently
from slack_mcp.utils.pagination import (
    PaginatedData, PaginationConfig, PaginationInput, collect_all_pages,
    execute_pagination, paginate
)
from .utils import (
    TOOL_ERRORS, ensure_ok, error_response, format_message_data, next_cursor,
    resolve_channel_id
)


async def _fetch_all_replies(infra: Any, client: Any, channel_id: str, thread_ts: str) -> List[Dict]:
    async def fetch() -> List[Dict]:
        pages = paginate(
            lambda cursor: _replies_page(client, channel_id, thread_ts, cursor),
            next_cursor,
            max_pages=infra.settings.pagination_max_pages,
        )
        collected = await collect_all_pages(pages, lambda r: r.get("messages", []))
        # The first message is the thread parent
        return [format_message_data(m) for m in collected.items[1:]]

    key = CacheKeyBuilder.thread("all_replies", channel_id, thread_ts)
    return await infra.cache_or_fetch("threads", key, fetch)


async def _replies_page(client: Any, channel_id: str, thread_ts: str,
                        cursor: Optional[str]) -> Dict:
    return ensure_ok(
        await client.conversations_replies(channel=channel_id, ts=thread_ts, cursor=cursor),
        "fetch thread replies",
    )


async def get_thread_replies(
    infra: Any,
    channel: str,
    thread_ts: str,
    pagination: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Get the parent message and replies of a thread

    Args:
        infra: SlackInfrastructure
        channel: Channel name or ID
        thread_ts: Timestamp of the parent message
        pagination: fetch_all_pages / cursor / max_pages / max_items

    Returns:
        Dict with the parent message, replies and pagination state
    """
    try:
        page_input = PaginationInput(**(pagination or {}))
        channel_id = await resolve_channel_id(infra, channel)
        client = infra.client_manager.get_client_for_operation("read")

        def format_response(data: PaginatedData) -> Dict[str, Any]:
            messages = [format_message_data(m) for m in data.items]
            parent = None
            if messages and messages[0]["ts"] == thread_ts:
                parent, messages = messages[0], messages[1:]
            return {
                "success": True,
                "channel_id": channel_id,
                "thread_ts": thread_ts,
                "parent": parent,
                "replies": messages,
                "reply_count": len(messages),
                "has_more": data.has_more,
                "next_cursor": data.cursor,
            }

        config = PaginationConfig(
            fetch_page=lambda cursor: _replies_page(client, channel_id, thread_ts, cursor),
            get_cursor=next_cursor,
            get_items=lambda r: r.get("messages", []),
            format_response=format_response,
            default_max_pages=infra.settings.pagination_max_pages,
            default_max_items=infra.settings.pagination_max_items,
        )
        key = CacheKeyBuilder.thread(
            "replies", channel_id, thread_ts, params=page_input.model_dump(exclude_none=True)
        )
        return await infra.cache_or_fetch(
            "threads", key, lambda: execute_pagination(page_input, config)
        )

    except TOOL_ERRORS as e:
        return error_response(e, "get thread replies")


async def find_threads_in_channel(
    infra: Any,
    channel: str,
    oldest: Optional[str] = None,
    latest: Optional[str] = None,
    include_replies: bool = True,
    max_pages: Optional[int] = None
) -> Dict[str, Any]:
    """
    Find messages with replies in a channel and optionally load every thread

    Replies are fetched concurrently, bounded by the configured request
    concurrency. A thread whose replies fail to load is still listed with
    replies set to None.

    Args:
        infra: SlackInfrastructure
        channel: Channel name or ID
        oldest: Only threads started after this timestamp
        latest: Only threads started before this timestamp
        include_replies: Fetch the replies of each thread
        max_pages: History pages to scan (defaults to the configured limit)

    Returns:
        Dict with threads and the number of failed reply fetches
    """
    try:
        channel_id = await resolve_channel_id(infra, channel)
        client = infra.client_manager.get_client_for_operation("read")

        async def history_page(cursor: Optional[str]) -> Dict:
            return ensure_ok(
                await client.conversations_history(
                    channel=channel_id, cursor=cursor, limit=200, oldest=oldest, latest=latest
                ),
                "fetch messages",
            )

        pages = paginate(
            history_page,
            next_cursor,
            max_pages=max_pages or infra.settings.pagination_max_pages,
            max_items=infra.settings.pagination_max_items,
            get_items=lambda r: r.get("messages", []),
        )
        history = await collect_all_pages(
            pages, lambda r: r.get("messages", []), infra.settings.pagination_max_items
        )
        parents = [m for m in history.items if m.get("reply_count", 0) > 0]

        replies: List[Optional[List[Dict]]] = [None] * len(parents)
        if include_replies and parents:
            replies = await map_concurrently(
                parents,
                lambda parent, _: _fetch_all_replies(infra, client, channel_id, parent["ts"]),
                concurrency=infra.max_request_concurrency,
            )

        threads = []
        for parent, thread_replies in zip(parents, replies):
            threads.append({
                "parent": format_message_data(parent),
                "reply_count": parent.get("reply_count", 0),
                "replies": thread_replies,
            })

        return {
            "success": True,
            "channel_id": channel_id,
            "threads": threads,
            "thread_count": len(threads),
            "pages_scanned": history.page_count,
            "failed_reply_fetches": (
                sum(1 for r in replies if r is None) if include_replies else 0
            ),
        }

    except TOOL_ERRORS as e:
        return error_response(e, "find threads")
