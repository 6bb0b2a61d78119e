"""
Slack Channels Tools
Tools for listing channels, reading channel history and getting channel information
"""

from typing import Any, Dict, Optional

from slack_mcp.cache.keys import CacheKeyBuilder
from slack_mcp.utils.pagination import (
    PaginatedData, PaginationConfig, PaginationInput, collect_all_pages,
    execute_pagination, paginate
)
from .utils import (
    TOOL_ERRORS, ensure_ok, error_response, format_message_data, next_cursor,
    resolve_channel_id
)


def format_channel(channel: Dict) -> Dict:
    return {
        "id": channel.get("id"),
        "name": channel.get("name"),
        "is_private": channel.get("is_private", False),
        "is_archived": channel.get("is_archived", False),
        "num_members": channel.get("num_members", 0),
        "topic": (channel.get("topic") or {}).get("value", ""),
        "purpose": (channel.get("purpose") or {}).get("value", ""),
    }


def _pagination_config(infra: Any, fetch_page, items_field: str, format_response) -> PaginationConfig:
    return PaginationConfig(
        fetch_page=fetch_page,
        get_cursor=next_cursor,
        get_items=lambda response: response.get(items_field, []),
        format_response=format_response,
        default_max_pages=infra.settings.pagination_max_pages,
        default_max_items=infra.settings.pagination_max_items,
    )


async def list_channels(
    infra: Any,
    types: str = "public_channel,private_channel",
    exclude_archived: bool = True,
    limit: int = 200,
    pagination: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    List channels in the workspace

    Args:
        infra: SlackInfrastructure
        types: Comma-separated conversation types
        exclude_archived: Skip archived channels
        limit: Page size
        pagination: fetch_all_pages / cursor / max_pages / max_items

    Returns:
        Dict with channels, count and pagination state
    """
    try:
        page_input = PaginationInput(**(pagination or {}))
        client = infra.client_manager.get_client_for_operation("read")

        async def fetch_page(cursor: Optional[str]) -> Dict:
            response = await client.conversations_list(
                cursor=cursor, limit=limit, types=types, exclude_archived=exclude_archived
            )
            return ensure_ok(response, "list channels")

        def format_response(data: PaginatedData) -> Dict[str, Any]:
            channels = [format_channel(ch) for ch in data.items]
            return {
                "success": True,
                "channels": channels,
                "count": len(channels),
                "has_more": data.has_more,
                "next_cursor": data.cursor,
                "page_count": data.page_count,
            }

        config = _pagination_config(infra, fetch_page, "channels", format_response)
        key = CacheKeyBuilder.channel("list", params={
            "types": types,
            "exclude_archived": exclude_archived,
            "limit": limit,
            **page_input.model_dump(exclude_none=True),
        })
        return await infra.cache_or_fetch(
            "channels", key, lambda: execute_pagination(page_input, config)
        )

    except TOOL_ERRORS as e:
        return error_response(e, "list channels")


async def get_channel_info(
    infra: Any,
    channel: str,
    include_members: bool = False
) -> Dict[str, Any]:
    """
    Get detailed information about a Slack channel

    Args:
        infra: SlackInfrastructure
        channel: Channel name or ID
        include_members: Whether to include the member list

    Returns:
        Dict with channel metadata and optionally members
    """
    try:
        channel_id = await resolve_channel_id(infra, channel)
        client = infra.client_manager.get_client_for_operation("read")

        async def fetch() -> Dict[str, Any]:
            response = ensure_ok(await client.conversations_info(channel_id), "get channel info")
            details = response.get("channel", {})
            result: Dict[str, Any] = {
                "success": True,
                "channel": {
                    **format_channel(details),
                    "name_normalized": details.get("name_normalized"),
                    "is_general": details.get("is_general", False),
                    "creator": details.get("creator"),
                    "created": details.get("created"),
                },
            }

            if include_members:
                pages = paginate(
                    lambda cursor: _members_page(client, channel_id, cursor),
                    next_cursor,
                    max_pages=infra.settings.pagination_max_pages,
                    max_items=infra.settings.pagination_max_items,
                    get_items=lambda r: r.get("members", []),
                )
                members = await collect_all_pages(
                    pages, lambda r: r.get("members", []), infra.settings.pagination_max_items
                )
                result["members"] = members.items
                result["member_count"] = len(members.items)

            return result

        key = CacheKeyBuilder.channel("info", channel_id, params={"include_members": include_members})
        return await infra.cache_or_fetch("channels", key, fetch)

    except TOOL_ERRORS as e:
        return error_response(e, "get channel info")


async def _members_page(client: Any, channel_id: str, cursor: Optional[str]) -> Dict:
    return ensure_ok(
        await client.conversations_members(channel=channel_id, cursor=cursor),
        "list channel members",
    )


async def get_channel_history(
    infra: Any,
    channel: str,
    limit: int = 100,
    oldest: Optional[str] = None,
    latest: Optional[str] = None,
    pagination: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Read messages from a Slack channel

    Args:
        infra: SlackInfrastructure
        channel: Channel name or ID
        limit: Page size (Slack caps this at 1000)
        oldest: Only messages after this timestamp
        latest: Only messages before this timestamp
        pagination: fetch_all_pages / cursor / max_pages / max_items

    Returns:
        Dict with messages and pagination state
    """
    try:
        channel_id = await resolve_channel_id(infra, channel)
        client = infra.client_manager.get_client_for_operation("read")

        async def fetch_page(cursor: Optional[str]) -> Dict:
            response = await client.conversations_history(
                channel=channel_id, cursor=cursor, limit=limit, oldest=oldest, latest=latest
            )
            return ensure_ok(response, "fetch messages")

        def format_response(data: PaginatedData) -> Dict[str, Any]:
            messages = [format_message_data(m) for m in data.items]
            return {
                "success": True,
                "channel_id": channel_id,
                "messages": messages,
                "message_count": len(messages),
                "has_more": data.has_more,
                "next_cursor": data.cursor,
                "oldest": oldest,
                "latest": latest,
            }

        config = _pagination_config(infra, fetch_page, "messages", format_response)
        return await execute_pagination(pagination, config)

    except TOOL_ERRORS as e:
        return error_response(e, "read channel")
