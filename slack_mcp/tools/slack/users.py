"""
Slack User Tools
Tools for looking up workspace users
"""

from typing import Any, Dict, List

from slack_mcp.cache.keys import CacheKeyBuilder
from slack_mcp.utils.concurrency import process_concurrently
from slack_mcp.utils.errors import format_error
from .utils import TOOL_ERRORS, ensure_ok, error_response


def format_user(user: Dict) -> Dict:
    profile = user.get("profile") or {}
    return {
        "id": user.get("id"),
        "name": user.get("name"),
        "real_name": user.get("real_name") or profile.get("real_name"),
        "display_name": profile.get("display_name") or user.get("name"),
        "title": profile.get("title", ""),
        "email": profile.get("email"),
        "tz": user.get("tz"),
        "is_bot": user.get("is_bot", False),
        "is_admin": user.get("is_admin", False),
        "deleted": user.get("deleted", False),
    }


async def fetch_user(infra: Any, user_id: str) -> Dict:
    """Cached users.info lookup; raises SlackAPIError on failure"""
    client = infra.client_manager.get_client_for_operation("read")

    async def fetch() -> Dict:
        response = ensure_ok(await client.users_info(user_id), f"get user {user_id}")
        return format_user(response.get("user", {}))

    return await infra.cache_or_fetch("users", CacheKeyBuilder.user("info", user_id), fetch)


async def get_user_info(infra: Any, user_id: str) -> Dict[str, Any]:
    """
    Get profile information for a user

    Args:
        infra: SlackInfrastructure
        user_id: Slack user ID (U...)

    Returns:
        Dict with the user's profile
    """
    try:
        return {"success": True, "user": await fetch_user(infra, user_id)}
    except TOOL_ERRORS as e:
        return error_response(e, "get user info")


async def get_users_info(infra: Any, user_ids: List[str]) -> Dict[str, Any]:
    """
    Look up several users at once

    Lookups run with bounded concurrency; users that fail are reported by
    index instead of failing the whole request.

    Args:
        infra: SlackInfrastructure
        user_ids: Slack user IDs

    Returns:
        Dict with found users and per-index errors
    """
    try:
        result = await process_concurrently(
            user_ids,
            lambda user_id, _: fetch_user(infra, user_id),
            concurrency=infra.max_request_concurrency,
        )
        return {
            "success": True,
            "users": result.results,
            "errors": [
                {"index": e.index, "user_id": user_ids[e.index], "error": format_error(e.error)}
                for e in result.errors
            ],
            "success_count": result.success_count,
            "error_count": result.error_count,
        }
    except TOOL_ERRORS as e:
        return error_response(e, "get users info")
