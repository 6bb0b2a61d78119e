"""
Slack Workspace Tools
Tools for workspace details, team members and server health
"""

from typing import Any, Dict, Optional

from slack_mcp.cache.keys import CacheKeyBuilder
from slack_mcp.utils.pagination import (
    PaginatedData, PaginationConfig, PaginationInput, execute_pagination
)
from .users import format_user
from .utils import TOOL_ERRORS, ensure_ok, error_response, next_cursor


async def get_workspace_info(infra: Any) -> Dict[str, Any]:
    """
    Get information about the Slack workspace

    Returns:
        Dict with the team's id, name, domain and icon
    """
    try:
        client = infra.client_manager.get_client_for_operation("read")

        async def fetch() -> Dict[str, Any]:
            team = ensure_ok(await client.team_info(), "get workspace info").get("team", {})
            return {
                "success": True,
                "workspace": {
                    "id": team.get("id"),
                    "name": team.get("name"),
                    "domain": team.get("domain"),
                    "email_domain": team.get("email_domain") or None,
                    "icon": (team.get("icon") or {}).get("image_132"),
                },
            }

        return await infra.cache_or_fetch("users", CacheKeyBuilder.user("team_info"), fetch)

    except TOOL_ERRORS as e:
        return error_response(e, "get workspace info")


async def list_team_members(
    infra: Any,
    include_bots: bool = False,
    include_deleted: bool = False,
    limit: int = 200,
    pagination: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    List the members of the workspace

    Args:
        infra: SlackInfrastructure
        include_bots: Keep bot users in the result
        include_deleted: Keep deactivated users in the result
        limit: Page size
        pagination: fetch_all_pages / cursor / max_pages / max_items

    Returns:
        Dict with members and pagination state
    """
    try:
        page_input = PaginationInput(**(pagination or {}))
        client = infra.client_manager.get_client_for_operation("read")

        async def fetch_page(cursor: Optional[str]) -> Dict:
            return ensure_ok(await client.users_list(cursor=cursor, limit=limit), "list team members")

        def format_response(data: PaginatedData) -> Dict[str, Any]:
            members = [
                format_user(m) for m in data.items
                if (include_bots or not m.get("is_bot"))
                and (include_deleted or not m.get("deleted"))
            ]
            return {
                "success": True,
                "members": members,
                "count": len(members),
                "has_more": data.has_more,
                "next_cursor": data.cursor,
                "page_count": data.page_count,
            }

        config = PaginationConfig(
            fetch_page=fetch_page,
            get_cursor=next_cursor,
            get_items=lambda r: r.get("members", []),
            format_response=format_response,
            default_max_pages=infra.settings.pagination_max_pages,
            default_max_items=infra.settings.pagination_max_items,
        )
        key = CacheKeyBuilder.user("list", params={
            "include_bots": include_bots,
            "include_deleted": include_deleted,
            "limit": limit,
            **page_input.model_dump(exclude_none=True),
        })
        return await infra.cache_or_fetch(
            "users", key, lambda: execute_pagination(page_input, config)
        )

    except TOOL_ERRORS as e:
        return error_response(e, "list team members")


def get_server_health(infra: Any) -> Dict[str, Any]:
    """Cache health, cache metrics and rate-limit counters in one report"""
    report: Dict[str, Any] = {
        "success": True,
        "server": {
            "name": infra.settings.server_name,
            "version": infra.settings.server_version,
        },
        "cache_enabled": infra.cache_enabled,
        "rate_limits": infra.rate_limit_metrics.snapshot(),
    }

    if infra.cache_service is None:
        report["healthy"] = True
        report["cache"] = None
        return report

    health = infra.cache_service.get_health_status()
    report["healthy"] = health["healthy"]
    report["cache"] = {
        "health": health,
        "metrics": infra.cache_service.get_metrics().to_dict(),
    }
    return report
