"""
Slack File Tools
Tools for listing files and reading file metadata
"""

from typing import Any, Dict, Optional

from slack_mcp.cache.keys import CacheKeyBuilder
from slack_mcp.utils.pagination import (
    PaginatedData, PaginationConfig, PaginationInput, execute_pagination
)
from .utils import TOOL_ERRORS, ensure_ok, error_response, resolve_channel_id


def format_file(file: Dict) -> Dict:
    return {
        "id": file.get("id"),
        "name": file.get("name"),
        "title": file.get("title"),
        "filetype": file.get("filetype"),
        "mimetype": file.get("mimetype"),
        "size": file.get("size", 0),
        "user": file.get("user"),
        "created": file.get("created"),
        "channels": file.get("channels", []),
        "url_private": file.get("url_private"),
        "permalink": file.get("permalink"),
    }


def next_page_cursor(response: Dict) -> Optional[str]:
    """files.list pages by number; the next page number is the cursor"""
    paging = response.get("paging") or {}
    page, pages = paging.get("page", 1), paging.get("pages", 1)
    return str(page + 1) if page < pages else None


async def list_files(
    infra: Any,
    channel: Optional[str] = None,
    user: Optional[str] = None,
    types: Optional[str] = None,
    count: int = 100,
    pagination: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    List files shared in the workspace

    Args:
        infra: SlackInfrastructure
        channel: Only files shared in this channel (name or ID)
        user: Only files uploaded by this user ID
        types: Comma-separated file types (images, pdfs, snippets, ...)
        count: Page size
        pagination: fetch_all_pages / cursor / max_pages / max_items

    Returns:
        Dict with files and pagination state
    """
    try:
        page_input = PaginationInput(**(pagination or {}))
        channel_id = await resolve_channel_id(infra, channel) if channel else None
        client = infra.client_manager.get_client_for_operation("read")

        async def fetch_page(cursor: Optional[str]) -> Dict:
            response = await client.files_list(
                channel=channel_id, user=user, types=types, count=count,
                page=int(cursor) if cursor and cursor.isdigit() else 1,
            )
            return ensure_ok(response, "list files")

        def format_response(data: PaginatedData) -> Dict[str, Any]:
            files = [format_file(f) for f in data.items]
            return {
                "success": True,
                "files": files,
                "count": len(files),
                "has_more": data.has_more,
                "next_cursor": data.cursor,
            }

        config = PaginationConfig(
            fetch_page=fetch_page,
            get_cursor=next_page_cursor,
            get_items=lambda r: r.get("files", []),
            format_response=format_response,
            default_max_pages=infra.settings.pagination_max_pages,
            default_max_items=infra.settings.pagination_max_items,
        )
        key = CacheKeyBuilder.file("list", params={
            "channel": channel_id,
            "user": user,
            "types": types,
            "count": count,
            **page_input.model_dump(exclude_none=True),
        })
        return await infra.cache_or_fetch(
            "files", key, lambda: execute_pagination(page_input, config)
        )

    except TOOL_ERRORS as e:
        return error_response(e, "list files")


async def get_file_info(infra: Any, file_id: str) -> Dict[str, Any]:
    """
    Get metadata for a single file

    Args:
        infra: SlackInfrastructure
        file_id: Slack file ID (F...)
    """
    try:
        client = infra.client_manager.get_client_for_operation("read")

        async def fetch() -> Dict[str, Any]:
            response = ensure_ok(await client.files_info(file_id), "get file info")
            return {"success": True, "file": format_file(response.get("file", {}))}

        return await infra.cache_or_fetch("files", CacheKeyBuilder.file("info", file_id), fetch)

    except TOOL_ERRORS as e:
        return error_response(e, "get file info")
