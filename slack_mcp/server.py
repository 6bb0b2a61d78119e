"""
Slack MCP Server
Provides Slack workspace tools backed by the cached, rate-limit aware infrastructure
"""

import sys
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from slack_mcp.config.settings import Settings, load_settings
from slack_mcp.infrastructure import SlackInfrastructure, create_infrastructure
from slack_mcp.tools import slack as slack_tools
from slack_mcp.utils.errors import ConfigurationError
from slack_mcp.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def create_server(settings: Settings, infra: Optional[SlackInfrastructure] = None) -> FastMCP:
    """
    Build the FastMCP server and register every Slack tool

    Args:
        settings: Settings loaded once at process start
        infra: Prebuilt infrastructure (tests inject one with a mock transport)

    Returns:
        Configured FastMCP instance
    """
    infra = infra or create_infrastructure(settings)

    mcp = FastMCP(
        name=settings.server_name,
        host=settings.server_host,
        port=settings.server_port
    )

    def tools_infra() -> SlackInfrastructure:
        # Maintenance needs a running loop, so it starts on the first tool call
        if infra.cache_service is not None:
            infra.cache_service.start_maintenance()
        return infra

    # ============= CHANNEL TOOLS =============

    @mcp.tool()
    async def list_slack_channels(
        types: str = "public_channel,private_channel",
        exclude_archived: bool = True,
        limit: int = 200,
        pagination: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        List channels in the Slack workspace

        Args:
            types: Comma-separated conversation types (public_channel, private_channel, mpim, im)
            exclude_archived: Skip archived channels (default: True)
            limit: Page size (default: 200)
            pagination: Optional {fetch_all_pages, cursor, max_pages, max_items}

        Returns:
            Channels with pagination state
        """
        return await slack_tools.list_channels(tools_infra(), types, exclude_archived, limit, pagination)

    @mcp.tool()
    async def get_slack_channel_info(
        channel: str,
        include_members: bool = False
    ) -> Dict[str, Any]:
        """
        Get detailed information about a Slack channel

        Args:
            channel: Channel name (with or without #) or channel ID
            include_members: Whether to include the member list (default: False)

        Returns:
            Channel information including metadata and optionally members
        """
        return await slack_tools.get_channel_info(tools_infra(), channel, include_members)

    @mcp.tool()
    async def read_slack_channel(
        channel: str,
        limit: int = 100,
        oldest: Optional[str] = None,
        latest: Optional[str] = None,
        pagination: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Read messages from a Slack channel

        Args:
            channel: Channel name (with or without #) or channel ID
            limit: Page size (default: 100)
            oldest: Only messages after this Unix timestamp (optional)
            latest: Only messages before this Unix timestamp (optional)
            pagination: Optional {fetch_all_pages, cursor, max_pages, max_items}

        Returns:
            Messages from the channel with pagination state
        """
        return await slack_tools.get_channel_history(
            tools_infra(), channel, limit, oldest, latest, pagination
        )

    # ============= MESSAGE TOOLS =============

    @mcp.tool()
    async def send_slack_message(
        channel: str,
        text: str,
        blocks: Optional[List[Dict]] = None,
        thread_ts: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Send a message to a Slack channel

        Args:
            channel: Channel name (with or without #) or channel ID
            text: Plain text message (fallback when blocks are given)
            blocks: Block Kit formatted message blocks (optional)
            thread_ts: Thread timestamp to reply in a thread (optional)

        Returns:
            Message sending result with timestamp
        """
        return await slack_tools.send_message(tools_infra(), channel, text, blocks, thread_ts)

    @mcp.tool()
    async def search_slack_messages(
        query: str,
        count: int = 20,
        page: int = 1,
        sort: str = "score",
        sort_dir: str = "desc"
    ) -> Dict[str, Any]:
        """
        Search messages across the workspace (requires SLACK_USER_TOKEN)

        Args:
            query: Slack search query, supports in:, from:, has:, after:, before: and quoted phrases
            count: Results per page (default: 20)
            page: Result page (default: 1)
            sort: 'score' or 'timestamp' (default: 'score')
            sort_dir: 'asc' or 'desc' (default: 'desc')

        Returns:
            Matching messages with channel and permalink
        """
        return await slack_tools.search_messages(tools_infra(), query, count, page, sort, sort_dir)

    # ============= THREAD TOOLS =============

    @mcp.tool()
    async def get_slack_thread_replies(
        channel: str,
        thread_ts: str,
        pagination: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Get the parent message and replies of a thread

        Args:
            channel: Channel name or ID
            thread_ts: Timestamp of the thread's parent message
            pagination: Optional {fetch_all_pages, cursor, max_pages, max_items}

        Returns:
            Parent message and replies
        """
        return await slack_tools.get_thread_replies(tools_infra(), channel, thread_ts, pagination)

    @mcp.tool()
    async def find_slack_threads(
        channel: str,
        oldest: Optional[str] = None,
        latest: Optional[str] = None,
        include_replies: bool = True,
        max_pages: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Find threads in a channel and optionally load their replies

        Args:
            channel: Channel name or ID
            oldest: Only threads started after this Unix timestamp (optional)
            latest: Only threads started before this Unix timestamp (optional)
            include_replies: Fetch every thread's replies (default: True)
            max_pages: History pages to scan (optional)

        Returns:
            Threads with their parent messages and replies
        """
        return await slack_tools.find_threads_in_channel(
            tools_infra(), channel, oldest, latest, include_replies, max_pages
        )

    # ============= USER TOOLS =============

    @mcp.tool()
    async def get_slack_user_info(user_id: str) -> Dict[str, Any]:
        """
        Get profile information for a Slack user

        Args:
            user_id: Slack user ID (U...)

        Returns:
            User profile
        """
        return await slack_tools.get_user_info(tools_infra(), user_id)

    @mcp.tool()
    async def get_slack_users_info(user_ids: List[str]) -> Dict[str, Any]:
        """
        Look up several Slack users at once

        Args:
            user_ids: Slack user IDs

        Returns:
            Found users plus the lookups that failed
        """
        return await slack_tools.get_users_info(tools_infra(), user_ids)

    # ============= FILE TOOLS =============

    @mcp.tool()
    async def list_slack_files(
        channel: Optional[str] = None,
        user: Optional[str] = None,
        types: Optional[str] = None,
        count: int = 100,
        pagination: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        List files shared in the workspace

        Args:
            channel: Only files shared in this channel (optional)
            user: Only files uploaded by this user ID (optional)
            types: Comma-separated file types, e.g. 'images,pdfs' (optional)
            count: Page size (default: 100)
            pagination: Optional {fetch_all_pages, cursor, max_pages, max_items}

        Returns:
            File metadata with pagination state
        """
        return await slack_tools.list_files(tools_infra(), channel, user, types, count, pagination)

    @mcp.tool()
    async def get_slack_file_info(file_id: str) -> Dict[str, Any]:
        """
        Get metadata for a Slack file

        Args:
            file_id: Slack file ID (F...)

        Returns:
            File metadata
        """
        return await slack_tools.get_file_info(tools_infra(), file_id)

    # ============= REACTION TOOLS =============

    @mcp.tool()
    async def add_slack_reaction(channel: str, timestamp: str, name: str) -> Dict[str, Any]:
        """
        Add an emoji reaction to a message

        Args:
            channel: Channel name or ID
            timestamp: Message timestamp
            name: Emoji name, e.g. 'thumbsup'

        Returns:
            Reaction result
        """
        return await slack_tools.add_reaction(tools_infra(), channel, timestamp, name)

    @mcp.tool()
    async def remove_slack_reaction(channel: str, timestamp: str, name: str) -> Dict[str, Any]:
        """
        Remove an emoji reaction from a message

        Args:
            channel: Channel name or ID
            timestamp: Message timestamp
            name: Emoji name, e.g. 'thumbsup'

        Returns:
            Reaction result
        """
        return await slack_tools.remove_reaction(tools_infra(), channel, timestamp, name)

    @mcp.tool()
    async def get_slack_reactions(channel: str, timestamp: str) -> Dict[str, Any]:
        """
        Get the reactions on a message

        Args:
            channel: Channel name or ID
            timestamp: Message timestamp

        Returns:
            Reactions with counts and users
        """
        return await slack_tools.get_reactions(tools_infra(), channel, timestamp)

    # ============= WORKSPACE TOOLS =============

    @mcp.tool()
    async def get_slack_workspace_info() -> Dict[str, Any]:
        """
        Get information about the Slack workspace

        Returns:
            Workspace name, domain and icon
        """
        return await slack_tools.get_workspace_info(tools_infra())

    @mcp.tool()
    async def list_slack_team_members(
        include_bots: bool = False,
        include_deleted: bool = False,
        limit: int = 200,
        pagination: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        List members of the Slack workspace

        Args:
            include_bots: Include bot users (default: False)
            include_deleted: Include deactivated users (default: False)
            limit: Page size (default: 200)
            pagination: Optional {fetch_all_pages, cursor, max_pages, max_items}

        Returns:
            Members with pagination state
        """
        return await slack_tools.list_team_members(
            tools_infra(), include_bots, include_deleted, limit, pagination
        )

    @mcp.tool()
    async def get_server_health() -> Dict[str, Any]:
        """
        Report cache health, cache metrics and Slack rate-limit counters

        Returns:
            Health report for the server
        """
        return slack_tools.get_server_health(tools_infra())

    return mcp


def main() -> None:
    """Run the MCP server with the transport chosen in settings"""
    try:
        settings = load_settings()
    except ConfigurationError as e:
        configure_logging()
        logger.error("%s", e)
        sys.exit(1)

    configure_logging(settings.log_level)
    mcp = create_server(settings)

    logger.info("Starting %s %s", settings.server_name, settings.server_version)
    if settings.transport == "stdio":
        logger.info("Starting MCP server on stdio")
    else:
        logger.info("Starting MCP server on SSE at http://%s:%s", settings.server_host, settings.server_port)
    mcp.run(transport=settings.transport)


# Run the server
if __name__ == "__main__":
    main()
