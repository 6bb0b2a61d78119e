"""
Tests for the Slack tools running against a scripted Slack Web API.

Every tool goes through the real infrastructure (client manager, rate
limiter, cache service); only the HTTP transport is faked.
"""

import httpx
import pytest

from slack_mcp.config.settings import load_settings
from slack_mcp.infrastructure import create_infrastructure
from slack_mcp.tools.slack import (
    add_reaction,
    find_threads_in_channel,
    get_channel_history,
    get_channel_info,
    get_file_info,
    get_reactions,
    get_server_health,
    get_thread_replies,
    get_user_info,
    get_users_info,
    get_workspace_info,
    list_channels,
    list_files,
    list_team_members,
    remove_reaction,
    search_messages,
    send_message,
)
from slack_mcp.tools.slack.utils import error_response, looks_like_channel_id, parse_message_text
from slack_mcp.utils.errors import SlackAPIError

GENERAL = {"id": "C0000001", "name": "general", "num_members": 12, "topic": {"value": "Company-wide"}}
RANDOM = {"id": "C0000002", "name": "random", "is_private": False}


def channel_page(channels, cursor=None):
    return {"ok": True, "channels": channels, "response_metadata": {"next_cursor": cursor or ""}}


def channels_handler(params):
    return channel_page([GENERAL, RANDOM], None)


def channel_info_handler(params):
    return {"ok": True, "channel": {**GENERAL, "id": params["channel"], "is_general": True}}


class TestChannelTools:
    """Listing, resolving and describing channels."""

    @pytest.mark.asyncio
    async def test_list_channels_is_cached(self, infra, slack_api):
        slack_api.on("conversations.list", channels_handler)

        first = await list_channels(infra)
        second = await list_channels(infra)

        assert first == second
        assert first["success"] is True
        assert [c["name"] for c in first["channels"]] == ["general", "random"]
        assert first["channels"][0]["topic"] == "Company-wide"
        assert first["has_more"] is False
        assert slack_api.count("conversations.list") == 1

    @pytest.mark.asyncio
    async def test_list_channels_reports_next_cursor(self, infra, slack_api):
        slack_api.on("conversations.list", lambda params: channel_page([GENERAL], "next-page"))

        result = await list_channels(infra)

        assert result["has_more"] is True
        assert result["next_cursor"] == "next-page"

    @pytest.mark.asyncio
    async def test_list_channels_fetch_all_pages(self, infra, slack_api):
        def handler(params):
            if params.get("cursor") == "page-2":
                return channel_page([RANDOM], None)
            return channel_page([GENERAL], "page-2")

        slack_api.on("conversations.list", handler)

        result = await list_channels(infra, pagination={"fetch_all_pages": True})

        assert result["count"] == 2
        assert result["page_count"] == 2
        assert result["has_more"] is False
        assert result["next_cursor"] is None

    @pytest.mark.asyncio
    async def test_channel_name_is_resolved_through_the_directory(self, infra, slack_api):
        slack_api.on("conversations.list", channels_handler)
        slack_api.on("conversations.info", channel_info_handler)

        by_name = await get_channel_info(infra, "#random")
        await get_channel_info(infra, "random")

        assert by_name["channel"]["id"] == "C0000002"
        assert by_name["channel"]["is_general"] is True
        # Directory fetched once, info once thanks to the cache
        assert slack_api.count("conversations.list") == 1
        assert slack_api.count("conversations.info") == 1

    @pytest.mark.asyncio
    async def test_channel_members(self, infra, slack_api):
        slack_api.on("conversations.info", channel_info_handler)

        def members(params):
            if params.get("cursor") == "more":
                return {"ok": True, "members": ["U3"], "response_metadata": {"next_cursor": ""}}
            return {"ok": True, "members": ["U1", "U2"], "response_metadata": {"next_cursor": "more"}}

        slack_api.on("conversations.members", members)

        result = await get_channel_info(infra, "C0000001", include_members=True)

        assert result["members"] == ["U1", "U2", "U3"]
        assert result["member_count"] == 3

    @pytest.mark.asyncio
    async def test_unknown_channel_name(self, infra, slack_api):
        slack_api.on("conversations.list", channels_handler)

        result = await get_channel_info(infra, "#nope")

        assert result["success"] is False
        assert result["error_code"] == "channel_not_found"
        assert "hint" in result

    @pytest.mark.asyncio
    async def test_history_is_not_cached(self, infra, slack_api):
        slack_api.on("conversations.history", {
            "ok": True,
            "messages": [{"ts": "1.0", "text": "hi <@U1>", "user": "U2"}],
            "response_metadata": {"next_cursor": ""},
        })

        first = await get_channel_history(infra, "C0000001", oldest="0.5")
        await get_channel_history(infra, "C0000001", oldest="0.5")

        assert first["messages"][0]["parsed_text"] == "hi @U1"
        assert first["oldest"] == "0.5"
        assert slack_api.calls[0]["params"]["oldest"] == "0.5"
        assert slack_api.count("conversations.history") == 2


class TestMessageTools:
    """Posting and searching."""

    @pytest.mark.asyncio
    async def test_send_message_invalidates_the_channel(self, infra, slack_api):
        slack_api.on("conversations.info", channel_info_handler)
        slack_api.on("chat.postMessage", lambda params: {"ok": True, "ts": "9.9", "channel": params["channel"]})

        await get_channel_info(infra, "C0000001")
        sent = await send_message(infra, "C0000001", "deploy done", thread_ts="1.0")
        await get_channel_info(infra, "C0000001")

        post = next(c for c in slack_api.calls if c["method"] == "chat.postMessage")
        assert sent["success"] is True
        assert sent["message_ts"] == "9.9"
        assert sent["thread_ts"] == "1.0"
        assert post["http_method"] == "POST"
        assert post["params"] == {"channel": "C0000001", "text": "deploy done", "thread_ts": "1.0"}
        assert slack_api.count("conversations.info") == 2

    @pytest.mark.asyncio
    async def test_send_message_failure(self, infra, slack_api):
        slack_api.on("chat.postMessage", {"ok": False, "error": "not_in_channel"})

        result = await send_message(infra, "C0000001", "hello")

        assert result["success"] is False
        assert result["error"] == "Failed to send message: not_in_channel"
        assert result["hint"] == "The bot must be added to the channel first"

    @pytest.mark.asyncio
    async def test_search_uses_user_token_and_cache(self, infra, slack_api):
        slack_api.on("search.messages", {
            "ok": True,
            "messages": {
                "total": 1,
                "matches": [{
                    "ts": "1.1",
                    "text": "deploy done",
                    "user": "U1",
                    "channel": {"id": "C0000001", "name": "general"},
                    "permalink": "https://example.slack.com/archives/C0000001/p11",
                }],
                "paging": {"page": 1, "pages": 1},
            },
        })

        first = await search_messages(infra, "deploy in:#general")
        second = await search_messages(infra, "deploy in:#general")

        assert first == second
        assert first["total"] == 1
        assert first["messages"][0]["channel"] == {"id": "C0000001", "name": "general"}
        assert slack_api.count("search.messages") == 1
        assert slack_api.calls[0]["token"] == "xoxp-test"

    @pytest.mark.asyncio
    async def test_search_options_are_part_of_the_identity(self, infra, slack_api):
        slack_api.on("search.messages", {"ok": True, "messages": {"matches": [{"ts": "1"}]}})

        await search_messages(infra, "deploy", sort="timestamp")
        await search_messages(infra, "deploy", sort="score")

        assert slack_api.count("search.messages") == 2

    @pytest.mark.asyncio
    async def test_search_without_user_token(self, slack_api):
        settings = load_settings(slack_bot_token="xoxb-test", slack_user_token=None, _env_file=None)
        infra = create_infrastructure(settings, transport=httpx.MockTransport(slack_api))

        result = await search_messages(infra, "deploy")

        assert result["success"] is False
        assert result["error_code"] == "missing_user_token"
        assert slack_api.calls == []
        await infra.aclose()


class TestThreadTools:
    """Thread replies and thread discovery."""

    @pytest.mark.asyncio
    async def test_parent_is_split_from_replies(self, infra, slack_api):
        slack_api.on("conversations.replies", {
            "ok": True,
            "messages": [
                {"ts": "1.0", "text": "parent", "reply_count": 2},
                {"ts": "1.1", "text": "first", "thread_ts": "1.0"},
                {"ts": "1.2", "text": "second", "thread_ts": "1.0"},
            ],
        })

        result = await get_thread_replies(infra, "C0000001", "1.0")

        assert result["parent"]["text"] == "parent"
        assert result["parent"]["thread_info"]["reply_count"] == 2
        assert [r["text"] for r in result["replies"]] == ["first", "second"]
        assert result["reply_count"] == 2

    @pytest.mark.asyncio
    async def test_find_threads_tolerates_failed_reply_fetches(self, infra, slack_api):
        slack_api.on("conversations.history", {
            "ok": True,
            "messages": [
                {"ts": "1.0", "text": "parent a", "reply_count": 2},
                {"ts": "2.0", "text": "plain"},
                {"ts": "3.0", "text": "parent b", "reply_count": 1},
            ],
        })

        def replies(params):
            if params["ts"] == "3.0":
                return {"ok": False, "error": "thread_not_found"}
            return {"ok": True, "messages": [
                {"ts": "1.0", "text": "parent a"},
                {"ts": "1.1", "text": "reply 1"},
                {"ts": "1.2", "text": "reply 2"},
            ]}

        slack_api.on("conversations.replies", replies)

        result = await find_threads_in_channel(infra, "C0000001")

        assert result["success"] is True
        assert result["thread_count"] == 2
        assert [t["parent"]["text"] for t in result["threads"]] == ["parent a", "parent b"]
        assert [r["text"] for r in result["threads"][0]["replies"]] == ["reply 1", "reply 2"]
        assert result["threads"][1]["replies"] is None
        assert result["failed_reply_fetches"] == 1
        assert result["pages_scanned"] == 1

    @pytest.mark.asyncio
    async def test_find_threads_without_replies(self, infra, slack_api):
        slack_api.on("conversations.history", {
            "ok": True, "messages": [{"ts": "1.0", "text": "parent", "reply_count": 4}],
        })

        result = await find_threads_in_channel(infra, "C0000001", include_replies=False)

        assert result["threads"][0]["reply_count"] == 4
        assert result["failed_reply_fetches"] == 0
        assert slack_api.count("conversations.replies") == 0


class TestUserTools:
    """User lookups, single and batched."""

    @pytest.mark.asyncio
    async def test_user_info_is_cached(self, infra, slack_api):
        slack_api.on("users.info", lambda params: {"ok": True, "user": {
            "id": params["user"], "name": "ada", "profile": {"display_name": "Ada", "email": "ada@example.com"},
        }})

        first = await get_user_info(infra, "U1")
        await get_user_info(infra, "U1")

        assert first["user"]["display_name"] == "Ada"
        assert first["user"]["email"] == "ada@example.com"
        assert slack_api.count("users.info") == 1

    @pytest.mark.asyncio
    async def test_batch_reports_failures_by_index(self, infra, slack_api):
        def users(params):
            if params["user"] == "U2":
                return {"ok": False, "error": "user_not_found"}
            return {"ok": True, "user": {"id": params["user"], "name": params["user"].lower()}}

        slack_api.on("users.info", users)

        result = await get_users_info(infra, ["U1", "U2", "U3"])

        assert [u["id"] for u in result["users"]] == ["U1", "U3"]
        assert result["errors"] == [
            {"index": 1, "user_id": "U2", "error": "Failed to get user U2: user_not_found"}
        ]
        assert result["success_count"] == 2
        assert result["error_count"] == 1


class TestFileTools:
    """files.list pages by number."""

    @staticmethod
    def files_handler(params):
        page = int(params.get("page", "1"))
        return {"ok": True, "files": [{"id": f"F{page}", "name": f"file{page}.txt"}],
                "paging": {"page": page, "pages": 3}}

    @pytest.mark.asyncio
    async def test_page_number_is_the_cursor(self, infra, slack_api):
        slack_api.on("files.list", self.files_handler)

        first = await list_files(infra)
        second = await list_files(infra, pagination={"cursor": first["next_cursor"]})

        assert first["files"][0]["id"] == "F1"
        assert first["has_more"] is True
        assert first["next_cursor"] == "2"
        assert second["files"][0]["id"] == "F2"
        assert second["next_cursor"] == "3"

    @pytest.mark.asyncio
    async def test_fetch_all_pages(self, infra, slack_api):
        slack_api.on("files.list", self.files_handler)

        result = await list_files(infra, pagination={"fetch_all_pages": True})

        assert [f["id"] for f in result["files"]] == ["F1", "F2", "F3"]
        assert slack_api.count("files.list") == 3

    @pytest.mark.asyncio
    async def test_file_info(self, infra, slack_api):
        slack_api.on("files.info", {"ok": True, "file": {"id": "F1", "name": "plan.pdf", "size": 2048}})

        result = await get_file_info(infra, "F1")
        await get_file_info(infra, "F1")

        assert result["file"]["size"] == 2048
        assert slack_api.count("files.info") == 1


class TestReactionTools:
    """Reactions are written with the bot token and invalidate the channel."""

    @pytest.mark.asyncio
    async def test_add_reaction_strips_colons_and_invalidates(self, infra, slack_api):
        slack_api.on("reactions.add", {"ok": True})
        slack_api.on("conversations.replies", {"ok": True, "messages": [{"ts": "1.0", "text": "parent"}]})

        await get_thread_replies(infra, "C0000001", "1.0")
        result = await add_reaction(infra, "C0000001", "1.0", ":thumbsup:")
        await get_thread_replies(infra, "C0000001", "1.0")

        call = next(c for c in slack_api.calls if c["method"] == "reactions.add")
        assert result["reaction"] == "thumbsup"
        assert result["message"] == "Reaction :thumbsup: added"
        assert call["params"] == {"channel": "C0000001", "timestamp": "1.0", "name": "thumbsup"}
        assert call["token"] == "xoxb-test"
        assert slack_api.count("conversations.replies") == 2

    @pytest.mark.asyncio
    async def test_remove_reaction_error(self, infra, slack_api):
        slack_api.on("reactions.remove", {"ok": False, "error": "no_reaction"})

        result = await remove_reaction(infra, "C0000001", "1.0", "tada")

        assert result["success"] is False
        assert result["error_code"] == "no_reaction"

    @pytest.mark.asyncio
    async def test_get_reactions(self, infra, slack_api):
        slack_api.on("reactions.get", {"ok": True, "message": {"reactions": [
            {"name": "tada", "count": 2, "users": ["U1", "U2"]},
            {"name": "eyes", "count": 1, "users": ["U3"]},
        ]}})

        result = await get_reactions(infra, "C0000001", "1.0")

        assert result["total_reactions"] == 3
        assert result["reactions"][0] == {"name": "tada", "count": 2, "users": ["U1", "U2"]}


class TestWorkspaceTools:
    """Workspace details, members and the health report."""

    @pytest.mark.asyncio
    async def test_workspace_info_is_cached(self, infra, slack_api):
        slack_api.on("team.info", {"ok": True, "team": {
            "id": "T1", "name": "Acme", "domain": "acme", "email_domain": "",
            "icon": {"image_132": "https://example.com/icon.png"},
        }})

        first = await get_workspace_info(infra)
        await get_workspace_info(infra)

        assert first["workspace"] == {
            "id": "T1",
            "name": "Acme",
            "domain": "acme",
            "email_domain": None,
            "icon": "https://example.com/icon.png",
        }
        assert slack_api.count("team.info") == 1

    @pytest.mark.asyncio
    async def test_team_members_filtering(self, infra, slack_api):
        slack_api.on("users.list", {"ok": True, "members": [
            {"id": "U1", "name": "ada"},
            {"id": "B1", "name": "deploybot", "is_bot": True},
            {"id": "U2", "name": "gone", "deleted": True},
        ]})

        humans = await list_team_members(infra)
        everyone = await list_team_members(infra, include_bots=True, include_deleted=True)

        assert [m["id"] for m in humans["members"]] == ["U1"]
        assert everyone["count"] == 3

    @pytest.mark.asyncio
    async def test_server_health(self, infra, slack_api):
        slack_api.on("conversations.list", channels_handler)
        await list_channels(infra)

        report = get_server_health(infra)

        assert report["success"] is True
        assert report["server"] == {"name": "slack-mcp-server", "version": "1.0.0"}
        assert report["cache_enabled"] is True
        assert report["healthy"] is True
        assert report["rate_limits"]["total_requests"] == 1
        assert report["cache"]["metrics"]["channels"]["misses"] == 1
        assert "global" in report["cache"]["metrics"]


class TestWithoutCache:
    """Tools keep working when caching is switched off."""

    @pytest.mark.asyncio
    async def test_every_call_reaches_slack(self, slack_api):
        slack_api.on("conversations.list", channels_handler)
        settings = load_settings(slack_bot_token="xoxb-test", cache_enabled=False, _env_file=None)
        infra = create_infrastructure(settings, transport=httpx.MockTransport(slack_api))

        await list_channels(infra)
        await list_channels(infra)
        report = get_server_health(infra)

        assert infra.cache_service is None
        assert slack_api.count("conversations.list") == 2
        assert report["cache"] is None
        assert report["cache_enabled"] is False
        assert infra.invalidate_channel("C0000001") == 0
        await infra.aclose()


class TestToolHelpers:
    """Shared formatting helpers."""

    def test_error_response_with_hint(self):
        result = error_response(SlackAPIError("Failed to x: ratelimited", code="ratelimited"), "x")

        assert result == {
            "success": False,
            "error": "Failed to x: ratelimited",
            "error_code": "ratelimited",
            "hint": "Slack rate limit exceeded, try again later",
        }

    def test_error_response_without_code(self):
        assert error_response(RuntimeError("boom"), "x") == {"success": False, "error": "Failed to x: boom"}

    @pytest.mark.parametrize("value,expected", [
        ("C0000001", True), ("G12345AB", True), ("general", False), ("C01", False),
    ])
    def test_channel_id_detection(self, value, expected):
        assert looks_like_channel_id(value) is expected

    def test_parse_message_text(self):
        text = "<@U123> see <#C0000001|general> and <https://example.com|the docs>"
        assert parse_message_text(text) == "@U123 see #general and the docs (https://example.com)"
