"""
Slack Reaction Tools
Tools for adding, removing and reading emoji reactions
"""

from typing import Any, Dict

from .utils import TOOL_ERRORS, ensure_ok, error_response, resolve_channel_id


async def _change_reaction(infra: Any, channel: str, timestamp: str, name: str,
                           add: bool) -> Dict[str, Any]:
    action = "add reaction" if add else "remove reaction"
    try:
        channel_id = await resolve_channel_id(infra, channel)
        client = infra.client_manager.get_client_for_operation("write")
        reaction = name.strip(":")

        if add:
            response = await client.reactions_add(channel_id, timestamp, reaction)
        else:
            response = await client.reactions_remove(channel_id, timestamp, reaction)
        ensure_ok(response, action)

        infra.invalidate_channel(channel_id)
        return {
            "success": True,
            "channel": channel_id,
            "timestamp": timestamp,
            "reaction": reaction,
            "message": f"Reaction :{reaction}: {'added' if add else 'removed'}",
        }

    except TOOL_ERRORS as e:
        return error_response(e, action)


async def add_reaction(infra: Any, channel: str, timestamp: str, name: str) -> Dict[str, Any]:
    """
    Add an emoji reaction to a message

    Args:
        infra: SlackInfrastructure
        channel: Channel name or ID
        timestamp: Message timestamp
        name: Emoji name, with or without colons
    """
    return await _change_reaction(infra, channel, timestamp, name, add=True)


async def remove_reaction(infra: Any, channel: str, timestamp: str, name: str) -> Dict[str, Any]:
    """Remove an emoji reaction from a message"""
    return await _change_reaction(infra, channel, timestamp, name, add=False)


async def get_reactions(infra: Any, channel: str, timestamp: str) -> Dict[str, Any]:
    """
    Get the reactions on a message

    Args:
        infra: SlackInfrastructure
        channel: Channel name or ID
        timestamp: Message timestamp
    """
    try:
        channel_id = await resolve_channel_id(infra, channel)
        client = infra.client_manager.get_client_for_operation("read")
        response = ensure_ok(await client.reactions_get(channel_id, timestamp), "get reactions")

        message = response.get("message", {})
        reactions = [
            {"name": r.get("name"), "count": r.get("count", 0), "users": r.get("users", [])}
            for r in message.get("reactions", [])
        ]
        return {
            "success": True,
            "channel": channel_id,
            "timestamp": timestamp,
            "reactions": reactions,
            "total_reactions": sum(r["count"] for r in reactions),
        }

    except TOOL_ERRORS as e:
        return error_response(e, "get reactions")
