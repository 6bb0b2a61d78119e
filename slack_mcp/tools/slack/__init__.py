"""
Slack tools module for the Slack MCP server
"""

from .channels import get_channel_history, get_channel_info, list_channels
from .files import get_file_info, list_files
from .messages import search_messages, send_message
from .reactions import add_reaction, get_reactions, remove_reaction
from .threads import find_threads_in_channel, get_thread_replies
from .users import get_user_info, get_users_info
from .workspace import get_server_health, get_workspace_info, list_team_members

__all__ = [
    'list_channels',
    'get_channel_info',
    'get_channel_history',
    'send_message',
    'search_messages',
    'get_thread_replies',
    'find_threads_in_channel',
    'get_user_info',
    'get_users_info',
    'list_files',
    'get_file_info',
    'add_reaction',
    'remove_reaction',
    'get_reactions',
    'get_workspace_info',
    'list_team_members',
    'get_server_health',
]
