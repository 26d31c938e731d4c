# dm_dashboard/models/__init__.py
# Central import surface for the dashboard's records.

from .bot import Bot
from .user import DiscordUser
from .message_history import MessageHistory

__all__ = [
    "Bot",
    "DiscordUser",
    "MessageHistory",
]
