from __future__ import annotations

from typing import Any, Dict, Optional

from sqlmodel import SQLModel, Field

DEFAULT_STATUS = "online"


class DiscordUser(SQLModel):
    """
    A guild member visible to one bot.

    The same Discord account fetched by two bots is two records:
    (bot_id, id) is the identity, not id alone.
    """

    id: str = Field(primary_key=True)
    bot_id: str = Field(primary_key=True, index=True)

    username: str
    display_name: Optional[str] = Field(default=None)
    avatar_url: Optional[str] = Field(default=None)
    status: str = Field(default=DEFAULT_STATUS)

    def public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "displayName": self.display_name,
            "avatarUrl": self.avatar_url,
            "status": self.status,
            "botId": self.bot_id,
        }
