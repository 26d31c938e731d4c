from __future__ import annotations

from typing import Any, Dict, Optional

from sqlmodel import SQLModel, Field


class Bot(SQLModel):
    """
    A Discord bot credential the dashboard acts on behalf of.

    Notes:
    - id is the Discord application user id returned by /users/@me
    - token is a secret and is never part of public()
    - revalidating the same token overwrites the record (keyed by id)
    """

    id: str = Field(primary_key=True)
    username: str
    token: str
    avatar_url: Optional[str] = Field(default=None)

    def public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "avatarUrl": self.avatar_url,
        }
