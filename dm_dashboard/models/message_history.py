from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlmodel import SQLModel, Field


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MessageHistory(SQLModel):
    """
    Append-only history row.

    Two shapes share the table:
    - outbound batch: recipient_count set, is_reply False
    - inbound reply: sender_user_id / sender_username set, is_reply True
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    bot_id: str = Field(index=True)
    content: str
    sent_at: str = Field(default_factory=utcnow_iso)

    recipient_count: int = Field(default=0)

    sender_user_id: Optional[str] = Field(default=None)
    sender_username: Optional[str] = Field(default=None)
    is_reply: bool = Field(default=False)

    def public(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "botId": self.bot_id,
            "content": self.content,
            "sentAt": self.sent_at,
            "recipientCount": self.recipient_count,
            "isReply": self.is_reply,
        }
        if self.is_reply:
            out["senderInfo"] = {
                "userId": self.sender_user_id,
                "username": self.sender_username,
            }
        return out
