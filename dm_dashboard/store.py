from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set

from starlette.requests import HTTPConnection

from .models.bot import Bot
from .models.message_history import MessageHistory
from .models.user import DiscordUser

logger = logging.getLogger(__name__)


class MemoryStore:
    """
    Process-lifetime store for bots, per-bot users and message history.

    Constructed once per app (see main.create_app) and handed to every
    component that needs it, so tests can build a fresh one each time.
    Methods are async so a database-backed store can drop in later.

    Nothing here awaits internally: each call is atomic with respect to the
    event loop.
    """

    def __init__(self) -> None:
        self._bots: Dict[str, Bot] = {}
        self._users: Dict[str, Dict[str, DiscordUser]] = {}
        self._messages: List[MessageHistory] = []
        self._next_message_id = 1
        self._refresh_generation: Dict[str, int] = {}
        self._refresh_pending: Dict[str, Set[int]] = {}
        self._committed_generation: Dict[str, int] = {}

    # -------------------------
    # Bots
    # -------------------------

    async def save_bot(self, bot: Bot) -> Bot:
        # Keyed by Discord id: revalidating a token overwrites, never duplicates
        self._bots[bot.id] = bot
        return bot

    async def get_bot(self, bot_id: str) -> Optional[Bot]:
        return self._bots.get(bot_id)

    async def get_bot_by_token(self, token: str) -> Optional[Bot]:
        for bot in self._bots.values():
            if bot.token == token:
                return bot
        return None

    async def list_bots(self) -> List[Bot]:
        return list(self._bots.values())

    # -------------------------
    # Users
    # -------------------------

    async def get_users_by_bot_id(self, bot_id: str) -> List[DiscordUser]:
        return list(self._users.get(bot_id, {}).values())

    async def get_user(self, bot_id: str, user_id: str) -> Optional[DiscordUser]:
        return self._users.get(bot_id, {}).get(user_id)

    async def begin_refresh(self, bot_id: str) -> int:
        """
        Claim a new refresh generation for bot_id.
        Only the latest pending generation may commit; see abandon_refresh().
        """
        generation = self._refresh_generation.get(bot_id, 0) + 1
        self._refresh_generation[bot_id] = generation
        self._refresh_pending.setdefault(bot_id, set()).add(generation)
        return generation

    async def abandon_refresh(self, bot_id: str, generation: int) -> None:
        """
        Release a claim that will never commit (e.g. guild listing failed),
        so an older refresh still in flight may commit again.
        No-op for a generation that already committed or was discarded.
        """
        self._release_refresh(bot_id, generation)

    def _release_refresh(self, bot_id: str, generation: int) -> None:
        pending = self._refresh_pending.get(bot_id)
        if pending is None:
            return
        pending.discard(generation)
        if not pending:
            del self._refresh_pending[bot_id]

    def _latest_pending(self, bot_id: str) -> int:
        return max(self._refresh_pending.get(bot_id, ()), default=0)

    async def commit_users(
        self,
        bot_id: str,
        users: Iterable[DiscordUser],
        generation: int,
        *,
        replace: bool = True,
    ) -> bool:
        """
        Swap in a fully merged user set for bot_id.

        - replace=True: the new set replaces the cached set
        - replace=False: the new set is layered over the cached set
          (used when some guilds failed, so their members are kept)

        Returns False (and changes nothing) when a newer refresh is still
        pending or has already committed.
        """
        latest = self._latest_pending(bot_id)
        committed = self._committed_generation.get(bot_id, 0)
        if generation != latest or generation <= committed:
            logger.debug(
                "Discarding stale user refresh for bot=%s (generation %s, pending %s, committed %s)",
                bot_id,
                generation,
                latest,
                committed,
            )
            self._release_refresh(bot_id, generation)
            return False

        merged: Dict[str, DiscordUser] = {} if replace else dict(self._users.get(bot_id, {}))
        for user in users:
            merged[user.id] = user

        self._users[bot_id] = merged
        self._committed_generation[bot_id] = generation
        self._release_refresh(bot_id, generation)
        return True

    # -------------------------
    # Message history
    # -------------------------

    async def save_message_history(self, message: MessageHistory) -> MessageHistory:
        record = message.model_copy(update={"id": self._next_message_id})
        self._next_message_id += 1
        self._messages.append(record)
        return record

    async def get_message_history_by_bot_id(self, bot_id: str) -> List[MessageHistory]:
        return [m for m in self._messages if m.bot_id == bot_id]


def get_store(conn: HTTPConnection) -> MemoryStore:
    """
    FastAPI dependency (HTTP and WebSocket routes):
        def route(store: MemoryStore = Depends(get_store)):
            ...
    """
    return conn.app.state.store
