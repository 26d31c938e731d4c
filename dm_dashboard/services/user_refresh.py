from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from starlette.requests import HTTPConnection

from ..config import Settings, settings as default_settings
from ..models.bot import Bot
from ..models.user import DEFAULT_STATUS, DiscordUser
from ..store import MemoryStore
from .discord_rest import DiscordRestClient

logger = logging.getLogger(__name__)


def display_name_for(member: Dict[str, Any]) -> str:
    """Guild nickname, then global display name, then raw username."""
    user = member.get("user") or {}
    return member.get("nick") or user.get("global_name") or user.get("username") or ""


def user_from_member(
    member: Any,
    bot_id: str,
    *,
    settings: Optional[Settings] = None,
) -> Optional[DiscordUser]:
    """
    Map a Discord guild member payload to a DiscordUser.
    Returns None for bot accounts and payloads without a user id.
    """
    cfg = settings or default_settings
    if not isinstance(member, dict):
        return None

    user = member.get("user")
    if not isinstance(user, dict) or user.get("bot"):
        return None

    uid = user.get("id")
    if not uid:
        return None
    uid = str(uid)

    return DiscordUser(
        id=uid,
        bot_id=bot_id,
        username=user.get("username") or "",
        display_name=display_name_for(member),
        avatar_url=cfg.avatar_url(uid, user.get("avatar")),
        status=member.get("status") or DEFAULT_STATUS,
    )


def merge_members(
    bot_id: str,
    member_lists: Iterable[Iterable[Any]],
    *,
    settings: Optional[Settings] = None,
) -> List[DiscordUser]:
    """
    Union of several guilds' members, one entry per user id.
    A user seen in several guilds keeps the last guild's view.
    """
    merged: Dict[str, DiscordUser] = {}
    for members in member_lists:
        for member in members:
            u = user_from_member(member, bot_id, settings=settings)
            if u is not None:
                merged[u.id] = u
    return list(merged.values())


class UserRefresher:
    """
    Repopulates a bot's cached users from Discord.

    Routes return the cached list first and schedule refresh() afterwards;
    refresh() never raises.
    """

    def __init__(
        self,
        store: MemoryStore,
        discord: DiscordRestClient,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = store
        self._discord = discord
        self._settings = settings or default_settings

    async def refresh(self, bot: Bot) -> bool:
        """Returns True when the refreshed set was committed to the store."""
        generation = await self._store.begin_refresh(bot.id)
        try:
            return await self._refresh(bot, generation)
        except Exception:
            logger.exception("User refresh failed for bot=%s", bot.id)
            return False
        finally:
            # An aborted refresh must not block an older one that can still commit
            await self._store.abandon_refresh(bot.id, generation)

    async def _refresh(self, bot: Bot, generation: int) -> bool:
        guilds = await self._discord.list_guilds(bot.token)
        if not guilds.success:
            logger.warning("User refresh for bot=%s: guild listing failed %s", bot.id, guilds.details())
            return False

        guild_ids = [str(g["id"]) for g in guilds.data if isinstance(g, dict) and g.get("id")]

        # One request chain per guild, all in flight together
        results = await asyncio.gather(
            *(self._discord.list_guild_members(bot.token, gid) for gid in guild_ids),
            return_exceptions=True,
        )

        member_lists: List[List[Any]] = []
        failed = 0
        for gid, res in zip(guild_ids, results):
            if isinstance(res, BaseException):
                failed += 1
                logger.warning("User refresh for bot=%s: guild=%s raised", bot.id, gid, exc_info=res)
                continue
            if not res.success:
                failed += 1
                logger.warning("User refresh for bot=%s: guild=%s failed %s", bot.id, gid, res.details())
                continue
            member_lists.append(res.data or [])

        users = merge_members(bot.id, member_lists, settings=self._settings)

        committed = await self._store.commit_users(bot.id, users, generation, replace=(failed == 0))
        if committed:
            logger.info(
                "User refresh for bot=%s committed %s users from %s guilds (%s failed)",
                bot.id,
                len(users),
                len(guild_ids),
                failed,
            )
        return committed


def get_refresher(conn: HTTPConnection) -> UserRefresher:
    return conn.app.state.refresher
