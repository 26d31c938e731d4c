from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from starlette.requests import HTTPConnection

from ..config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

# NOTE:
# This module is the single source of truth for dashboard->Discord HTTP behavior.
# Nothing in here raises for HTTP or network failures; callers get a DiscordResult.


@dataclass
class DiscordResult:
    """
    Tagged outcome of one Discord operation.

    - success=True: data holds the parsed payload
    - upstream rejection: status/status_text set (Discord answered non-2xx)
    - local failure: status is None, error holds the message
      (timeout, connection refused, malformed response)
    """

    success: bool
    data: Any = None
    status: Optional[int] = None
    status_text: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_upstream_error(self) -> bool:
        return not self.success and self.status is not None

    def details(self) -> Dict[str, Any]:
        """JSON-safe failure detail for API responses."""
        out: Dict[str, Any] = {"success": self.success}
        if self.status is not None:
            out["status"] = self.status
            out["statusText"] = self.status_text
            if isinstance(self.data, dict):
                out["body"] = self.data
        if self.error:
            out["error"] = self.error
        return out


def _safe_json(r: httpx.Response) -> Any:
    try:
        return r.json()
    except Exception:
        return None


def _member_user_id(member: Any) -> Optional[str]:
    if not isinstance(member, dict):
        return None
    user = member.get("user")
    if not isinstance(user, dict):
        return None
    uid = user.get("id")
    return str(uid) if uid is not None else None


class DiscordRestClient:
    """
    Thin async wrapper around the Discord REST API (v10).

    One instance (one pooled httpx.AsyncClient) serves every bot; the bot token
    is passed per call so a single client can act for many bots.
    """

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        cfg = settings or default_settings
        self._page_size = int(cfg.member_page_size)
        self._default_member_limit = int(cfg.member_fetch_limit)

        limits = httpx.Limits(max_connections=25, max_keepalive_connections=10)
        self._client = httpx.AsyncClient(
            base_url=cfg.discord_api_base,
            timeout=float(cfg.http_timeout_s),
            headers={"User-Agent": cfg.http_user_agent},
            limits=limits,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        token: str,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> DiscordResult:
        m = method.upper()
        try:
            r = await self._client.request(
                m,
                path,
                params=params,
                json=json,
                headers={"Authorization": f"Bot {token}"},
            )
        except httpx.TimeoutException:
            return DiscordResult(success=False, error="Request timed out contacting Discord.")
        except httpx.RequestError as e:
            return DiscordResult(success=False, error=f"Network error contacting Discord: {e}")
        except Exception as e:
            logger.exception("Unexpected error contacting Discord (%s %s)", m, path)
            return DiscordResult(success=False, error=f"Unexpected error contacting Discord: {e}")

        if r.is_success:
            return DiscordResult(success=True, data=_safe_json(r))

        return DiscordResult(
            success=False,
            data=_safe_json(r),
            status=r.status_code,
            status_text=r.reason_phrase,
        )

    # -----------------------------
    # Operations
    # -----------------------------

    async def validate_token(self, token: str) -> DiscordResult:
        """GET /users/@me. data is the bot's user object."""
        res = await self._request(token, "GET", "/users/@me")
        if res.success and not (isinstance(res.data, dict) and res.data.get("id")):
            return DiscordResult(success=False, error="Discord returned no bot identity.")
        return res

    async def list_guilds(self, token: str) -> DiscordResult:
        res = await self._request(token, "GET", "/users/@me/guilds")
        if res.success and not isinstance(res.data, list):
            return DiscordResult(success=False, error="Unexpected guild list format from Discord.")
        return res

    async def list_guild_members(
        self,
        token: str,
        guild_id: str,
        limit: Optional[int] = None,
    ) -> DiscordResult:
        """
        Page through /guilds/{id}/members using the last member's user id as cursor.

        Stops on an empty page, once `limit` members are collected, or when the
        cursor fails to advance (Discord repeating a page).
        """
        cap = self._default_member_limit if limit is None else int(limit)
        members: List[Dict[str, Any]] = []
        after = "0"

        while len(members) < cap:
            page_limit = min(self._page_size, cap - len(members))
            res = await self._request(
                token,
                "GET",
                f"/guilds/{guild_id}/members",
                params={"limit": page_limit, "after": after},
            )
            if not res.success:
                return res

            page = res.data if isinstance(res.data, list) else []
            if not page:
                break

            cursor = _member_user_id(page[-1])
            if cursor == after:
                logger.warning("Member paging for guild=%s stopped: page repeated", guild_id)
                break

            members.extend(page)
            if cursor is None:
                break
            after = cursor

        return DiscordResult(success=True, data=members[:cap])

    async def send_direct_message(self, token: str, user_id: str, content: str) -> DiscordResult:
        """
        Open (or find) the DM channel, then post into it.
        A failure opening the channel skips the post.
        """
        channel = await self._request(
            token,
            "POST",
            "/users/@me/channels",
            json={"recipient_id": user_id},
        )
        if not channel.success:
            return channel

        channel_id = channel.data.get("id") if isinstance(channel.data, dict) else None
        if not channel_id:
            return DiscordResult(success=False, error="Discord returned no DM channel id.")

        return await self._request(
            token,
            "POST",
            f"/channels/{channel_id}/messages",
            json={"content": content},
        )


def get_discord(conn: HTTPConnection) -> DiscordRestClient:
    return conn.app.state.discord


__all__ = [
    "DiscordResult",
    "DiscordRestClient",
    "get_discord",
]
