"""Shared fixtures: an in-process fake of the Discord REST API and app wiring."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from dm_dashboard.config import Settings
from dm_dashboard.main import create_app
from dm_dashboard.services.discord_rest import DiscordRestClient
from dm_dashboard.store import MemoryStore

API_PREFIX = "/api/v10"


def member(user_id: str, *, username: Optional[str] = None, bot: bool = False, **extra: Any) -> Dict[str, Any]:
    """Build a guild member payload the way Discord returns it."""
    user = {"id": user_id, "username": username or f"user{user_id}", "bot": bot}
    for key in ("global_name", "avatar"):
        if key in extra:
            user[key] = extra.pop(key)
    return {"user": user, **extra}


class FakeDiscordApi:
    """
    Minimal Discord v10 emulation for httpx.MockTransport.

    Configure bots (token -> identity), guilds per token, members per guild,
    and failures; every request is recorded in `calls`.
    """

    def __init__(self) -> None:
        self.bots: Dict[str, Dict[str, Any]] = {}
        self.guilds: Dict[str, List[Dict[str, Any]]] = {}
        self.members: Dict[str, List[Dict[str, Any]]] = {}
        self.guild_errors: Dict[str, int] = {}
        self.channel_errors: Dict[str, int] = {}
        self.message_errors: Dict[str, int] = {}
        self.sent: List[Tuple[str, str]] = []
        self.calls: List[Tuple[str, str]] = []

    def add_bot(self, token: str, bot_id: str, username: str = "dm-bot", avatar: Optional[str] = None) -> None:
        self.bots[token] = {"id": bot_id, "username": username, "avatar": avatar, "bot": True}
        self.guilds.setdefault(token, [])

    def add_guild(self, token: str, guild_id: str, members: List[Dict[str, Any]]) -> None:
        self.guilds.setdefault(token, []).append({"id": guild_id, "name": f"guild {guild_id}"})
        self.members[guild_id] = members

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith(API_PREFIX):
            path = path[len(API_PREFIX):]
        self.calls.append((request.method, path))

        token = request.headers.get("Authorization", "").removeprefix("Bot ")
        if token not in self.bots:
            return httpx.Response(401, json={"message": "401: Unauthorized", "code": 0})

        if request.method == "GET" and path == "/users/@me":
            return httpx.Response(200, json=self.bots[token])

        if request.method == "GET" and path == "/users/@me/guilds":
            return httpx.Response(200, json=self.guilds.get(token, []))

        if request.method == "GET" and path.startswith("/guilds/") and path.endswith("/members"):
            guild_id = path.split("/")[2]
            if guild_id in self.guild_errors:
                return httpx.Response(self.guild_errors[guild_id], json={"message": "Missing Access", "code": 50001})
            limit = int(request.url.params.get("limit", "1"))
            # Snowflake-style cursor; tests use equal-length ids so string order works
            after = request.url.params.get("after", "0")
            ordered = sorted(self.members.get(guild_id, []), key=lambda m: m["user"]["id"])
            page = [m for m in ordered if m["user"]["id"] > after][:limit]
            return httpx.Response(200, json=page)

        if request.method == "POST" and path == "/users/@me/channels":
            user_id = json.loads(request.content)["recipient_id"]
            if user_id in self.channel_errors:
                return httpx.Response(self.channel_errors[user_id], json={"message": "Unknown User", "code": 10013})
            return httpx.Response(200, json={"id": f"dm-{user_id}", "type": 1})

        if request.method == "POST" and path.startswith("/channels/dm-") and path.endswith("/messages"):
            user_id = path.split("/")[2][len("dm-"):]
            if user_id in self.message_errors:
                return httpx.Response(
                    self.message_errors[user_id],
                    json={"message": "Cannot send messages to this user", "code": 50007},
                )
            content = json.loads(request.content)["content"]
            self.sent.append((user_id, content))
            return httpx.Response(200, json={"id": f"msg-{len(self.sent)}", "content": content})

        return httpx.Response(404, json={"message": "404: Not Found", "code": 0})


@pytest.fixture
def settings() -> Settings:
    return Settings(
        member_page_size=100,
        member_fetch_limit=1000,
        send_delay_default_ms=0,
        send_delay_max_ms=10000,
    )


@pytest.fixture
def fake_api() -> FakeDiscordApi:
    return FakeDiscordApi()


@pytest_asyncio.fixture
async def discord(settings: Settings, fake_api: FakeDiscordApi):
    client = DiscordRestClient(settings=settings, transport=fake_api.transport)
    yield client
    await client.aclose()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def client(settings: Settings, fake_api: FakeDiscordApi, store: MemoryStore):
    app = create_app(
        settings,
        store=store,
        discord=DiscordRestClient(settings=settings, transport=fake_api.transport),
    )
    with TestClient(app) as test_client:
        yield test_client
