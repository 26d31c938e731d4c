"""Tests for the background member refresh."""

import asyncio
from unittest.mock import AsyncMock

from dm_dashboard.models import Bot, DiscordUser
from dm_dashboard.services.discord_rest import DiscordResult
from dm_dashboard.services.user_refresh import (
    UserRefresher,
    display_name_for,
    merge_members,
    user_from_member,
)

from conftest import member

BOT = Bot(id="B1", username="dm-bot", token="T1")


def test_display_name_priority():
    assert display_name_for(member("1", username="raw", global_name="Global", nick="Nick")) == "Nick"
    assert display_name_for(member("1", username="raw", global_name="Global")) == "Global"
    assert display_name_for(member("1", username="raw")) == "raw"


def test_user_from_member_skips_bots_and_builds_avatar(settings):
    assert user_from_member(member("1", bot=True), "B1", settings=settings) is None
    assert user_from_member({"nick": "no user"}, "B1", settings=settings) is None

    u = user_from_member(member("1", avatar="abc"), "B1", settings=settings)
    assert u.bot_id == "B1"
    assert u.avatar_url == "https://cdn.discordapp.com/avatars/1/abc.png"
    assert u.status == "online"


def test_merge_dedupes_last_guild_wins(settings):
    g1 = [member("1", nick="first"), member("2", bot=True)]
    g2 = [member("1", nick="second"), member("3")]

    users = merge_members("B1", [g1, g2], settings=settings)

    by_id = {u.id: u for u in users}
    assert sorted(by_id) == ["1", "3"]
    assert by_id["1"].display_name == "second"


async def test_refresh_populates_cache(store, discord, fake_api):
    fake_api.add_bot("T1", "B1")
    fake_api.add_guild("T1", "G1", [member("1001"), member("1002", bot=True)])
    fake_api.add_guild("T1", "G2", [member("1001"), member("1003")])

    refresher = UserRefresher(store, discord)
    assert await refresher.refresh(BOT) is True

    users = await store.get_users_by_bot_id("B1")
    assert sorted(u.id for u in users) == ["1001", "1003"]


async def test_failing_guild_does_not_abort_refresh(store, discord, fake_api):
    fake_api.add_bot("T1", "B1")
    fake_api.add_guild("T1", "G1", [member("1001")])
    fake_api.add_guild("T1", "G2", [member("1002")])

    refresher = UserRefresher(store, discord)
    await refresher.refresh(BOT)

    # G1 starts failing and G2 gains a member
    fake_api.guild_errors["G1"] = 500
    fake_api.members["G2"].append(member("1003"))
    assert await refresher.refresh(BOT) is True

    users = await store.get_users_by_bot_id("B1")
    assert sorted(u.id for u in users) == ["1001", "1002", "1003"]


async def test_guild_listing_failure_leaves_cache(store, discord, fake_api):
    gen = await store.begin_refresh("B1")
    await store.commit_users("B1", [DiscordUser(id="U0", bot_id="B1", username="kept")], gen)

    # Token unknown to the fake API -> 401 on guild listing
    refresher = UserRefresher(store, discord)
    assert await refresher.refresh(BOT) is False

    assert [u.id for u in await store.get_users_by_bot_id("B1")] == ["U0"]


async def test_refresh_never_raises(store):
    discord = AsyncMock()
    discord.list_guilds.side_effect = RuntimeError("boom")

    assert await UserRefresher(store, discord).refresh(BOT) is False


async def test_guilds_are_fetched_concurrently(store):
    in_flight = 0
    peak = 0

    async def list_members(token, guild_id):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return DiscordResult(success=True, data=[member(guild_id.replace("G", "10"))])

    discord = AsyncMock()
    discord.list_guilds.return_value = DiscordResult(success=True, data=[{"id": f"G{i}"} for i in range(5)])
    discord.list_guild_members.side_effect = list_members

    assert await UserRefresher(store, discord).refresh(BOT) is True
    assert peak == 5
    assert len(await store.get_users_by_bot_id("B1")) == 5


async def test_slow_older_refresh_does_not_clobber_newer(store):
    release_old = asyncio.Event()

    async def list_members(token, guild_id):
        if guild_id == "OLD":
            await release_old.wait()
            return DiscordResult(success=True, data=[member("1111")])
        return DiscordResult(success=True, data=[member("2222")])

    discord = AsyncMock()
    discord.list_guilds.side_effect = [
        DiscordResult(success=True, data=[{"id": "OLD"}]),
        DiscordResult(success=True, data=[{"id": "NEW"}]),
    ]
    discord.list_guild_members.side_effect = list_members
    refresher = UserRefresher(store, discord)

    old_task = asyncio.create_task(refresher.refresh(BOT))
    await asyncio.sleep(0)
    assert await refresher.refresh(BOT) is True

    release_old.set()
    assert await old_task is False
    assert [u.id for u in await store.get_users_by_bot_id("B1")] == ["2222"]


async def test_failed_newer_refresh_lets_older_commit(store):
    release_old = asyncio.Event()

    async def list_members(token, guild_id):
        await release_old.wait()
        return DiscordResult(success=True, data=[member("1111")])

    discord = AsyncMock()
    discord.list_guilds.side_effect = [
        DiscordResult(success=True, data=[{"id": "OLD"}]),
        DiscordResult(success=False, status=503, status_text="Service Unavailable"),
    ]
    discord.list_guild_members.side_effect = list_members
    refresher = UserRefresher(store, discord)

    old_task = asyncio.create_task(refresher.refresh(BOT))
    await asyncio.sleep(0)
    assert await refresher.refresh(BOT) is False

    release_old.set()
    assert await old_task is True
    assert [u.id for u in await store.get_users_by_bot_id("B1")] == ["1111"]
