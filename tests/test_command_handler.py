from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import discord

from linkbot.emoji import ACK_EMOJI, symbol_for_index
from linkbot.errors import BotError, DatabaseError
from linkbot.handlers.command_handler import CommandDispatcher
from linkbot.models import Link
from linkbot.rate_limiter import RateLimiter

BOT_ID = 1


class DummyResponse:
    def __init__(self) -> None:
        self.done = False
        self.messages: list[str] = []
        self.deferred = False

    def is_done(self) -> bool:
        return self.done

    async def send_message(self, content=None, *, ephemeral=False, **kwargs) -> None:
        assert not self.done
        self.done = True
        self.messages.append(content)

    async def defer(self, *, ephemeral=False, thinking=False) -> None:
        self.done = True
        self.deferred = True


class DummyFollowup:
    def __init__(self) -> None:
        self.messages: list[str] = []

    async def send(self, content=None, *, ephemeral=False, **kwargs) -> None:
        self.messages.append(content)


class DummyDMMessage:
    def __init__(self) -> None:
        self.id = 999
        self.reactions: list[str] = []

    async def add_reaction(self, emoji: str) -> None:
        self.reactions.append(emoji)


class DummyDMChannel:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.sent: list[discord.Embed] = []
        self.message = DummyDMMessage()

    async def send(self, *, embed: discord.Embed) -> DummyDMMessage:
        if self.error is not None:
            raise self.error
        self.sent.append(embed)
        return self.message


class DummyUser:
    def __init__(self, dm_error: Exception | None = None) -> None:
        self.id = 60
        self.name = "reader"
        self.dm = DummyDMChannel(dm_error)

    async def create_dm(self) -> DummyDMChannel:
        return self.dm


class DummyChannel:
    def __init__(self, visible: bool) -> None:
        self.visible = visible

    def permissions_for(self, member) -> SimpleNamespace:
        return SimpleNamespace(view_channel=self.visible)


class DummyGuild:
    def __init__(self, guild_id: int, name: str, members: dict[int, object], hidden: set[int] | None = None) -> None:
        self.id = guild_id
        self.name = name
        self.members = members
        self.hidden = hidden or set()

    def get_member(self, user_id: int):
        return self.members.get(user_id)

    async def fetch_member(self, user_id: int):
        raise discord.NotFound(SimpleNamespace(status=404, reason="Not Found"), "unknown member")

    def get_channel_or_thread(self, channel_id: int):
        return DummyChannel(channel_id not in self.hidden)


class DummyInteraction:
    def __init__(self, user: DummyUser, guild: DummyGuild | None) -> None:
        self.user = user
        self.guild = guild
        self.response = DummyResponse()
        self.followup = DummyFollowup()

    @property
    def replies(self) -> list[str]:
        return self.response.messages + self.followup.messages


class DummyLinkStore:
    def __init__(self, links: list[Link], error: Exception | None = None) -> None:
        self.links = links
        self.error = error
        self.guild_queries: list[tuple[str, str, str]] = []
        self.all_guild_queries: list[tuple[str, list[str], str]] = []

    async def get_unread_links_for_user(self, username, guild_id, bot_id):
        if self.error is not None:
            raise self.error
        self.guild_queries.append((username, guild_id, bot_id))
        return [link for link in self.links if link.guild_id == guild_id]

    async def get_unread_links_for_user_all_guilds(self, username, guild_ids, bot_id):
        self.all_guild_queries.append((username, list(guild_ids), bot_id))
        return [link for link in self.links if link.guild_id in guild_ids]


class DummyMappingStore:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.single: list[tuple[str, str, str, str, str]] = []
        self.bulk: list[tuple[str, list[str], str]] = []

    async def create_dm_mapping(self, dm_message_id, emoji, original_message_id, guild_id, user_id):
        if self.error is not None:
            raise self.error
        self.single.append((dm_message_id, emoji, original_message_id, guild_id, user_id))

    async def create_bulk_dm_mapping(self, dm_message_id, message_ids, user_id):
        self.bulk.append((dm_message_id, list(message_ids), user_id))


def _links(count: int, guild_id: str = "1", channel_id: str = "10", url: str = "https://example.com") -> list[Link]:
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return [
        Link(
            message_id=f"m{i}",
            guild_id=guild_id,
            channel_id=channel_id,
            channel_name="links",
            url=f"{url}/{i}",
            author="poster",
            posted_at=start + timedelta(minutes=i),
        )
        for i in range(count)
    ]


def _dispatcher(links: list[Link], guilds: list[DummyGuild] | None = None, limiter: RateLimiter | None = None):
    client = SimpleNamespace(user=SimpleNamespace(id=BOT_ID), guilds=guilds or [])
    mappings = DummyMappingStore()
    store = DummyLinkStore(links)
    dispatcher = CommandDispatcher(client, store, mappings, limiter or RateLimiter())
    return dispatcher, store, mappings


def _guild_interaction(user: DummyUser, hidden: set[int] | None = None) -> DummyInteraction:
    guild = DummyGuild(1, "Guild A", {user.id: user}, hidden)
    return DummyInteraction(user, guild)


def test_rate_limited_command_is_not_invoked() -> None:
    limiter = RateLimiter(max_requests=1)
    dispatcher, _, _ = _dispatcher([], limiter=limiter)
    calls: list[object] = []

    async def command(interaction) -> None:
        calls.append(interaction)
        await interaction.response.send_message("ok")

    async def runner() -> list[DummyInteraction]:
        first = DummyInteraction(DummyUser(), None)
        second = DummyInteraction(DummyUser(), None)
        assert await dispatcher.handle_command(first, "unread", command)
        assert not await dispatcher.handle_command(second, "unread", command)
        return [first, second]

    first, second = asyncio.run(runner())
    assert len(calls) == 1
    assert first.replies == ["ok"]
    assert len(second.replies) == 1
    assert "レート制限" in second.replies[0]
    assert "秒" in second.replies[0]


def test_command_errors_become_single_reply() -> None:
    dispatcher, _, _ = _dispatcher([])

    async def broken(interaction) -> None:
        raise RuntimeError("secret internals")

    async def deferred_bot_error(interaction) -> None:
        await interaction.response.defer(ephemeral=True)
        raise BotError("対象が見つかりません。")

    first = DummyInteraction(DummyUser(), None)
    second = DummyInteraction(DummyUser(), None)
    assert not asyncio.run(dispatcher.handle_command(first, "status", broken))
    assert not asyncio.run(dispatcher.handle_command(second, "status", deferred_bot_error))

    assert len(first.replies) == 1
    assert first.replies[0].startswith("❌")
    assert "secret" not in first.replies[0]
    assert second.replies == ["⚠️ 対象が見つかりません。"]


def test_digest_with_fifteen_links_creates_sixteen_mappings() -> None:
    user = DummyUser()
    dispatcher, store, mappings = _dispatcher(_links(15))
    interaction = _guild_interaction(user)

    asyncio.run(dispatcher.handle_command(interaction, "unread", dispatcher.handle_unread_command))

    assert store.guild_queries == [("reader", "1", str(BOT_ID))]
    assert len(mappings.single) == 15
    assert [row[1] for row in mappings.single] == [symbol_for_index(i) for i in range(15)]
    assert [row[1] for row in mappings.single][10:] == [chr(0x1F1E6 + i) for i in range(5)]
    assert mappings.bulk == [("999", [f"m{i}" for i in range(15)], "60")]
    assert user.dm.message.reactions[-1] == ACK_EMOJI
    assert len(user.dm.message.reactions) == 16
    embed = user.dm.sent[0]
    assert len(embed.fields) == 15
    assert embed.footer.text is None
    assert len(interaction.replies) == 1
    assert interaction.replies[0].startswith("📬")


def test_digest_truncates_to_twenty_five() -> None:
    user = DummyUser()
    dispatcher, _, mappings = _dispatcher(_links(30))

    asyncio.run(dispatcher.handle_command(_guild_interaction(user), "unread", dispatcher.handle_unread_command))

    assert len(mappings.single) == 25
    assert mappings.bulk[0][1] == [f"m{i}" for i in range(25)]
    embed = user.dm.sent[0]
    assert len(embed.fields) == 25
    assert "30" in embed.footer.text


def test_empty_digest_is_not_an_error() -> None:
    user = DummyUser()
    dispatcher, _, mappings = _dispatcher([])
    interaction = _guild_interaction(user)

    asyncio.run(dispatcher.handle_command(interaction, "unread", dispatcher.handle_unread_command))

    assert interaction.replies == ["🎉 未読のリンクはありません！"]
    assert user.dm.sent == []
    assert mappings.single == []


def test_closed_dms_get_distinct_reply() -> None:
    error = discord.Forbidden(SimpleNamespace(status=403, reason="Forbidden"), "Cannot send messages to this user")
    user = DummyUser(dm_error=error)
    dispatcher, _, mappings = _dispatcher(_links(2))
    interaction = _guild_interaction(user)

    asyncio.run(dispatcher.handle_command(interaction, "unread", dispatcher.handle_unread_command))

    assert len(interaction.replies) == 1
    assert interaction.replies[0].startswith("⚠️ DMを送信できませんでした")
    assert mappings.single == []
    assert mappings.bulk == []


def test_other_dm_failures_get_generic_reply() -> None:
    error = discord.HTTPException(SimpleNamespace(status=400, reason="Bad Request"), "Invalid Form Body")
    user = DummyUser(dm_error=error)
    dispatcher, _, mappings = _dispatcher(_links(2))
    interaction = _guild_interaction(user)

    asyncio.run(dispatcher.handle_command(interaction, "unread", dispatcher.handle_unread_command))

    assert len(interaction.replies) == 1
    assert interaction.replies[0].startswith("❌")
    assert mappings.single == []


def test_store_errors_do_not_leak_details() -> None:
    user = DummyUser()
    dispatcher, store, _ = _dispatcher(_links(2))
    store.error = DatabaseError("_unread_links failed: database is locked")
    interaction = _guild_interaction(user)

    assert not asyncio.run(dispatcher.handle_command(interaction, "unread", dispatcher.handle_unread_command))

    assert len(interaction.replies) == 1
    assert interaction.replies[0].startswith("❌")
    assert "database" not in interaction.replies[0]
    assert user.dm.sent == []


def test_mapping_failure_after_delivery_is_contained() -> None:
    user = DummyUser()
    dispatcher, _, mappings = _dispatcher(_links(3))
    mappings.error = DatabaseError("create_dm_mapping failed: disk I/O error")
    interaction = _guild_interaction(user)

    asyncio.run(dispatcher.handle_command(interaction, "unread", dispatcher.handle_unread_command))

    assert len(user.dm.sent) == 1
    assert user.dm.message.reactions == []
    assert len(interaction.replies) == 1
    assert interaction.replies[0].startswith("⚠️ 未読リンクをDMで送信しましたが")
    assert "disk" not in interaction.replies[0]


def test_digest_with_long_urls_fits_embed_limit() -> None:
    dispatcher, _, _ = _dispatcher([])
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    links = [
        Link(
            message_id=str(1234567890123456789 + i),
            guild_id="1134567890123456789",
            channel_id="1034567890123456789",
            channel_name="long-channel-name-" * 5,
            url="https://tracker.example.com/click?" + "utm_source=newsletter&" * 14 + f"id={i}",
            author="someone-with-a-long-name" * 3,
            posted_at=start + timedelta(minutes=i),
        )
        for i in range(25)
    ]
    guild_names = {"1134567890123456789": "A guild with a rather long display name"}

    embed = dispatcher.build_digest_embed(links, 40, guild_names)

    assert len(embed) <= 6000
    assert len(embed.fields) == 25
    assert all(len(field.value) <= 1024 and len(field.name) <= 256 for field in embed.fields)
    assert links[0].jump_url in embed.fields[0].value
    assert "tracker.example.com" in embed.fields[0].value


def test_digest_keeps_short_urls_intact() -> None:
    dispatcher, _, _ = _dispatcher([])
    links = _links(3)

    embed = dispatcher.build_digest_embed(links, 3)

    assert "https://example.com/2" in embed.fields[2].value
    assert "…" not in embed.fields[2].value


def test_hidden_channels_are_filtered() -> None:
    user = DummyUser()
    links = _links(2) + _links(1, channel_id="11")
    dispatcher, _, mappings = _dispatcher(links)

    asyncio.run(
        dispatcher.handle_command(_guild_interaction(user, hidden={11}), "unread", dispatcher.handle_unread_command)
    )

    assert [row[2] for row in mappings.single] == ["m0", "m1"]


def test_dm_digest_spans_shared_guilds() -> None:
    user = DummyUser()
    shared = DummyGuild(1, "Guild A", {user.id: user})
    other = DummyGuild(2, "Guild B", {})
    links = _links(2, guild_id="1") + _links(1, guild_id="2")
    dispatcher, store, mappings = _dispatcher(links, guilds=[shared, other])
    interaction = DummyInteraction(user, None)

    asyncio.run(dispatcher.handle_command(interaction, "unread", dispatcher.handle_unread_command))

    assert store.all_guild_queries == [("reader", ["1"], str(BOT_ID))]
    assert [row[3] for row in mappings.single] == ["1", "1"]
    embed = user.dm.sent[0]
    assert "Guild A" in embed.fields[0].name


def test_rate_limit_admin_helpers() -> None:
    limiter = RateLimiter(max_requests=2)
    dispatcher, _, _ = _dispatcher([], limiter=limiter)
    limiter.check_limit(60, "unread")
    limiter.check_limit(60, "status")

    assert dispatcher.get_rate_limit_info(60, "unread").remaining == 1
    assert dispatcher.reset_rate_limit(60, "unread") == 1
    assert dispatcher.get_rate_limit_info(60, "unread").remaining == 2
    assert dispatcher.reset_rate_limit(60) == 1
    assert dispatcher.get_rate_limit_stats()["total_entries"] == 0

    dispatcher.destroy()
