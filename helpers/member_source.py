"""Guild member listing for batch verification."""

from typing import Protocol

import discord

from utils.logging import get_logger
from utils.types import GuildId, Member

logger = get_logger(__name__)


class MemberSource(Protocol):
    async def fetch_members(self, guild_id: GuildId) -> list[Member]: ...


def member_from_discord(member: discord.Member) -> Member:
    """Snapshot a discord.py member into the engine's immutable Member."""
    return Member(
        guild_id=member.guild.id,
        user_id=member.id,
        role_ids=frozenset(role.id for role in member.roles),
        display_name=member.display_name,
    )


class DiscordMemberSource:
    """
    Fetches the full member list of a guild through the REST API.

    ``guild.fetch_members`` pages through the list 1000 members at a time; the
    result is deduplicated by user id so a member who shows up on two pages
    (joins during the fetch) is only reconciled once. Bot accounts are skipped.
    """

    def __init__(self, bot: discord.Client) -> None:
        self.bot = bot

    async def _resolve_guild(self, guild_id: GuildId) -> discord.Guild:
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            guild = await self.bot.fetch_guild(guild_id)
        return guild

    async def fetch_members(self, guild_id: GuildId) -> list[Member]:
        guild = await self._resolve_guild(guild_id)
        members: dict[int, Member] = {}
        skipped_bots = 0

        async for discord_member in guild.fetch_members(limit=None):
            if discord_member.bot:
                skipped_bots += 1
                continue
            if discord_member.id in members:
                continue
            members[discord_member.id] = Member(
                guild_id=guild_id,
                user_id=discord_member.id,
                role_ids=frozenset(role.id for role in discord_member.roles),
                display_name=discord_member.display_name,
            )

        logger.info(
            f"Fetched {len(members)} members ({skipped_bots} bots skipped)",
            extra={"guild_id": guild_id},
        )
        return list(members.values())
