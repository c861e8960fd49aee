"""
Interaction reply helpers.

Every cog answers through ``respond`` so that deferred and non-deferred
interactions are handled the same way, mentions in reports never ping anyone,
and long reports are cut to Discord's message limit.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import discord

from utils.logging import get_logger

if TYPE_CHECKING:
    from discord import Interaction, Message

logger = get_logger(__name__)

MESSAGE_LIMIT = 2000
NO_MENTIONS = discord.AllowedMentions.none()


def truncate(content: str, limit: int = MESSAGE_LIMIT) -> str:
    if len(content) <= limit:
        return content
    return content[: limit - 1] + "…"


async def respond(
    interaction: Interaction,
    content: str,
    *,
    ephemeral: bool = True,
) -> Message | None:
    """
    Send ``content`` as the interaction's response, or as a follow-up if the
    interaction was already acknowledged (e.g. deferred).

    Returns the follow-up message when one was sent, else None.
    """
    content = truncate(content)
    if interaction.response.is_done():
        return await interaction.followup.send(
            content, ephemeral=ephemeral, allowed_mentions=NO_MENTIONS
        )
    await interaction.response.send_message(
        content, ephemeral=ephemeral, allowed_mentions=NO_MENTIONS
    )
    return None


async def deliver_report(interaction: Interaction, content: str) -> None:
    """
    Post a long-running command's final report.

    Interaction tokens expire after 15 minutes; a batch over a large server can
    outlive that, in which case the report goes to the invoking channel instead.
    """
    try:
        await respond(interaction, content, ephemeral=False)
        return
    except discord.HTTPException as e:
        logger.warning(
            f"Follow-up failed ({e.status}); posting report to channel instead",
            extra={"guild_id": interaction.guild_id, "channel_id": interaction.channel_id},
        )

    channel = interaction.channel
    if channel is None or not hasattr(channel, "send"):
        logger.error(
            "No channel to deliver report to", extra={"guild_id": interaction.guild_id}
        )
        return
    await channel.send(
        f"{interaction.user.mention}\n{truncate(content, MESSAGE_LIMIT - 40)}",
        allowed_mentions=discord.AllowedMentions(users=[interaction.user]),
    )
