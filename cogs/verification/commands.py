from __future__ import annotations

from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from helpers.discord_reply import respond
from helpers.member_source import member_from_discord
from helpers.outcome_report import (
    TRY_AGAIN_MESSAGE,
    UNSUPPORTED_SERVER_MESSAGE,
    render_member_outcome,
)
from utils.errors import InvalidGuildConfig
from utils.log_context import get_interaction_extra, get_member_extra
from utils.logging import get_logger

if TYPE_CHECKING:
    from bot import VerifyBot

logger = get_logger(__name__)


class VerificationCog(commands.Cog):
    """Self-service verification and auto-verification of new members."""

    def __init__(self, bot: VerifyBot) -> None:
        self.bot = bot

    @app_commands.command(
        name="verify", description="Verifies you and gives you a nice role!"
    )
    @app_commands.guild_only()
    async def verify(self, interaction: discord.Interaction) -> None:
        extra = get_interaction_extra(interaction)
        await interaction.response.defer(ephemeral=True, thinking=True)
        services = self.bot.services
        try:
            outcome = await services.reconciliation.reconcile_one(
                member_from_discord(interaction.user)
            )
        except InvalidGuildConfig:
            logger.info("Verify used in an unconfigured server", extra=extra)
            message = UNSUPPORTED_SERVER_MESSAGE
        except Exception:
            logger.exception("Unexpected error in /verify", extra=extra)
            message = TRY_AGAIN_MESSAGE
        else:
            logger.info(f"/verify finished: {outcome.disposition.value}", extra=extra)
            message = render_member_outcome(outcome, services.api_url)

        await respond(interaction, message)

    @commands.Cog.listener()
    async def on_member_join(self, member: discord.Member) -> None:
        """Grant the verified role straight away to members who are already verified."""
        if member.bot:
            return

        extra = get_member_extra(member)
        try:
            outcome = await self.bot.services.reconciliation.reconcile_one(
                member_from_discord(member)
            )
        except InvalidGuildConfig:
            logger.debug("Skipping auto-verify: server not configured", extra=extra)
            return
        except Exception:
            logger.exception("Auto-verify on join failed", extra=extra)
            return

        if outcome.is_error:
            logger.warning(
                f"Auto-verify on join failed: {outcome.error.value if outcome.error else 'error'}",
                extra=extra,
            )
        else:
            logger.info(f"Auto-verify on join: {outcome.disposition.value}", extra=extra)


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(VerificationCog(bot))  # type: ignore[arg-type]
