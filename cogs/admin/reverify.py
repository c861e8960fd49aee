from __future__ import annotations

from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from config.config_loader import ConfigLoader
from helpers.discord_reply import deliver_report, respond
from helpers.outcome_report import (
    DEFAULT_MAX_FAILURES,
    JOB_CONFLICT_MESSAGE,
    UNSUPPORTED_SERVER_MESSAGE,
    render_job_summary,
)
from helpers.verification_api import GuildAlreadyRegistered, RegisterGuildParams
from utils.errors import InvalidGuildConfig, JobAlreadyRunning, ServiceError
from utils.log_context import get_interaction_extra, get_job_extra
from utils.logging import get_logger
from utils.types import GuildConfig

if TYPE_CHECKING:
    from bot import VerifyBot

logger = get_logger(__name__)

NO_JOB_MESSAGE = "No verification job is running for this server."


class ReverifyCog(commands.Cog):
    """Server-wide re-verification, job control and server registration."""

    def __init__(self, bot: VerifyBot) -> None:
        self.bot = bot

    @app_commands.command(
        name="re-verify",
        description="Re-verifies everyone on the server, you must have the permissions to manage roles to use this command.",
    )
    @app_commands.guild_only()
    @app_commands.default_permissions(manage_roles=True)
    @app_commands.checks.has_permissions(manage_roles=True)
    async def re_verify(self, interaction: discord.Interaction) -> None:
        extra = get_interaction_extra(interaction)
        await interaction.response.defer(thinking=True)

        try:
            job = await self.bot.services.reconciliation.reconcile_all(
                interaction.guild_id, interaction.user.id
            )
        except JobAlreadyRunning:
            await respond(interaction, JOB_CONFLICT_MESSAGE, ephemeral=False)
            return
        except InvalidGuildConfig:
            await respond(interaction, UNSUPPORTED_SERVER_MESSAGE, ephemeral=False)
            return
        except Exception:
            logger.exception("Re-verification failed", extra=extra)
            await respond(
                interaction,
                "Re-verification failed unexpectedly. Please try again later.",
                ephemeral=False,
            )
            return

        max_failures = int(
            ConfigLoader.get("batch.max_failures_listed", DEFAULT_MAX_FAILURES)
        )
        logger.info("Re-verification report sent", extra=get_job_extra(job))
        await deliver_report(interaction, render_job_summary(job, max_failures))

    @app_commands.command(
        name="verify-cancel",
        description="Stops the running re-verification after the members already being checked.",
    )
    @app_commands.guild_only()
    @app_commands.default_permissions(manage_roles=True)
    @app_commands.checks.has_permissions(manage_roles=True)
    async def verify_cancel(self, interaction: discord.Interaction) -> None:
        job = self.bot.services.jobs.cancel(interaction.guild_id)
        if job is None:
            await respond(interaction, NO_JOB_MESSAGE)
            return
        logger.info(
            "Re-verification cancelled",
            extra=get_interaction_extra(interaction, job_id=job.job_id),
        )
        await respond(
            interaction,
            "Cancelling re-verification. Members already being checked will finish first.",
        )

    @app_commands.command(
        name="verify-status", description="Shows the progress of the running re-verification."
    )
    @app_commands.guild_only()
    @app_commands.default_permissions(manage_roles=True)
    @app_commands.checks.has_permissions(manage_roles=True)
    async def verify_status(self, interaction: discord.Interaction) -> None:
        job = self.bot.services.jobs.get(interaction.guild_id)
        if job is None or job.is_terminal:
            await respond(interaction, NO_JOB_MESSAGE)
            return
        status = (
            f"Re-verification #{job.job_id} is {job.state.value}: "
            f"{len(job.outcomes)}/{job.total_members} members processed."
        )
        if job.cancel_requested:
            status += " Cancellation has been requested."
        await respond(interaction, status)

    @app_commands.command(
        name="register-server",
        description="Registers this server with the verification service.",
    )
    @app_commands.describe(
        role="Role given to verified members",
        invite_link="Permanent invite link to this server",
        susu_link="Students' union society page, if any",
    )
    @app_commands.guild_only()
    @app_commands.default_permissions(manage_guild=True)
    @app_commands.checks.has_permissions(manage_guild=True)
    async def register_server(
        self,
        interaction: discord.Interaction,
        role: discord.Role,
        invite_link: str,
        susu_link: str | None = None,
    ) -> None:
        guild = interaction.guild
        if guild is None:
            await respond(interaction, "This command can only be used in a server.")
            return

        extra = get_interaction_extra(interaction, role_id=role.id)
        await interaction.response.defer(ephemeral=True, thinking=True)
        params = RegisterGuildParams(
            guild_id=guild.id,
            name=guild.name,
            created_at=guild.created_at,
            owner_id=guild.owner_id,
            invite_link=invite_link,
            role_id=role.id,
            role_name=role.name,
            role_colour=role.colour.value,
            icon=guild.icon.url if guild.icon else None,
            susu_link=susu_link,
        )

        services = self.bot.services
        try:
            result = await services.verification_api.register_guild(params)
        except GuildAlreadyRegistered:
            await respond(interaction, "This server has already been registered.")
            return
        except ServiceError:
            logger.exception("Server registration failed", extra=extra)
            await respond(interaction, "Registration failed. Please try again later.")
            return

        logger.info(f"Server registered (approved={result.approved})", extra=extra)
        if result.approved:
            services.guild_config.set_guild_config(
                GuildConfig(guild_id=guild.id, verified_role_id=role.id, approved=True)
            )
            await respond(interaction, f"Server registered! Members can now use /verify to get {role.name}.")
        else:
            services.guild_config.invalidate(guild.id)
            await respond(
                interaction,
                "Server registered. It will start working once the verification service admins approve it.",
            )

    @commands.Cog.listener()
    async def on_guild_role_delete(self, role: discord.Role) -> None:
        """Stop a running re-verification whose verified role was just deleted."""
        services = self.bot.services
        guild_id = role.guild.id
        config = services.guild_config.cached_config(guild_id)
        if config is None or config.verified_role_id != role.id:
            return

        services.guild_config.invalidate(guild_id)
        services.jobs.invalidate(guild_id, f"Verified role {role.name} was deleted")

    async def cog_app_command_error(
        self, interaction: discord.Interaction, error: app_commands.AppCommandError
    ) -> None:
        extra = get_interaction_extra(interaction)
        if isinstance(error, app_commands.MissingPermissions):
            logger.warning("Missing permissions for admin command", extra=extra)
            await respond(
                interaction, "You lack the necessary permissions to execute this command."
            )
            return
        logger.error(f"Error in admin command: {error}", extra=extra, exc_info=error)
        await respond(interaction, "An error occurred while processing the command.")


async def setup(bot: commands.Bot) -> None:
    await bot.add_cog(ReverifyCog(bot))  # type: ignore[arg-type]
