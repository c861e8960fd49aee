"""
Structured logging context for Discord objects and verification jobs.

The dicts returned here are passed as ``extra=`` and picked up by the JSON
formatter in utils.logging.
"""

from typing import Any

import discord

from utils.types import BatchJob, Member


def get_interaction_extra(
    interaction: discord.Interaction, **additional: Any
) -> dict[str, Any]:
    """
    Build a logging extra dict for a slash-command interaction.

    Examples:
        logger.info("Command executed", extra=get_interaction_extra(interaction))
        logger.info("Job queued", extra=get_interaction_extra(interaction, job_id=7))
    """
    extra: dict[str, Any] = {}
    if interaction.guild_id is not None:
        extra["guild_id"] = interaction.guild_id
    if interaction.user is not None:
        extra["user_id"] = interaction.user.id
    if interaction.channel_id is not None:
        extra["channel_id"] = interaction.channel_id
    command = getattr(interaction, "command", None)
    if command is not None:
        extra["command_name"] = command.qualified_name
    extra.update(additional)
    return extra


def get_member_extra(member: Member | discord.Member, **additional: Any) -> dict[str, Any]:
    if isinstance(member, Member):
        extra: dict[str, Any] = {"guild_id": member.guild_id, "user_id": member.user_id}
    else:
        extra = {"guild_id": member.guild.id, "user_id": member.id}
    extra.update(additional)
    return extra


def get_job_extra(job: BatchJob, **additional: Any) -> dict[str, Any]:
    extra: dict[str, Any] = {
        "guild_id": job.guild_id,
        "user_id": job.initiator_id,
        "job_id": job.job_id,
    }
    extra.update(additional)
    return extra
