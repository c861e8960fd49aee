"""
Async Command Handler Tests

Unit tests for the slash commands and listeners using mock objects.
Service calls are AsyncMocks; no real Discord connections are made.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from discord import app_commands

from cogs.admin.reverify import NO_JOB_MESSAGE, ReverifyCog
from cogs.verification.commands import VerificationCog
from helpers.outcome_report import (
    JOB_CONFLICT_MESSAGE,
    TRY_AGAIN_MESSAGE,
    UNSUPPORTED_SERVER_MESSAGE,
)
from helpers.verification_api import GuildAlreadyRegistered, RegisterResult
from services.job_registry import JobRegistry
from tests.factories import FakeBot, make_guild, make_interaction, make_member, make_role
from tests.factories.service_fakes import make_member as make_engine_member
from utils.errors import InvalidGuildConfig, JobAlreadyRunning, ServiceError
from utils.types import (
    AbortReason,
    BatchJob,
    Disposition,
    GuildConfig,
    JobState,
    MemberOutcome,
    VerificationStatus,
)

API_URL = "https://verify.example.org"


def make_services(**overrides):
    services = SimpleNamespace(
        api_url=API_URL,
        reconciliation=SimpleNamespace(reconcile_one=AsyncMock(), reconcile_all=AsyncMock()),
        jobs=JobRegistry(),
        guild_config=MagicMock(),
        verification_api=SimpleNamespace(register_guild=AsyncMock()),
    )
    for name, value in overrides.items():
        setattr(services, name, value)
    return services


def last_message(interaction) -> str:
    return interaction.messages[-1]["content"]


class TestVerifyCommand:
    """Test /verify responses for each reconciliation result."""

    @pytest.mark.asyncio
    async def test_granted(self):
        services = make_services()
        services.reconciliation.reconcile_one.return_value = MemberOutcome(
            make_engine_member(1), Disposition.ROLE_GRANTED
        )
        cog = VerificationCog(FakeBot(services=services))
        interaction = make_interaction()

        await cog.verify.callback(cog, interaction)

        assert interaction.response._deferred
        assert last_message(interaction) == "You have now been verified!"
        assert interaction.followup._messages[0]["ephemeral"] is True

    @pytest.mark.asyncio
    async def test_passes_member_snapshot(self):
        services = make_services()
        services.reconciliation.reconcile_one.return_value = MemberOutcome(
            make_engine_member(1), Disposition.NO_CHANGE_NEEDED, status=VerificationStatus.not_verified()
        )
        cog = VerificationCog(FakeBot(services=services))
        guild = make_guild(1000)
        user = make_member(42, roles=[make_role(555)], guild=guild)
        interaction = make_interaction(user=user, guild=guild)

        await cog.verify.callback(cog, interaction)

        member = services.reconciliation.reconcile_one.await_args.args[0]
        assert member.key == (1000, 42)
        assert member.has_role(555)
        assert API_URL in last_message(interaction)

    @pytest.mark.asyncio
    async def test_unsupported_server(self):
        services = make_services()
        services.reconciliation.reconcile_one.side_effect = InvalidGuildConfig(1000)
        cog = VerificationCog(FakeBot(services=services))
        interaction = make_interaction()

        await cog.verify.callback(cog, interaction)

        assert last_message(interaction) == UNSUPPORTED_SERVER_MESSAGE

    @pytest.mark.asyncio
    async def test_unexpected_error(self):
        services = make_services()
        services.reconciliation.reconcile_one.side_effect = RuntimeError("boom")
        cog = VerificationCog(FakeBot(services=services))
        interaction = make_interaction()

        await cog.verify.callback(cog, interaction)

        assert last_message(interaction) == TRY_AGAIN_MESSAGE


class TestMemberJoin:
    @pytest.mark.asyncio
    async def test_reconciles_new_member(self):
        services = make_services()
        services.reconciliation.reconcile_one.return_value = MemberOutcome(
            make_engine_member(42), Disposition.ROLE_GRANTED
        )
        cog = VerificationCog(FakeBot(services=services))

        await cog.on_member_join(make_member(42, guild=make_guild(1000)))

        services.reconciliation.reconcile_one.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_ignores_bots(self):
        services = make_services()
        cog = VerificationCog(FakeBot(services=services))

        await cog.on_member_join(make_member(42, guild=make_guild(1000), bot=True))

        services.reconciliation.reconcile_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unconfigured_server_is_quiet(self):
        services = make_services()
        services.reconciliation.reconcile_one.side_effect = InvalidGuildConfig(1000)
        cog = VerificationCog(FakeBot(services=services))

        await cog.on_member_join(make_member(42, guild=make_guild(1000)))


def finished_job() -> BatchJob:
    job = BatchJob(job_id=3, guild_id=1000, initiator_id=7)
    job.transition(JobState.RUNNING)
    job.record(MemberOutcome(make_engine_member(1), Disposition.ROLE_GRANTED))
    job.record(MemberOutcome(make_engine_member(2), Disposition.NO_CHANGE_NEEDED))
    job.transition(JobState.COMPLETED)
    return job


class TestReverifyCommand:
    @pytest.mark.asyncio
    async def test_posts_report(self):
        services = make_services()
        services.reconciliation.reconcile_all.return_value = finished_job()
        cog = ReverifyCog(FakeBot(services=services))
        interaction = make_interaction()

        await cog.re_verify.callback(cog, interaction)

        services.reconciliation.reconcile_all.assert_awaited_once_with(
            interaction.guild_id, interaction.user.id
        )
        report = last_message(interaction)
        assert report.startswith("Successfully completed re-verifications for 2 members.")
        assert interaction.followup._messages[-1]["ephemeral"] is False

    @pytest.mark.asyncio
    async def test_job_conflict(self):
        services = make_services()
        services.reconciliation.reconcile_all.side_effect = JobAlreadyRunning(1000, 1)
        cog = ReverifyCog(FakeBot(services=services))
        interaction = make_interaction()

        await cog.re_verify.callback(cog, interaction)

        assert last_message(interaction) == JOB_CONFLICT_MESSAGE
        assert interaction.followup._messages[-1]["ephemeral"] is False

    @pytest.mark.asyncio
    async def test_unsupported_server(self):
        services = make_services()
        services.reconciliation.reconcile_all.side_effect = InvalidGuildConfig(1000)
        cog = ReverifyCog(FakeBot(services=services))
        interaction = make_interaction()

        await cog.re_verify.callback(cog, interaction)

        assert last_message(interaction) == UNSUPPORTED_SERVER_MESSAGE
        assert interaction.followup._messages[-1]["ephemeral"] is False

    @pytest.mark.asyncio
    async def test_unexpected_failure(self):
        services = make_services()
        services.reconciliation.reconcile_all.side_effect = RuntimeError("gateway")
        cog = ReverifyCog(FakeBot(services=services))
        interaction = make_interaction()

        await cog.re_verify.callback(cog, interaction)

        assert "failed unexpectedly" in last_message(interaction)


class TestJobControlCommands:
    @pytest.mark.asyncio
    async def test_cancel_without_job(self):
        cog = ReverifyCog(FakeBot(services=make_services()))
        interaction = make_interaction()

        await cog.verify_cancel.callback(cog, interaction)

        assert last_message(interaction) == NO_JOB_MESSAGE

    @pytest.mark.asyncio
    async def test_cancel_running_job(self):
        services = make_services()
        interaction = make_interaction()
        job = await services.jobs.register(interaction.guild_id, 7)
        cog = ReverifyCog(FakeBot(services=services))

        await cog.verify_cancel.callback(cog, interaction)

        assert job.cancel_requested
        assert last_message(interaction).startswith("Cancelling re-verification.")

    @pytest.mark.asyncio
    async def test_status_reports_progress(self):
        services = make_services()
        interaction = make_interaction()
        job = await services.jobs.register(interaction.guild_id, 7)
        job.total_members = 10
        job.transition(JobState.RUNNING)
        job.record(MemberOutcome(make_engine_member(1), Disposition.ROLE_GRANTED))
        cog = ReverifyCog(FakeBot(services=services))

        await cog.verify_status.callback(cog, interaction)

        assert last_message(interaction) == (
            f"Re-verification #{job.job_id} is running: 1/10 members processed."
        )

    @pytest.mark.asyncio
    async def test_status_without_job(self):
        cog = ReverifyCog(FakeBot(services=make_services()))
        interaction = make_interaction()

        await cog.verify_status.callback(cog, interaction)

        assert last_message(interaction) == NO_JOB_MESSAGE


class TestRegisterServer:
    @pytest.mark.asyncio
    async def test_approved_registration_seeds_cache(self):
        services = make_services()
        services.verification_api.register_guild.return_value = RegisterResult(True, True)
        cog = ReverifyCog(FakeBot(services=services))
        guild = make_guild(1000, name="Test Guild")
        interaction = make_interaction(guild=guild)
        role = make_role(555, "Verified", guild=guild)

        await cog.register_server.callback(cog, interaction, role, "https://discord.gg/abc")

        params = services.verification_api.register_guild.await_args.args[0]
        assert params.guild_id == 1000
        assert params.role_id == 555
        assert params.role_colour == 0x2ECC71
        assert params.susu_link is None
        services.guild_config.set_guild_config.assert_called_once_with(
            GuildConfig(guild_id=1000, verified_role_id=555, approved=True)
        )
        services.guild_config.invalidate.assert_not_called()
        assert "Members can now use /verify" in last_message(interaction)

    @pytest.mark.asyncio
    async def test_pending_approval(self):
        services = make_services()
        services.verification_api.register_guild.return_value = RegisterResult(True, False)
        cog = ReverifyCog(FakeBot(services=services))
        interaction = make_interaction()

        await cog.register_server.callback(cog, interaction, make_role(555), "https://discord.gg/abc")

        assert "approve" in last_message(interaction)
        services.guild_config.invalidate.assert_called_once_with(interaction.guild_id)
        services.guild_config.set_guild_config.assert_not_called()

    @pytest.mark.asyncio
    async def test_already_registered(self):
        services = make_services()
        services.verification_api.register_guild.side_effect = GuildAlreadyRegistered("409")
        cog = ReverifyCog(FakeBot(services=services))
        interaction = make_interaction()

        await cog.register_server.callback(cog, interaction, make_role(555), "https://discord.gg/abc")

        assert last_message(interaction) == "This server has already been registered."
        services.guild_config.invalidate.assert_not_called()

    @pytest.mark.asyncio
    async def test_service_failure(self):
        services = make_services()
        services.verification_api.register_guild.side_effect = ServiceError("HTTP 500")
        cog = ReverifyCog(FakeBot(services=services))
        interaction = make_interaction()

        await cog.register_server.callback(cog, interaction, make_role(555), "https://discord.gg/abc")

        assert last_message(interaction).startswith("Registration failed.")


class TestRoleDeleteListener:
    @pytest.mark.asyncio
    async def test_verified_role_deletion_stops_job(self):
        services = make_services()
        services.guild_config.cached_config.return_value = GuildConfig(1000, 555)
        job = await services.jobs.register(1000, 7)
        cog = ReverifyCog(FakeBot(services=services))

        await cog.on_guild_role_delete(make_role(555, "Verified", guild=make_guild(1000)))

        services.guild_config.invalidate.assert_called_once_with(1000)
        assert job.abort_reason is AbortReason.CONFIG_INVALID
        assert "Verified" in job.abort_detail

    @pytest.mark.asyncio
    async def test_other_role_deletion_ignored(self):
        services = make_services()
        services.guild_config.cached_config.return_value = GuildConfig(1000, 555)
        job = await services.jobs.register(1000, 7)
        cog = ReverifyCog(FakeBot(services=services))

        await cog.on_guild_role_delete(make_role(999, "Other", guild=make_guild(1000)))

        services.guild_config.invalidate.assert_not_called()
        assert job.abort_reason is None


@pytest.mark.asyncio
async def test_missing_permissions_message():
    cog = ReverifyCog(FakeBot(services=make_services()))
    interaction = make_interaction()

    await cog.cog_app_command_error(interaction, app_commands.MissingPermissions(["manage_roles"]))

    assert last_message(interaction) == "You lack the necessary permissions to execute this command."
    assert interaction.response._messages[0]["ephemeral"] is True
