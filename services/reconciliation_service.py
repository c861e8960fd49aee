"""
Verification reconciliation.

Brings a member's verified-role membership in line with the verification
service, either for one member (``reconcile_one``) or for every member of a
guild as a registered batch job (``reconcile_all``).
"""

import asyncio
from typing import Any, Protocol

from helpers.member_source import MemberSource
from helpers.role_actions import ActionError, RoleActions
from helpers.verification_api import VerificationLookup
from utils.errors import InvalidGuildConfig, JobAlreadyRunning
from utils.types import (
    AbortReason,
    BatchJob,
    Disposition,
    ErrorKind,
    GuildConfig,
    GuildId,
    JobState,
    Member,
    MemberOutcome,
    UserId,
)

from .base import BaseService
from .job_registry import JobRegistry

DEFAULT_CONCURRENCY = 4


class GuildConfigSource(Protocol):
    async def get_guild_config(self, guild_id: GuildId) -> GuildConfig | None: ...

    def invalidate(self, guild_id: GuildId) -> None: ...


class ReconciliationService(BaseService):
    """
    Orchestrates lookups and role mutations.

    ``reconcile_one`` is safe to call concurrently and never touches the job
    registry. ``reconcile_all`` owns one registry entry for the lifetime of the
    job and fans members out to at most ``concurrency`` workers.
    """

    def __init__(
        self,
        lookup: VerificationLookup,
        roles: RoleActions,
        registry: JobRegistry,
        config_source: GuildConfigSource,
        member_source: MemberSource,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        super().__init__("reconciliation")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._lookup = lookup
        self._roles = roles
        self._registry = registry
        self._config_source = config_source
        self._member_source = member_source
        self._concurrency = concurrency

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    async def _initialize_impl(self) -> None:
        self.logger.info(f"Batch concurrency set to {self._concurrency}")

    async def _resolve_config(self, guild_id: GuildId) -> GuildConfig:
        config = await self._config_source.get_guild_config(guild_id)
        if config is None or not config.is_valid:
            raise InvalidGuildConfig(guild_id)
        return config

    # ------------------------------------------------------------------
    # Single member
    # ------------------------------------------------------------------

    async def reconcile_one(
        self, member: Member, config: GuildConfig | None = None
    ) -> MemberOutcome:
        """
        Reconcile one member against a fresh lookup.

        Raises:
            InvalidGuildConfig: Before any lookup, if the guild has no usable
                verified role.
        """
        if config is None:
            config = await self._resolve_config(member.guild_id)
        elif not config.is_valid:
            raise InvalidGuildConfig(member.guild_id)
        return await self._reconcile(member, config)

    async def _reconcile(
        self, member: Member, config: GuildConfig, job: BatchJob | None = None
    ) -> MemberOutcome:
        extra: dict[str, Any] = {"guild_id": member.guild_id, "user_id": member.user_id}
        if job is not None:
            extra["job_id"] = job.job_id

        status = await self._lookup.lookup(member)
        if status.is_failure:
            reason = status.failure.value if status.failure else None
            self.logger.info(f"Lookup failed ({reason}); roles left unchanged", extra=extra)
            return MemberOutcome.failed(member, ErrorKind.LOOKUP_FAILED, reason)

        role_id = config.verified_role_id
        if role_id is None:
            raise InvalidGuildConfig(member.guild_id)
        holds_role = member.has_role(role_id)

        try:
            if status.is_verified and not holds_role:
                await self._roles.grant(member, role_id)
                self.logger.info("Granted verified role", extra=extra)
                return MemberOutcome(member, Disposition.ROLE_GRANTED, status=status)
            if not status.is_verified and holds_role:
                await self._roles.revoke(member, role_id)
                self.logger.info("Revoked verified role", extra=extra)
                return MemberOutcome(member, Disposition.ROLE_REVOKED, status=status)
        except ActionError as e:
            if e.role_missing:
                detail = f"Verified role {role_id} no longer exists"
                self._config_source.invalidate(member.guild_id)
                if job is not None:
                    job.invalidate_config(detail)
            return MemberOutcome(
                member, Disposition.ERROR, e.kind.error_kind, e.reason, status
            )

        return MemberOutcome(member, Disposition.NO_CHANGE_NEEDED, status=status)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def reconcile_all(self, guild_id: GuildId, initiator_id: UserId) -> BatchJob:
        """
        Reconcile every member of a guild as one batch job.

        Returns the job in a terminal state: COMPLETED, or ABORTED when members
        were left unchecked after a cancel, or the verified role became invalid
        mid-run. A cancel that arrives after the last dispatch is ignored.

        Raises:
            JobAlreadyRunning: The guild already has an active job.
            InvalidGuildConfig: The guild has no usable verified role.
        """
        active = self._registry.get(guild_id)
        if active is not None and not active.is_terminal:
            raise JobAlreadyRunning(guild_id, active.job_id)

        self._config_source.invalidate(guild_id)
        config = await self._resolve_config(guild_id)

        job = await self._registry.register(guild_id, initiator_id)
        extra = {"guild_id": guild_id, "job_id": job.job_id}
        try:
            members = await self._member_source.fetch_members(guild_id)
            job.total_members = len(members)
            job.transition(JobState.RUNNING)
            self.logger.info(f"Reconciling {len(members)} members", extra=extra)

            abandoned = await self._dispatch(job, members, config)

            if abandoned or job.abort_reason is AbortReason.CONFIG_INVALID:
                if job.abort_reason is None:
                    job.abort_reason = AbortReason.CANCELLED
                job.transition(JobState.ABORTED)
            else:
                if job.cancel_requested:
                    self.logger.info(
                        "Cancellation arrived after the last member was dispatched",
                        extra=extra,
                    )
                job.transition(JobState.COMPLETED)
            self.logger.info(
                f"Verification job finished: {job.state.value}", extra=extra
            )
            return job
        except (Exception, asyncio.CancelledError):
            self.logger.exception("Verification job failed", extra=extra)
            if not job.is_terminal:
                job.abort_reason = job.abort_reason or AbortReason.FAILED
                job.transition(JobState.ABORTED)
            raise
        finally:
            await self._registry.release(job)

    async def _dispatch(
        self, job: BatchJob, members: list[Member], config: GuildConfig
    ) -> int:
        """
        Feed members to the worker pool until done or told to stop.

        The stop flags are read after a worker slot is free and before the
        next member is handed out. Members never handed out get ERROR(ABORTED);
        members already handed out run to completion.

        Returns the number of members abandoned.
        """
        semaphore = asyncio.Semaphore(self._concurrency)
        tasks: list[asyncio.Task[None]] = []
        abandoned = 0

        try:
            for index, member in enumerate(members):
                await semaphore.acquire()
                if job.should_stop:
                    semaphore.release()
                    abandoned = len(members) - index
                    self._abandon(job, members[index:])
                    break
                tasks.append(
                    asyncio.create_task(self._worker(job, member, config, semaphore))
                )
            await asyncio.gather(*tasks)
            return abandoned
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

    async def _worker(
        self,
        job: BatchJob,
        member: Member,
        config: GuildConfig,
        semaphore: asyncio.Semaphore,
    ) -> None:
        try:
            outcome = await self._reconcile(member, config, job)
        except Exception as e:
            self.logger.exception(
                "Unexpected error reconciling member",
                extra={"guild_id": member.guild_id, "user_id": member.user_id, "job_id": job.job_id},
            )
            outcome = MemberOutcome.failed(member, ErrorKind.UNEXPECTED, str(e))
        try:
            job.record(outcome)
        finally:
            semaphore.release()

    def _abandon(self, job: BatchJob, members: list[Member]) -> None:
        if job.abort_reason is AbortReason.CONFIG_INVALID:
            detail = job.abort_detail or "Guild configuration became invalid"
        else:
            detail = "Job cancelled"
        for member in members:
            job.record(MemberOutcome.failed(member, ErrorKind.ABORTED, detail))
        self.logger.info(
            f"Abandoned {len(members)} undispatched members ({detail})",
            extra={"guild_id": job.guild_id, "job_id": job.job_id},
        )

    async def health_check(self) -> dict[str, Any]:
        base_health = await super().health_check()
        base_health.update(
            {
                "concurrency": self._concurrency,
                "active_jobs": len(self._registry.active_jobs()),
            }
        )
        return base_health
