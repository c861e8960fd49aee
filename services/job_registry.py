"""
Registry of active batch verification jobs.

At most one non-terminal job exists per guild. The lock guards registration
and removal only; the cancel/invalidate flags are plain attribute writes that
workers read at their next dispatch boundary.
"""

import asyncio
import itertools

from utils.errors import JobAlreadyRunning
from utils.logging import get_logger
from utils.types import BatchJob, GuildId, UserId

logger = get_logger(__name__)


class JobRegistry:
    def __init__(self) -> None:
        self._jobs: dict[GuildId, BatchJob] = {}
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)

    async def register(self, guild_id: GuildId, initiator_id: UserId) -> BatchJob:
        """
        Create a PENDING job for the guild.

        Raises:
            JobAlreadyRunning: If the guild already has a non-terminal job.
        """
        async with self._lock:
            existing = self._jobs.get(guild_id)
            if existing is not None and not existing.is_terminal:
                raise JobAlreadyRunning(guild_id, existing.job_id)

            job = BatchJob(
                job_id=next(self._ids), guild_id=guild_id, initiator_id=initiator_id
            )
            self._jobs[guild_id] = job
            logger.info(
                "Registered verification job",
                extra={"guild_id": guild_id, "job_id": job.job_id, "user_id": initiator_id},
            )
            return job

    async def release(self, job: BatchJob) -> None:
        """Remove the job if it is still the guild's registered job."""
        async with self._lock:
            if self._jobs.get(job.guild_id) is job:
                del self._jobs[job.guild_id]
                logger.info(
                    f"Released verification job ({job.state.value})",
                    extra={"guild_id": job.guild_id, "job_id": job.job_id},
                )

    def get(self, guild_id: GuildId) -> BatchJob | None:
        return self._jobs.get(guild_id)

    def cancel(self, guild_id: GuildId) -> BatchJob | None:
        """Request cancellation of the guild's running job, if any."""
        job = self._jobs.get(guild_id)
        if job is None or job.is_terminal:
            return None
        job.request_cancel()
        logger.info(
            "Cancellation requested", extra={"guild_id": guild_id, "job_id": job.job_id}
        )
        return job

    def invalidate(self, guild_id: GuildId, detail: str) -> BatchJob | None:
        """Flag the guild's running job as working from an unusable configuration."""
        job = self._jobs.get(guild_id)
        if job is None or job.is_terminal:
            return None
        job.invalidate_config(detail)
        logger.warning(
            f"Guild configuration invalidated mid-run: {detail}",
            extra={"guild_id": guild_id, "job_id": job.job_id},
        )
        return job

    def active_jobs(self) -> list[BatchJob]:
        return [job for job in self._jobs.values() if not job.is_terminal]
