"""
Type definitions and common data structures for the verification bot.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum

from utils.errors import InvalidJobTransition

# Type aliases
GuildId = int
UserId = int
RoleId = int


@dataclass(frozen=True)
class GuildConfig:
    """Guild-specific configuration as reported by the verification service."""

    guild_id: GuildId
    verified_role_id: RoleId | None
    approved: bool = True

    @property
    def is_valid(self) -> bool:
        return bool(self.verified_role_id)


@dataclass(frozen=True)
class Member:
    """
    A user's identity within one guild.

    ``guild_id``/``user_id`` are the lookup key into both external APIs.
    ``role_ids`` is the snapshot of roles held when the member was fetched and
    is only used to decide whether a role mutation is needed.
    """

    guild_id: GuildId
    user_id: UserId
    role_ids: frozenset[RoleId] = frozenset()
    display_name: str = ""

    @property
    def key(self) -> tuple[GuildId, UserId]:
        return (self.guild_id, self.user_id)

    def has_role(self, role_id: RoleId) -> bool:
        return role_id in self.role_ids


class LookupFailure(Enum):
    """Why a verification lookup did not produce a status."""

    TIMEOUT = "timeout"
    BAD_REQUEST = "bad_request"


class VerificationState(Enum):
    VERIFIED = "verified"
    NOT_VERIFIED = "not_verified"
    LOOKUP_FAILED = "lookup_failed"


@dataclass(frozen=True)
class VerificationStatus:
    """Fresh result of one lookup. Never cached across calls."""

    state: VerificationState
    failure: LookupFailure | None = None

    @classmethod
    def verified(cls) -> VerificationStatus:
        return cls(VerificationState.VERIFIED)

    @classmethod
    def not_verified(cls) -> VerificationStatus:
        return cls(VerificationState.NOT_VERIFIED)

    @classmethod
    def lookup_failed(cls, reason: LookupFailure) -> VerificationStatus:
        return cls(VerificationState.LOOKUP_FAILED, reason)

    @property
    def is_verified(self) -> bool:
        return self.state is VerificationState.VERIFIED

    @property
    def is_failure(self) -> bool:
        return self.state is VerificationState.LOOKUP_FAILED


class Disposition(Enum):
    ROLE_GRANTED = "role_granted"
    ROLE_REVOKED = "role_revoked"
    NO_CHANGE_NEEDED = "no_change_needed"
    ERROR = "error"


class ErrorKind(Enum):
    LOOKUP_FAILED = "lookup_failed"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    PERMANENT = "permanent"
    TRANSIENT = "transient"
    ABORTED = "aborted"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class MemberOutcome:
    """Final disposition for one member in one reconciliation."""

    member: Member
    disposition: Disposition
    error: ErrorKind | None = None
    detail: str | None = None
    status: VerificationStatus | None = None

    @classmethod
    def failed(
        cls, member: Member, kind: ErrorKind, detail: str | None = None
    ) -> MemberOutcome:
        return cls(member, Disposition.ERROR, kind, detail)

    @property
    def is_error(self) -> bool:
        return self.disposition is Disposition.ERROR


class JobState(Enum):
    """Batch job lifecycle: PENDING -> RUNNING -> COMPLETED | ABORTED."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.ABORTED)


_ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.RUNNING, JobState.ABORTED}),
    JobState.RUNNING: frozenset({JobState.COMPLETED, JobState.ABORTED}),
    JobState.COMPLETED: frozenset(),
    JobState.ABORTED: frozenset(),
}


class AbortReason(Enum):
    CANCELLED = "cancelled"
    CONFIG_INVALID = "config_invalid"
    FAILED = "failed"


@dataclass
class BatchJob:
    """One run of reconciliation across all members of a guild."""

    job_id: int
    guild_id: GuildId
    initiator_id: UserId
    state: JobState = JobState.PENDING
    outcomes: list[MemberOutcome] = field(default_factory=list)
    cancel_requested: bool = False
    abort_reason: AbortReason | None = None
    abort_detail: str | None = None
    total_members: int = 0

    # Tracking
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    finished_at: float | None = None

    _seen: set[UserId] = field(default_factory=set, init=False, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def should_stop(self) -> bool:
        """True once no further members may be dispatched."""
        return self.cancel_requested or self.abort_reason is AbortReason.CONFIG_INVALID

    def transition(self, new_state: JobState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidJobTransition(
                f"Job {self.job_id} cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state
        if new_state is JobState.RUNNING:
            self.started_at = time.time()
        elif new_state.is_terminal:
            self.finished_at = time.time()

    def request_cancel(self) -> None:
        self.cancel_requested = True

    def invalidate_config(self, detail: str) -> None:
        """Mark the guild configuration as unusable; stops further dispatch."""
        if self.abort_reason is None:
            self.abort_reason = AbortReason.CONFIG_INVALID
            self.abort_detail = detail

    def record(self, outcome: MemberOutcome) -> bool:
        """Append an outcome. Returns False if the member already has one."""
        if self.is_terminal:
            raise InvalidJobTransition(
                f"Job {self.job_id} is {self.state.value}; outcomes are closed"
            )
        if outcome.member.user_id in self._seen:
            return False
        self._seen.add(outcome.member.user_id)
        self.outcomes.append(outcome)
        return True
