"""
User-facing text for verification results.

All functions are pure: they read a finished job or a single outcome and
return the message to send. Successful members are only ever counted; failing
members are listed individually up to a limit.
"""

from collections import Counter
from dataclasses import dataclass, field

from utils.types import (
    AbortReason,
    BatchJob,
    Disposition,
    ErrorKind,
    MemberOutcome,
)

DEFAULT_MAX_FAILURES = 10

JOB_CONFLICT_MESSAGE = "A verification job is already running for this server."
UNSUPPORTED_SERVER_MESSAGE = (
    "It looks like your server doesn't support this bot, please contact the admins."
)
TRY_AGAIN_MESSAGE = (
    "Something went wrong while checking your verification. Please try again in a moment."
)


@dataclass(frozen=True)
class JobSummary:
    granted: int = 0
    revoked: int = 0
    unchanged: int = 0
    errors: int = 0
    error_counts: dict[ErrorKind, int] = field(default_factory=dict)
    failures: tuple[MemberOutcome, ...] = ()

    @property
    def total(self) -> int:
        return self.granted + self.revoked + self.unchanged + self.errors


def summarize_job(job: BatchJob) -> JobSummary:
    """Tally a terminal job's outcomes by disposition and error kind."""
    if not job.is_terminal:
        raise ValueError(f"Job {job.job_id} is still {job.state.value}")

    dispositions = Counter(outcome.disposition for outcome in job.outcomes)
    failures = tuple(outcome for outcome in job.outcomes if outcome.is_error)
    error_counts = Counter(outcome.error for outcome in failures if outcome.error)

    return JobSummary(
        granted=dispositions[Disposition.ROLE_GRANTED],
        revoked=dispositions[Disposition.ROLE_REVOKED],
        unchanged=dispositions[Disposition.NO_CHANGE_NEEDED],
        errors=dispositions[Disposition.ERROR],
        error_counts=dict(error_counts),
        failures=failures,
    )


def _headline(job: BatchJob, summary: JobSummary) -> str:
    if job.abort_reason is AbortReason.CANCELLED:
        return f"Re-verification was cancelled ({summary.total} members accounted for)."
    if job.abort_reason is AbortReason.CONFIG_INVALID:
        reason = job.abort_detail or "the verified role is no longer usable"
        return f"Re-verification stopped early: {reason}."
    if job.abort_reason is AbortReason.FAILED:
        return "Re-verification stopped early because of an internal error."
    return f"Successfully completed re-verifications for {summary.total} members."


def _describe_failure(outcome: MemberOutcome) -> str:
    kind = outcome.error.value if outcome.error else "error"
    name = outcome.member.display_name or str(outcome.member.user_id)
    text = f"- {name} (<@{outcome.member.user_id}>): {kind}"
    if outcome.detail:
        text += f" ({outcome.detail})"
    return text


def render_job_summary(job: BatchJob, max_failures: int = DEFAULT_MAX_FAILURES) -> str:
    """Render the report sent to whoever started the job."""
    summary = summarize_job(job)
    lines = [
        _headline(job, summary),
        f"Granted: {summary.granted} | Revoked: {summary.revoked} | "
        f"Unchanged: {summary.unchanged} | Errors: {summary.errors}",
    ]

    if summary.error_counts:
        kinds = ", ".join(
            f"{kind.value}: {count}"
            for kind, count in sorted(summary.error_counts.items(), key=lambda item: item[0].value)
        )
        lines.append(f"Errors by kind: {kinds}")

    if summary.failures and max_failures > 0:
        lines.append("Failed members:")
        lines.extend(_describe_failure(o) for o in summary.failures[:max_failures])
        hidden = len(summary.failures) - max_failures
        if hidden > 0:
            lines.append(f"...and {hidden} more")

    return "\n".join(lines)


def render_member_outcome(outcome: MemberOutcome, verify_url: str) -> str:
    """Message for a single member reconciled through /verify."""
    if outcome.disposition is Disposition.ROLE_GRANTED:
        return "You have now been verified!"
    if outcome.disposition is Disposition.ROLE_REVOKED:
        return (
            "You are no longer verified, so your verified role has been removed. "
            f"Please verify yourself by going to {verify_url}"
        )
    if outcome.disposition is Disposition.NO_CHANGE_NEEDED:
        if outcome.status is not None and outcome.status.is_verified:
            return "You are already verified!"
        return f"Please verify yourself by going to {verify_url}"

    if outcome.error is ErrorKind.PERMANENT:
        return f"{TRY_AGAIN_MESSAGE} If this keeps happening, please contact the admins."
    return TRY_AGAIN_MESSAGE
