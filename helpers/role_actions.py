"""
Role mutations against the Discord REST API.

``RoleActionClient`` adds or removes a single role on a single member. Every
request waits on the client's limiter; rate-limit responses suspend for the
duration Discord asks for, server errors are retried with the shared
BackoffPolicy, and permission/not-found errors fail immediately.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Protocol

import aiohttp
import discord
from aiolimiter import AsyncLimiter

from helpers.backoff import DEFAULT_BACKOFF, BackoffPolicy
from helpers.rate_limiter import DEFAULT_RATE_LIMITS, build_limiter
from utils.logging import get_logger
from utils.types import ErrorKind, Member, RoleId

logger = get_logger(__name__)

# Discord JSON error code for "Unknown Role"
UNKNOWN_ROLE_CODE = 10011

DEFAULT_MAX_RATE_LIMIT_RETRIES = 3


class ActionErrorKind(Enum):
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    PERMANENT = "permanent"
    TRANSIENT = "transient"

    @property
    def error_kind(self) -> ErrorKind:
        return ErrorKind(self.value)


class ActionError(Exception):
    """A role mutation could not be applied."""

    def __init__(
        self, kind: ActionErrorKind, reason: str = "", *, role_missing: bool = False
    ) -> None:
        super().__init__(f"{kind.value}: {reason}" if reason else kind.value)
        self.kind = kind
        self.reason = reason
        self.role_missing = role_missing


class RoleActions(Protocol):
    """Capability used by the reconciliation service."""

    async def grant(self, member: Member, role_id: RoleId) -> None: ...

    async def revoke(self, member: Member, role_id: RoleId) -> None: ...


class RoleTransport(Protocol):
    """The subset of ``discord.http.HTTPClient`` the client needs."""

    async def add_role(
        self, guild_id: int, user_id: int, role_id: int, *, reason: str | None = None
    ) -> Any: ...

    async def remove_role(
        self, guild_id: int, user_id: int, role_id: int, *, reason: str | None = None
    ) -> Any: ...


class RoleActionClient:
    """
    Rate-limited role add/remove.

    ``grant`` and ``revoke`` return None on success (including when the member
    already had / already lacked the role) and raise ActionError otherwise.
    """

    def __init__(
        self,
        transport: RoleTransport,
        *,
        retry_policy: BackoffPolicy | None = None,
        limiter: AsyncLimiter | None = None,
        max_rate_limit_retries: int = DEFAULT_MAX_RATE_LIMIT_RETRIES,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._transport = transport
        self._retry_policy = retry_policy or DEFAULT_BACKOFF
        defaults = DEFAULT_RATE_LIMITS["discord"]
        self._limiter = limiter or build_limiter(
            int(defaults["max_rate"]), float(defaults["time_period"])
        )
        self._max_rate_limit_retries = max_rate_limit_retries
        self._sleep = sleep

    async def grant(self, member: Member, role_id: RoleId) -> None:
        await self._apply(
            self._transport.add_role, member, role_id, "Verified by the verification service"
        )

    async def revoke(self, member: Member, role_id: RoleId) -> None:
        await self._apply(
            self._transport.remove_role, member, role_id, "No longer verified"
        )

    async def _apply(
        self,
        call: Callable[..., Awaitable[Any]],
        member: Member,
        role_id: RoleId,
        reason: str,
    ) -> None:
        extra = {"guild_id": member.guild_id, "user_id": member.user_id, "role_id": role_id}
        action = getattr(call, "__name__", "role_action")
        rate_limited = 0
        failed = 0

        while True:
            async with self._limiter:
                try:
                    await call(member.guild_id, member.user_id, role_id, reason=reason)
                    logger.debug(f"{action} succeeded", extra=extra)
                    return
                except discord.RateLimited as e:
                    retry_after = e.retry_after
                    error: Exception = e
                except discord.Forbidden as e:
                    logger.warning(f"{action} forbidden (hierarchy or missing permission)", extra=extra)
                    raise ActionError(ActionErrorKind.PERMANENT, str(e)) from e
                except discord.NotFound as e:
                    role_missing = getattr(e, "code", 0) == UNKNOWN_ROLE_CODE
                    logger.warning(
                        f"{action} target not found (role_missing={role_missing})", extra=extra
                    )
                    raise ActionError(
                        ActionErrorKind.PERMANENT, str(e), role_missing=role_missing
                    ) from e
                except discord.HTTPException as e:
                    if e.status == 429:
                        retry_after = _retry_after_from(e)
                    elif e.status >= 500:
                        retry_after = None
                    else:
                        logger.warning(f"{action} rejected with HTTP {e.status}", extra=extra)
                        raise ActionError(ActionErrorKind.PERMANENT, str(e)) from e
                    error = e
                except (TimeoutError, aiohttp.ClientError, OSError) as e:
                    retry_after = None
                    error = e

            if retry_after is not None:
                rate_limited += 1
                if rate_limited > self._max_rate_limit_retries:
                    logger.warning(
                        f"{action} still rate limited after {self._max_rate_limit_retries} retries",
                        extra=extra,
                    )
                    raise ActionError(ActionErrorKind.RATE_LIMIT_EXCEEDED, str(error)) from error
                logger.info(f"{action} rate limited; waiting {retry_after:.2f}s", extra=extra)
                await self._sleep(retry_after)
                continue

            if not self._retry_policy.has_attempts_left(failed):
                logger.warning(
                    f"{action} failed after {self._retry_policy.max_attempts} attempt(s): {error}",
                    extra=extra,
                )
                raise ActionError(ActionErrorKind.TRANSIENT, str(error)) from error
            delay = self._retry_policy.calculate_delay(failed)
            failed += 1
            logger.info(f"{action} failed ({error}); retrying in {delay:.2f}s", extra=extra)
            await self._sleep(delay)


def _retry_after_from(exc: discord.HTTPException) -> float:
    """Extract the wait from a raw 429. Falls back to one second."""
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("Retry-After")
    try:
        return max(0.0, float(value)) if value is not None else 1.0
    except (TypeError, ValueError):
        return 1.0
