"""
Client for the external identity-verification service.

Provides:
- ``lookup``: resolve a guild member to a fresh VerificationStatus
- ``get_guild``: the verified role the service has on record for a guild
- ``register_guild``: register a new guild with the service

Every request waits for a token from the client's limiter, then retries
transient failures (timeouts, connection errors, 5xx, 429) with the shared
BackoffPolicy. Non-retryable client errors are returned immediately.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import aiohttp
from aiolimiter import AsyncLimiter

from helpers.backoff import DEFAULT_BACKOFF, NO_RETRY, BackoffPolicy
from helpers.rate_limiter import DEFAULT_RATE_LIMITS, build_limiter
from utils.errors import ServiceError
from utils.logging import get_logger
from utils.types import GuildConfig, LookupFailure, Member, VerificationStatus

logger = get_logger(__name__)

VERIFIED_PATH = "/api/v1/verified"
GUILD_PATH = "/api/v1/guild/{guild_id}"
REGISTER_PATH = "/api/v1/guild/register"


# ---------------------------------------------------------------------------
# Error Taxonomy
# ---------------------------------------------------------------------------


class RetryableError(Exception):
    """Raised when transient failures outlast the retry policy."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class GuildAlreadyRegistered(ServiceError):
    """The verification service already knows this guild."""


class VerificationLookup(Protocol):
    """Capability used by the reconciliation service."""

    async def lookup(self, member: Member) -> VerificationStatus: ...


@dataclass(frozen=True)
class ApiResponse:
    status: int
    data: Any = None
    elapsed: float = 0.0


@dataclass(frozen=True)
class RegisterGuildParams:
    """Payload for POST /api/v1/guild/register."""

    guild_id: int
    name: str
    created_at: datetime
    owner_id: int
    invite_link: str
    role_id: int
    role_name: str
    role_colour: int
    icon: str | None = None
    susu_link: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "guildId": str(self.guild_id),
            "name": self.name,
            "icon": self.icon,
            "createdAt": self.created_at.isoformat(),
            "ownerId": str(self.owner_id),
            "susuLink": self.susu_link,
            "inviteLink": self.invite_link,
            "roleId": str(self.role_id),
            "roleName": self.role_name,
            "roleColour": self.role_colour,
        }


@dataclass(frozen=True)
class RegisterResult:
    registered: bool
    approved: bool


class VerificationLookupClient:
    """
    Rate-limited, retrying client for the verification service.

    Features:
    - Cooperative rate limiting (suspends until a token is available)
    - Exponential backoff for transient failures
    - Slow-request warnings
    - Request/error/retry counters for health checks
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10,
        retry_policy: BackoffPolicy | None = None,
        limiter: AsyncLimiter | None = None,
        slow_request_ms: int = 400,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: Verification service root, e.g. ``https://verify.example.org``.
            api_key: Sent verbatim in the Authorization header.
            timeout: Total request timeout in seconds.
            retry_policy: Backoff for transient failures. Defaults to DEFAULT_BACKOFF.
            limiter: Shared token bucket. Defaults to the configured service quota.
            slow_request_ms: Threshold above which a request is logged as slow.
            sleep: Coroutine used for backoff waits (injectable for tests).
        """
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": api_key}
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._retry_policy = retry_policy or DEFAULT_BACKOFF
        defaults = DEFAULT_RATE_LIMITS["verification_api"]
        self._limiter = limiter or build_limiter(
            int(defaults["max_rate"]), float(defaults["time_period"])
        )
        self._slow_request_s = slow_request_ms / 1000
        self._sleep = sleep
        self._session: aiohttp.ClientSession | None = None

        # Counters for health checks
        self._request_count = 0
        self._error_count = 0
        self._retry_count = 0

    @property
    def retry_policy(self) -> BackoffPolicy:
        return self._retry_policy

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout, headers=self._headers, raise_for_status=False
            )
        return self._session

    async def close(self) -> None:
        """Close the HTTP session cleanly."""
        if self._session and not self._session.closed:
            await self._session.close()
            logger.debug("Verification API session closed")

    def get_health_status(self) -> dict:
        """Return health metrics for observability."""
        return {
            "session_status": "ok" if self._session and not self._session.closed else "closed",
            "total_requests": self._request_count,
            "total_errors": self._error_count,
            "total_retries": self._retry_count,
            "max_attempts": self._retry_policy.max_attempts,
        }

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def lookup(self, member: Member) -> VerificationStatus:
        """
        Resolve a member to a fresh verification status.

        200 ``{"verified": true}`` is VERIFIED; 200 ``{"verified": false}`` or
        404 is NOT_VERIFIED; exhausted transient failures are
        LOOKUP_FAILED(TIMEOUT); any other 4xx or an unreadable body is
        LOOKUP_FAILED(BAD_REQUEST).
        """
        params = {"userId": str(member.user_id), "guildId": str(member.guild_id)}
        extra = {"guild_id": member.guild_id, "user_id": member.user_id}
        try:
            resp = await self._send("GET", VERIFIED_PATH, params=params)
        except RetryableError as e:
            logger.warning(
                f"Verification lookup exhausted retries: {e}", extra=extra
            )
            return VerificationStatus.lookup_failed(LookupFailure.TIMEOUT)

        if resp.status == 404:
            return VerificationStatus.not_verified()

        if resp.status == 200:
            if not isinstance(resp.data, dict) or "verified" not in resp.data:
                logger.warning(
                    "Verification lookup returned an unreadable body", extra=extra
                )
                return VerificationStatus.lookup_failed(LookupFailure.BAD_REQUEST)
            if resp.data["verified"] is True:
                return VerificationStatus.verified()
            return VerificationStatus.not_verified()

        if resp.status == 401:
            logger.error("Verification API rejected the Authorization header", extra=extra)
        else:
            logger.warning(
                f"Verification lookup failed with HTTP {resp.status}", extra=extra
            )
        return VerificationStatus.lookup_failed(LookupFailure.BAD_REQUEST)

    async def get_guild(self, guild_id: int) -> GuildConfig | None:
        """
        Fetch the guild's verified role from the service.

        Returns None when the guild is unknown (404).

        Raises:
            ServiceError: On authentication/parameter errors or exhausted retries.
        """
        try:
            resp = await self._send("GET", GUILD_PATH.format(guild_id=guild_id))
        except RetryableError as e:
            raise ServiceError(f"Guild lookup for {guild_id} failed: {e}") from e

        if resp.status == 404:
            logger.info("Guild is not registered with the verification service", extra={"guild_id": guild_id})
            return None
        if resp.status != 200 or not isinstance(resp.data, dict):
            raise ServiceError(f"Guild lookup for {guild_id} returned HTTP {resp.status}")

        role_id = resp.data.get("roleId")
        try:
            verified_role_id = int(role_id) if role_id else None
        except (TypeError, ValueError):
            logger.warning(f"Invalid roleId {role_id!r} for guild {guild_id}")
            verified_role_id = None
        return GuildConfig(
            guild_id=guild_id,
            verified_role_id=verified_role_id,
            approved=bool(resp.data.get("approved", True)),
        )

    async def register_guild(self, params: RegisterGuildParams) -> RegisterResult:
        """
        Register a guild with the verification service. Not retried.

        Raises:
            GuildAlreadyRegistered: On 409.
            ServiceError: On any other non-200 response.
        """
        try:
            resp = await self._send(
                "POST", REGISTER_PATH, json=params.to_payload(), policy=NO_RETRY
            )
        except RetryableError as e:
            raise ServiceError(f"Guild registration failed: {e}") from e

        if resp.status == 409:
            raise GuildAlreadyRegistered(
                f"Guild with id of {params.guild_id} has already been registered."
            )
        if resp.status != 200 or not isinstance(resp.data, dict):
            raise ServiceError(f"Guild registration returned HTTP {resp.status}")

        return RegisterResult(
            registered=bool(resp.data.get("registered")),
            approved=bool(resp.data.get("approved")),
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        policy: BackoffPolicy | None = None,
    ) -> ApiResponse:
        """
        Issue one logical request, retrying transient failures.

        Each attempt consumes one limiter token. Returns the first
        non-transient response; raises RetryableError once the policy is spent.
        """
        policy = policy or self._retry_policy
        url = f"{self._base_url}{path}"
        last_error = "no attempts made"
        last_status: int | None = None

        for attempt in range(policy.max_attempts):
            retry_after: float | None = None
            async with self._limiter:
                self._request_count += 1
                session = await self._get_session()
                started = time.monotonic()
                try:
                    logger.debug(f"{method} {path} (attempt {attempt + 1}/{policy.max_attempts})")
                    async with session.request(
                        method, url, params=params, json=json
                    ) as resp:
                        status = resp.status
                        if status < 500 and status != 429:
                            data = await self._read_body(resp)
                            elapsed = time.monotonic() - started
                            self._warn_if_slow(method, path, elapsed)
                            return ApiResponse(status=status, data=data, elapsed=elapsed)
                        if status == 429:
                            retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
                        last_status = status
                        last_error = f"HTTP {status}"
                except (TimeoutError, aiohttp.ClientError) as e:
                    last_status = None
                    last_error = f"{type(e).__name__}: {e}"

            self._error_count += 1
            if not policy.has_attempts_left(attempt):
                break

            delay = policy.calculate_delay(attempt)
            if retry_after is not None:
                delay = min(retry_after, policy.max_delay)
            logger.info(
                f"{method} {path} failed ({last_error}); retrying in {delay:.2f}s "
                f"(attempt {attempt + 1}/{policy.max_attempts})"
            )
            self._retry_count += 1
            await self._sleep(delay)

        raise RetryableError(
            f"{method} {path} failed after {policy.max_attempts} attempt(s): {last_error}",
            status=last_status,
        )

    @staticmethod
    async def _read_body(resp: aiohttp.ClientResponse) -> Any:
        try:
            return await resp.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError):
            return None

    def _warn_if_slow(self, method: str, path: str, elapsed: float) -> None:
        if elapsed > self._slow_request_s:
            logger.warning(f"Took {elapsed * 1000:.0f}ms for {method} {path}")


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
