"""
Verification API Client Tests

Covers status mapping, bounded retries, the guild endpoints and slow-request
logging. The aiohttp session is replaced with a scripted FakeSession.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

import aiohttp
import pytest

from helpers.rate_limiter import build_limiter
from helpers.verification_api import (
    GuildAlreadyRegistered,
    RegisterGuildParams,
    VerificationLookupClient,
)
from tests.factories.http_factories import FakeHTTPResponse, FakeSession, ok, status
from tests.factories.service_fakes import make_member
from utils.errors import ServiceError
from utils.types import GuildConfig, LookupFailure, VerificationState

API_URL = "https://verify.example.org/"


def make_client(steps, sleep, policy, **kwargs) -> tuple[VerificationLookupClient, FakeSession]:
    client = VerificationLookupClient(
        API_URL,
        "secret-key",
        retry_policy=policy,
        limiter=build_limiter(1000, 1),
        sleep=sleep,
        **kwargs,
    )
    session = FakeSession(steps)
    client._session = session  # type: ignore[assignment]
    return client, session


class TestLookupStatusMapping:
    @pytest.mark.asyncio
    async def test_verified_true(self, sleep_recorder, fast_policy) -> None:
        client, session = make_client([ok({"verified": True, "roleId": "1"})], sleep_recorder, fast_policy)

        result = await client.lookup(make_member(42))

        assert result.state is VerificationState.VERIFIED
        request = session.requests[0]
        assert request["method"] == "GET"
        assert request["url"] == "https://verify.example.org/api/v1/verified"
        assert request["params"] == {"userId": "42", "guildId": "1000"}

    @pytest.mark.asyncio
    async def test_verified_false(self, sleep_recorder, fast_policy) -> None:
        client, _ = make_client([ok({"verified": False})], sleep_recorder, fast_policy)
        result = await client.lookup(make_member(42))
        assert result.state is VerificationState.NOT_VERIFIED

    @pytest.mark.asyncio
    async def test_not_found_is_not_verified(self, sleep_recorder, fast_policy) -> None:
        client, session = make_client([status(404)], sleep_recorder, fast_policy)
        result = await client.lookup(make_member(42))
        assert result.state is VerificationState.NOT_VERIFIED
        assert len(session.requests) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code", [400, 401, 403, 422])
    async def test_client_errors_fail_immediately(self, code, sleep_recorder, fast_policy) -> None:
        client, session = make_client([status(code)], sleep_recorder, fast_policy)

        result = await client.lookup(make_member(42))

        assert result.state is VerificationState.LOOKUP_FAILED
        assert result.failure is LookupFailure.BAD_REQUEST
        assert len(session.requests) == 1
        assert sleep_recorder.delays == []

    @pytest.mark.asyncio
    async def test_unreadable_body_is_bad_request(self, sleep_recorder, fast_policy) -> None:
        client, _ = make_client([ok({"unexpected": "shape"})], sleep_recorder, fast_policy)
        result = await client.lookup(make_member(42))
        assert result.failure is LookupFailure.BAD_REQUEST


class TestLookupRetries:
    @pytest.mark.asyncio
    async def test_succeeds_after_max_attempts_minus_one_failures(self, sleep_recorder, fast_policy) -> None:
        steps = [
            status(500),
            TimeoutError(),
            aiohttp.ClientConnectionError("connection reset"),
            ok({"verified": True}),
        ]
        client, session = make_client(steps, sleep_recorder, fast_policy)

        result = await client.lookup(make_member(42))

        assert result.state is VerificationState.VERIFIED
        assert len(session.requests) == 4
        assert sleep_recorder.delays == [0.5, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_at_the_ceiling(self, sleep_recorder, fast_policy) -> None:
        client, session = make_client([status(503)], sleep_recorder, fast_policy)

        result = await client.lookup(make_member(42))

        assert result.state is VerificationState.LOOKUP_FAILED
        assert result.failure is LookupFailure.TIMEOUT
        assert len(session.requests) == fast_policy.max_attempts
        assert len(sleep_recorder.delays) == fast_policy.max_attempts - 1

    @pytest.mark.asyncio
    async def test_429_honours_retry_after(self, sleep_recorder, fast_policy) -> None:
        steps = [status(429, headers={"Retry-After": "3"}), ok({"verified": False})]
        client, session = make_client(steps, sleep_recorder, fast_policy)

        result = await client.lookup(make_member(42))

        assert result.state is VerificationState.NOT_VERIFIED
        assert sleep_recorder.delays == [3.0]
        assert len(session.requests) == 2

    @pytest.mark.asyncio
    async def test_health_counters(self, sleep_recorder, fast_policy) -> None:
        client, _ = make_client([status(500), ok({"verified": True})], sleep_recorder, fast_policy)

        await client.lookup(make_member(42))
        health = client.get_health_status()

        assert health["total_requests"] == 2
        assert health["total_errors"] == 1
        assert health["total_retries"] == 1
        assert health["session_status"] == "ok"


class TestSlowRequests:
    @pytest.mark.asyncio
    async def test_slow_request_logs_warning(self, sleep_recorder, fast_policy, caplog) -> None:
        steps = [FakeHTTPResponse(200, {"verified": True}, delay=0.02)]
        client, _ = make_client(steps, sleep_recorder, fast_policy, slow_request_ms=1)

        with caplog.at_level(logging.WARNING, logger="helpers.verification_api"):
            await client.lookup(make_member(42))

        assert any("Took" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_fast_request_is_quiet(self, sleep_recorder, fast_policy, caplog) -> None:
        client, _ = make_client([ok({"verified": True})], sleep_recorder, fast_policy)

        with caplog.at_level(logging.WARNING, logger="helpers.verification_api"):
            await client.lookup(make_member(42))

        assert not any("Took" in r.getMessage() for r in caplog.records)


class TestGuildEndpoints:
    @pytest.mark.asyncio
    async def test_get_guild(self, sleep_recorder, fast_policy) -> None:
        client, session = make_client([ok({"roleId": "555", "approved": True})], sleep_recorder, fast_policy)

        config = await client.get_guild(1000)

        assert config == GuildConfig(guild_id=1000, verified_role_id=555, approved=True)
        assert session.requests[0]["url"].endswith("/api/v1/guild/1000")

    @pytest.mark.asyncio
    async def test_get_guild_unknown(self, sleep_recorder, fast_policy) -> None:
        client, _ = make_client([status(404)], sleep_recorder, fast_policy)
        assert await client.get_guild(1000) is None

    @pytest.mark.asyncio
    async def test_get_guild_outage_raises(self, sleep_recorder, fast_policy) -> None:
        client, _ = make_client([status(502)], sleep_recorder, fast_policy)
        with pytest.raises(ServiceError):
            await client.get_guild(1000)

    @pytest.mark.asyncio
    async def test_register_guild(self, sleep_recorder, fast_policy) -> None:
        client, session = make_client([ok({"registered": True, "approved": False})], sleep_recorder, fast_policy)
        params = RegisterGuildParams(
            guild_id=1000,
            name="Test Guild",
            created_at=datetime(2020, 1, 1, tzinfo=UTC),
            owner_id=7,
            invite_link="https://discord.gg/abc",
            role_id=555,
            role_name="Verified",
            role_colour=0x2ECC71,
        )

        result = await client.register_guild(params)

        assert result.registered is True
        assert result.approved is False
        request = session.requests[0]
        assert request["method"] == "POST"
        assert request["json"]["guildId"] == "1000"
        assert request["json"]["roleId"] == "555"
        assert request["json"]["createdAt"] == "2020-01-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_register_conflict(self, sleep_recorder, fast_policy) -> None:
        client, _ = make_client([status(409)], sleep_recorder, fast_policy)
        params = RegisterGuildParams(1000, "G", datetime(2020, 1, 1, tzinfo=UTC), 7, "x", 555, "V", 0)
        with pytest.raises(GuildAlreadyRegistered):
            await client.register_guild(params)

    @pytest.mark.asyncio
    async def test_register_is_not_retried(self, sleep_recorder, fast_policy) -> None:
        client, session = make_client([status(500)], sleep_recorder, fast_policy)
        params = RegisterGuildParams(1000, "G", datetime(2020, 1, 1, tzinfo=UTC), 7, "x", 555, "V", 0)
        with pytest.raises(ServiceError):
            await client.register_guild(params)
        assert len(session.requests) == 1
        assert sleep_recorder.delays == []


@pytest.mark.asyncio
async def test_close_closes_session(sleep_recorder, fast_policy) -> None:
    client, session = make_client([ok({})], sleep_recorder, fast_policy)
    await client.close()
    assert session.closed is True
