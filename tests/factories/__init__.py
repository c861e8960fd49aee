"""
Test Factories Module

Fakes for Discord objects, the verification API transport and the
reconciliation service's collaborators, plus config fixtures.
"""

from .config_factories import make_config, temp_config_file
from .discord_factories import (
    FakeBot,
    FakeChannel,
    FakeGuild,
    FakeInteraction,
    FakeMember,
    FakeRole,
    FakeUser,
    make_guild,
    make_interaction,
    make_member,
    make_role,
)
from .http_factories import FakeHTTPResponse, FakeSession, ok, status
from .service_fakes import (
    GUILD_ID,
    VERIFIED_ROLE_ID,
    FakeConfigSource,
    FakeLookup,
    FakeMemberSource,
    FakeRoleActions,
    make_service,
    role_missing_error,
)

__all__ = [
    "GUILD_ID",
    "VERIFIED_ROLE_ID",
    "FakeBot",
    "FakeChannel",
    "FakeConfigSource",
    "FakeGuild",
    "FakeHTTPResponse",
    "FakeInteraction",
    "FakeLookup",
    "FakeMember",
    "FakeMemberSource",
    "FakeRole",
    "FakeRoleActions",
    "FakeSession",
    "FakeUser",
    "make_config",
    "make_guild",
    "make_interaction",
    "make_member",
    "make_role",
    "make_service",
    "ok",
    "role_missing_error",
    "status",
    "temp_config_file",
]
