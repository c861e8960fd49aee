"""Per-guild verified-role configuration."""

import asyncio
import time
from collections.abc import Callable
from typing import Any, Protocol

from config.config_loader import ConfigLoader
from utils.types import GuildConfig, GuildId

from .base import BaseService

DEFAULT_CACHE_TTL = 300.0


class GuildConfigStore(Protocol):
    async def get_guild(self, guild_id: GuildId) -> GuildConfig | None: ...


class GuildConfigService(BaseService):
    """
    Resolves a guild's verified role.

    Lookup order:
        1. ``guilds.<id>.verified_role_id`` in config.yaml (operator override)
        2. The verification service (``GET /api/v1/guild/{id}``), cached for
           ``guild_config.cache_ttl`` seconds

    Unknown guilds are not cached so that a freshly registered server is picked
    up on the next command.
    """

    def __init__(
        self,
        store: GuildConfigStore,
        config_loader: ConfigLoader | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__("guild_config")
        self._store = store
        self._config_loader = config_loader or ConfigLoader()
        self._clock = clock
        self._overrides: dict[GuildId, GuildConfig] = {}
        self._cache: dict[GuildId, tuple[float, GuildConfig]] = {}
        self._guild_locks: dict[GuildId, asyncio.Lock] = {}
        self._cache_ttl = DEFAULT_CACHE_TTL

    async def _initialize_impl(self) -> None:
        config = self._config_loader.load_config()
        self._cache_ttl = float(
            ((config.get("guild_config") or {}).get("cache_ttl", DEFAULT_CACHE_TTL))
        )
        self._overrides = self._parse_overrides(config.get("guilds") or {})
        if self._overrides:
            self.logger.info(
                f"Loaded verified-role overrides for {len(self._overrides)} guild(s)"
            )

    def _parse_overrides(self, section: dict[Any, Any]) -> dict[GuildId, GuildConfig]:
        overrides: dict[GuildId, GuildConfig] = {}
        for raw_guild_id, settings in section.items():
            try:
                guild_id = int(raw_guild_id)
                role_id = int((settings or {})["verified_role_id"])
            except (KeyError, TypeError, ValueError):
                self.logger.warning(
                    f"Ignoring malformed guild override for {raw_guild_id!r}"
                )
                continue
            overrides[guild_id] = GuildConfig(guild_id=guild_id, verified_role_id=role_id)
        return overrides

    async def get_guild_config(self, guild_id: GuildId) -> GuildConfig | None:
        """
        Return the guild's configuration, or None if the guild is not registered.

        Raises:
            ServiceError: If the verification service cannot be reached.
        """
        override = self._overrides.get(guild_id)
        if override is not None:
            return override

        cached = self._fresh_entry(guild_id)
        if cached is not None:
            return cached

        # One fetch per guild at a time; other guilds are not held up.
        lock = self._guild_locks.setdefault(guild_id, asyncio.Lock())
        async with lock:
            cached = self._fresh_entry(guild_id)
            if cached is not None:
                return cached

            config = await self._store.get_guild(guild_id)
            if config is not None:
                self._cache[guild_id] = (self._clock() + self._cache_ttl, config)
                self.logger.debug(
                    "Cached guild configuration",
                    extra={"guild_id": guild_id, "role_id": config.verified_role_id},
                )
            return config

    def _fresh_entry(self, guild_id: GuildId) -> GuildConfig | None:
        cached = self._cache.get(guild_id)
        if cached is None:
            return None
        expires_at, config = cached
        if self._clock() < expires_at:
            return config
        del self._cache[guild_id]
        return None

    def cached_config(self, guild_id: GuildId) -> GuildConfig | None:
        """The override or cached entry for the guild, without any network call."""
        if guild_id in self._overrides:
            return self._overrides[guild_id]
        cached = self._cache.get(guild_id)
        return cached[1] if cached is not None else None

    def set_guild_config(self, config: GuildConfig) -> None:
        """Seed the cache with a guild whose registration was just approved."""
        self._cache[config.guild_id] = (self._clock() + self._cache_ttl, config)

    def invalidate(self, guild_id: GuildId) -> None:
        if self._cache.pop(guild_id, None) is not None:
            self.logger.debug("Invalidated guild configuration", extra={"guild_id": guild_id})

    async def health_check(self) -> dict[str, Any]:
        base_health = await super().health_check()
        base_health.update(
            {"cached_guilds": len(self._cache), "overrides": len(self._overrides)}
        )
        return base_health
