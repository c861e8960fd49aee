"""
Service Container

Builds the API clients and services from config.yaml and the environment, and
owns their lifecycle.
"""

from typing import TYPE_CHECKING, Any, Optional

from config.config_loader import ConfigLoader, require_env
from helpers.backoff import BackoffPolicy
from helpers.member_source import DiscordMemberSource
from helpers.rate_limiter import limiter_from_config
from helpers.role_actions import DEFAULT_MAX_RATE_LIMIT_RETRIES, RoleActionClient
from helpers.verification_api import VerificationLookupClient
from utils.logging import get_logger

from .config_service import GuildConfigService
from .job_registry import JobRegistry
from .reconciliation_service import DEFAULT_CONCURRENCY, ReconciliationService

if TYPE_CHECKING:
    from discord.ext.commands import Bot


class ServiceContainer:
    """
    Central access point for services.

    Initialization order: verification API client, guild config service,
    role action client, job registry, reconciliation service.
    """

    def __init__(
        self,
        bot: Optional["Bot"] = None,
        *,
        api_url: str | None = None,
        api_key: str | None = None,
        config_loader: ConfigLoader | None = None,
    ) -> None:
        self.logger = get_logger("services.container")
        self.bot = bot
        self._api_url = api_url
        self._api_key = api_key
        self._config_loader = config_loader or ConfigLoader()
        self._verification_api: VerificationLookupClient | None = None
        self._guild_config: GuildConfigService | None = None
        self._roles: RoleActionClient | None = None
        self._jobs: JobRegistry | None = None
        self._reconciliation: ReconciliationService | None = None
        self._initialized = False

    @property
    def api_url(self) -> str:
        if self._api_url is None:
            raise RuntimeError("ServiceContainer not initialized")
        return self._api_url

    @property
    def verification_api(self) -> VerificationLookupClient:
        if self._verification_api is None:
            raise RuntimeError("VerificationLookupClient not initialized")
        return self._verification_api

    @property
    def guild_config(self) -> GuildConfigService:
        if self._guild_config is None:
            raise RuntimeError("GuildConfigService not initialized")
        return self._guild_config

    @property
    def roles(self) -> RoleActionClient:
        if self._roles is None:
            raise RuntimeError("RoleActionClient not initialized")
        return self._roles

    @property
    def jobs(self) -> JobRegistry:
        if self._jobs is None:
            raise RuntimeError("JobRegistry not initialized")
        return self._jobs

    @property
    def reconciliation(self) -> ReconciliationService:
        if self._reconciliation is None:
            raise RuntimeError("ReconciliationService not initialized")
        return self._reconciliation

    async def initialize(self) -> None:
        if self._initialized:
            self.logger.warning("ServiceContainer already initialized")
            return
        if self.bot is None:
            raise RuntimeError("Bot instance required for the role action client")

        try:
            self.logger.info("Initializing services")
            config = self._config_loader.load_config()

            if self._api_url is None or self._api_key is None:
                env = require_env(("API_URL", "API_KEY"))
                self._api_url = self._api_url or env["API_URL"]
                self._api_key = self._api_key or env["API_KEY"]

            retry_policy = BackoffPolicy.from_config(config)
            api_section = config.get("verification_api") or {}
            self._verification_api = VerificationLookupClient(
                self._api_url,
                self._api_key,
                timeout=float(api_section.get("timeout", 10)),
                retry_policy=retry_policy,
                limiter=limiter_from_config(config, "verification_api"),
                slow_request_ms=int(api_section.get("slow_request_ms", 400)),
            )
            self.logger.debug("VerificationLookupClient initialized")

            self._guild_config = GuildConfigService(
                self._verification_api, self._config_loader
            )
            await self._guild_config.initialize()

            discord_section = config.get("discord") or {}
            self._roles = RoleActionClient(
                self.bot.http,
                retry_policy=retry_policy,
                limiter=limiter_from_config(config, "discord"),
                max_rate_limit_retries=int(
                    discord_section.get(
                        "max_rate_limit_retries", DEFAULT_MAX_RATE_LIMIT_RETRIES
                    )
                ),
            )
            self.logger.debug("RoleActionClient initialized")

            self._jobs = JobRegistry()

            batch_section = config.get("batch") or {}
            self._reconciliation = ReconciliationService(
                self._verification_api,
                self._roles,
                self._jobs,
                self._guild_config,
                DiscordMemberSource(self.bot),
                concurrency=int(batch_section.get("concurrency", DEFAULT_CONCURRENCY)),
            )
            await self._reconciliation.initialize()

            self._initialized = True
            self.logger.info("All services initialized successfully")
        except Exception:
            self.logger.exception("Failed to initialize services")
            raise

    async def cleanup(self) -> None:
        """Shut services down in reverse order and close the HTTP session."""
        if not self._initialized:
            return

        self.logger.info("Cleaning up services")
        for job in self.jobs.active_jobs():
            job.request_cancel()

        if self._reconciliation:
            await self._reconciliation.shutdown()
            self._reconciliation = None
        if self._guild_config:
            await self._guild_config.shutdown()
            self._guild_config = None
        if self._verification_api:
            await self._verification_api.close()
            self._verification_api = None

        self._roles = None
        self._jobs = None
        self._initialized = False
        self.logger.info("Services cleaned up")

    async def health_check(self) -> dict[str, Any]:
        """Aggregate health of every service, logged once the bot is ready."""
        if not self._initialized:
            return {"status": "not_initialized"}
        return {
            "status": "healthy",
            "config": ConfigLoader.get_config_status(),
            "verification_api": self.verification_api.get_health_status(),
            "guild_config": await self.guild_config.health_check(),
            "reconciliation": await self.reconciliation.health_check(),
        }
