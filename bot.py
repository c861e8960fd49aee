import os

import discord
from discord.ext import commands
from dotenv import load_dotenv

from config.config_loader import REQUIRED_ENV_VARS, ConfigLoader, require_env
from utils.errors import ConfigError
from utils.logging import get_logger

# Initialize logger
logger = get_logger(__name__)

# Load environment variables
load_dotenv()

# Load configuration using ConfigLoader
config = ConfigLoader.load_config()

# Configure intents - start from none and enable only what's required
intents = discord.Intents.none()
intents.guilds = True  # Required: guild and role events
intents.members = True  # Required: member joins and full member lists for re-verify

# List of initial extensions to load
initial_extensions = [
    "cogs.verification.commands",
    "cogs.admin.reverify",
]

# Guild to sync commands to instantly during development (global sync otherwise)
TEST_GUILD_ID = os.getenv("TEST_GUILD_ID")

# discord.py sleeps through 429s shorter than this and raises RateLimited otherwise
MAX_RATELIMIT_TIMEOUT = 30.0


class VerifyBot(commands.Bot):
    """Bot with the service container attached."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.config = config
        self.services = None

    async def setup_hook(self) -> None:
        """Initialize services, load cogs and sync commands."""
        from services.service_container import ServiceContainer

        self.services = ServiceContainer(self)
        await self.services.initialize()
        logger.info("ServiceContainer initialized")

        for extension in initial_extensions:
            try:
                await self.load_extension(extension)
                logger.info(f"Loaded extension: {extension}")
            except commands.ExtensionError as e:
                logger.exception(f"Failed to load extension {extension}", exc_info=e)
                raise

        try:
            if TEST_GUILD_ID:
                guild = discord.Object(id=int(TEST_GUILD_ID))
                self.tree.copy_global_to(guild=guild)
                await self.tree.sync(guild=guild)
                logger.info(f"Commands synced to test guild {TEST_GUILD_ID}.")
            else:
                await self.tree.sync()
                logger.info("All commands synced globally.")
        except Exception as e:
            logger.exception("Failed to sync commands", exc_info=e)

        for command in self.tree.walk_commands():
            logger.info(f"- Command: {command.name}, Description: {command.description}")

    async def on_ready(self) -> None:
        if not self.user:
            logger.warning("Bot user is not initialized")
            return
        logger.info(f"Logged in as {self.user} (ID: {self.user.id})")

        for guild in self.guilds:
            self.check_bot_permissions(guild)

        if self.services is not None:
            logger.info(f"Service health: {await self.services.health_check()}")

    def check_bot_permissions(self, guild: discord.Guild) -> None:
        """Log a warning if the bot cannot manage roles in the guild."""
        if not guild.me:
            logger.warning("Bot member not available; skipping permission check", extra={"guild_id": guild.id})
            return
        if not guild.me.guild_permissions.manage_roles:
            logger.warning(
                f"Missing manage_roles permission in guild '{guild.name}'",
                extra={"guild_id": guild.id},
            )

    async def close(self) -> None:
        """Close the bot and clean up the service container."""
        logger.info("Shutting down the bot.")
        if self.services is not None:
            try:
                await self.services.cleanup()
            except Exception as e:
                logger.exception("Error cleaning up services", exc_info=e)
        await super().close()


def create_bot() -> VerifyBot:
    return VerifyBot(
        command_prefix=commands.when_mentioned,
        intents=intents,
        max_ratelimit_timeout=MAX_RATELIMIT_TIMEOUT,
    )


def main() -> None:
    try:
        env = require_env(REQUIRED_ENV_VARS)
    except ConfigError as e:
        logger.critical(str(e))
        raise

    # Only run if not in an explicit dry-run context (VERIFYBOT_DRY_RUN)
    if os.getenv("VERIFYBOT_DRY_RUN") == "1":
        logger.info("VERIFYBOT_DRY_RUN set; not connecting to Discord.")
        return

    create_bot().run(env["DISCORD_TOKEN"], log_handler=None)


if __name__ == "__main__":
    main()
