"""
Custom exception classes for the verification bot.

These provide a hierarchy of typed exceptions for better error handling.
"""


class BotError(Exception):
    """Base exception for bot-related errors."""

    pass


class ConfigError(BotError):
    """Exception raised for configuration-related errors."""

    pass


class ServiceError(BotError):
    """Exception raised for service-related errors."""

    pass


class InvalidGuildConfig(BotError):
    """The guild has no usable verified-role configuration."""

    def __init__(self, guild_id: int, message: str | None = None) -> None:
        super().__init__(
            message or f"Guild {guild_id} has no verified role configured"
        )
        self.guild_id = guild_id


class JobAlreadyRunning(BotError):
    """A batch verification job is already active for the guild."""

    def __init__(self, guild_id: int, job_id: int | None = None) -> None:
        super().__init__(
            f"A verification job is already running for guild {guild_id}"
        )
        self.guild_id = guild_id
        self.job_id = job_id


class InvalidJobTransition(BotError):
    """Raised when a batch job is moved through a transition it does not allow."""

    pass
