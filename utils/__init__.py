"""
Utilities Package

Common utilities shared by the bot, its services and its cogs.

Only the exception hierarchy is re-exported here; ``utils.logging`` configures
handlers on import and is imported explicitly where needed.
"""

from .errors import (
    BotError,
    ConfigError,
    InvalidGuildConfig,
    InvalidJobTransition,
    JobAlreadyRunning,
    ServiceError,
)

__all__ = [
    "BotError",
    "ConfigError",
    "InvalidGuildConfig",
    "InvalidJobTransition",
    "JobAlreadyRunning",
    "ServiceError",
]
