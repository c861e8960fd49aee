"""
Request pacing for the two external APIs.

Each API client owns one ``AsyncLimiter``. Callers suspend in ``acquire`` until
a token is available; nothing here ever fails a request for being too early.
"""

from typing import Any

from aiolimiter import AsyncLimiter

from utils.logging import get_logger

logger = get_logger(__name__)

# Default quotas (used when config.yaml has no rate_limit section)
DEFAULT_RATE_LIMITS = {
    "verification_api": {"max_rate": 10, "time_period": 1.0},
    "discord": {"max_rate": 40, "time_period": 1.0},
}


def build_limiter(max_rate: int, time_period: float) -> AsyncLimiter:
    """
    Build a limiter that admits at most ``max_rate`` requests in any
    ``time_period`` window.

    The bucket holds a single token refilled every ``time_period / max_rate``
    seconds, so requests are evenly spaced and no rolling window can hold a
    burst on top of its steady-state quota.
    """
    if max_rate <= 0 or time_period <= 0:
        raise ValueError("max_rate and time_period must be positive")
    return AsyncLimiter(max_rate=1, time_period=time_period / max_rate)


def limiter_from_config(config: dict[str, Any] | None, api: str) -> AsyncLimiter:
    """Build the limiter for ``api`` ("verification_api" or "discord") from config.yaml."""
    defaults = DEFAULT_RATE_LIMITS[api]
    section = ((config or {}).get(api) or {}).get("rate_limit") or {}
    max_rate = int(section.get("max_rate", defaults["max_rate"]))
    time_period = float(section.get("time_period", defaults["time_period"]))
    logger.debug(
        "Configured %s limiter: %s requests per %ss", api, max_rate, time_period
    )
    return build_limiter(max_rate, time_period)
