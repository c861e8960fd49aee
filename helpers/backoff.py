"""
Retry policy shared by the verification API client and the role action client.

Both clients retry transient failures (timeouts, connection errors, 5xx) with
the same exponential backoff so that their retry budgets can be tested against
one policy value.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class BackoffPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 4
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay after the given failed attempt (0-indexed)."""
        delay = self.base_delay * (self.multiplier**attempt)
        delay = min(delay, self.max_delay)

        if self.jitter:
            # ±25% to spread out workers that failed together
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def has_attempts_left(self, attempt: int) -> bool:
        """True if another attempt may follow the given (0-indexed) attempt."""
        return attempt < self.max_attempts - 1

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> BackoffPolicy:
        """Build a policy from the ``retry`` section of config.yaml."""
        section = (config or {}).get("retry") or {}
        defaults = cls()
        return cls(
            max_attempts=int(section.get("max_attempts", defaults.max_attempts)),
            base_delay=float(section.get("base_delay", defaults.base_delay)),
            multiplier=float(section.get("multiplier", defaults.multiplier)),
            max_delay=float(section.get("max_delay", defaults.max_delay)),
            jitter=bool(section.get("jitter", defaults.jitter)),
        )


DEFAULT_BACKOFF = BackoffPolicy()
NO_RETRY = BackoffPolicy(max_attempts=1, jitter=False)
