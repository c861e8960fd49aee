import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path for CI environments where
# Python might not automatically include it.
PROJECT_ROOT = Path(__file__).parent.parent.resolve()
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from config.config_loader import ConfigLoader
from helpers.backoff import BackoffPolicy
from services.job_registry import JobRegistry


class SleepRecorder:
    """Drop-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def fast_policy() -> BackoffPolicy:
    """Deterministic retry policy: 4 attempts, delays 0.5, 1.0, 2.0."""
    return BackoffPolicy(max_attempts=4, base_delay=0.5, multiplier=2.0, max_delay=8.0, jitter=False)


@pytest.fixture
def registry() -> JobRegistry:
    return JobRegistry()


@pytest.fixture
def clean_config():
    """Reset ConfigLoader before and after a test, restoring the real config."""
    ConfigLoader.reset()
    yield
    ConfigLoader.reset()
    ConfigLoader.load_config()
