"""
Lifecycle base class shared by the bot's long-lived services.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any

from utils.logging import get_logger


class BaseService(ABC):
    """
    A service is created by the ServiceContainer, initialized once, reports
    its health, and is shut down in reverse creation order.

    The reconciliation and guild-config services inherit from this so that
    their loggers live under ``services.<name>``.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.logger = get_logger(f"services.{name}")
        self._initialized = False
        self._initialized_at: float | None = None
        self._lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Run ``_initialize_impl`` at most once, even under concurrent callers."""
        async with self._lock:
            if self._initialized:
                return

            self.logger.info(f"Initializing {self.name} service")
            try:
                await self._initialize_impl()
            except Exception:
                self.logger.exception("Failed to initialize %s service", self.name)
                raise
            self._initialized = True
            self._initialized_at = time.monotonic()

    async def shutdown(self) -> None:
        if not self._initialized:
            return

        self.logger.info(f"Shutting down {self.name} service")
        try:
            await self._shutdown_impl()
        except Exception:
            self.logger.exception("Error during %s service shutdown", self.name)
        finally:
            self._initialized = False
            self._initialized_at = None

    @abstractmethod
    async def _initialize_impl(self) -> None:
        """Subclass-specific initialization logic."""

    async def _shutdown_impl(self) -> None:
        """Subclass-specific shutdown logic. Override if needed."""

    async def health_check(self) -> dict[str, Any]:
        uptime = (
            round(time.monotonic() - self._initialized_at, 1)
            if self._initialized_at is not None
            else None
        )
        return {
            "service": self.name,
            "status": "healthy" if self._initialized else "not_initialized",
            "uptime_seconds": uptime,
        }
