"""
Services package for the verification bot.

Long-lived services built and owned by the ServiceContainer: guild
configuration, the job registry and the reconciliation engine.
"""

from .base import BaseService
from .config_service import GuildConfigService
from .job_registry import JobRegistry
from .reconciliation_service import ReconciliationService
from .service_container import ServiceContainer

__all__ = [
    "BaseService",
    "GuildConfigService",
    "JobRegistry",
    "ReconciliationService",
    "ServiceContainer",
]
