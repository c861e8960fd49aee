"""
Verification Package

Self-service /verify and auto-verification of members joining a server.
"""

from .commands import VerificationCog

__all__ = ["VerificationCog"]
