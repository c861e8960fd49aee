"""
Admin Package

Server-wide re-verification, job control and server registration.
"""

from .reverify import ReverifyCog

__all__ = ["ReverifyCog"]
