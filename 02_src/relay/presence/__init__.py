"""Presence module."""

from .registry import IConnection, PresenceRegistry, Session

__all__ = ["IConnection", "PresenceRegistry", "Session"]
