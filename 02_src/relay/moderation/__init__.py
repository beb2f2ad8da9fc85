"""Moderation module."""

from .service import IModerationService, ModerationService

__all__ = ["IModerationService", "ModerationService"]
