"""Relay engine module."""

from .relay import JoinOutcome, RelayEngine

__all__ = ["JoinOutcome", "RelayEngine"]
