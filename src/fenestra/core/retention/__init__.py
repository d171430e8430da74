"""Retention management for the run ledger."""

from fenestra.core.retention.purge import PurgeManager, PurgeResult

__all__ = ["PurgeManager", "PurgeResult"]
