"""
Storage module for Steward.

Provides SQLite-based persistence for proposals and audit records.
"""

from steward.store.db import StewardDB, compute_hash

__all__ = ["StewardDB", "compute_hash"]
