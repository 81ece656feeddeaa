"""
Kernel - Shared infrastructure for the ledger domains

Errors, ids, clocks, configuration, logging, metrics, retries, the event
bus and the SQLite ledger store. Domain packages build on these and never
on each other's internals.
"""

from public_works_ledger.kernel.errors import (
    Conflict,
    InvalidInput,
    InvalidTransition,
    LedgerError,
    NotFound,
    StoreError,
)
from public_works_ledger.kernel.ids import generate_id
from public_works_ledger.kernel.policy import LedgerPolicy
from public_works_ledger.kernel.time import FixedTimeProvider, RealTimeProvider, TimeProvider

__all__ = [
    # IDs
    "generate_id",
    # Time
    "TimeProvider",
    "RealTimeProvider",
    "FixedTimeProvider",
    # Configuration
    "LedgerPolicy",
    # Errors
    "LedgerError",
    "StoreError",
    "NotFound",
    "InvalidTransition",
    "InvalidInput",
    "Conflict",
]
