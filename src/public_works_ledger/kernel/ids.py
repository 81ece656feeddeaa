"""
ID generation using UUIDv7-style (time-ordered) identifiers

Every ledger record gets a short type prefix so an id read from a log line
or an alert description says what it points at (`lin-...` is a budget line,
`prj-...` a project). The time-ordered body keeps ids sortable by creation.
"""

import secrets
import time

# Prefixes by record type
PROJECT = "prj"
HISTORY = "hst"
BUDGET = "bud"
LINE = "lin"
EXPENSE = "exp"
ALERT = "alr"


def generate_id(prefix: str | None = None) -> str:
    """
    Generate a UUIDv7-like identifier, optionally prefixed

    Format: 8-4-4-4-12 hex characters
    First 48 bits: Unix timestamp in milliseconds
    Remaining bits: version/variant markers and randomness

    Args:
        prefix: Record type prefix (e.g. "exp"), joined with a hyphen

    Returns:
        Sortable id string (e.g. "exp-01908e9a-3b87-7000-8000-123456789abc")
    """
    timestamp_48 = int(time.time() * 1000) & 0xFFFFFFFFFFFF

    rand_12 = secrets.randbits(12)
    rand_62 = secrets.randbits(62)

    time_high = (timestamp_48 >> 32) & 0xFFFF
    time_mid = (timestamp_48 >> 16) & 0xFFFF
    time_low = timestamp_48 & 0xFFFF
    version_and_rand = 0x7000 | rand_12
    variant_and_rand = 0x8000 | ((rand_62 >> 48) & 0x3FFF)
    node = rand_62 & 0xFFFFFFFFFFFF

    body = (
        f"{time_high:04x}{time_mid:04x}-"
        f"{time_low:04x}-"
        f"{version_and_rand:04x}-"
        f"{variant_and_rand:04x}-"
        f"{node:012x}"
    )
    return f"{prefix}-{body}" if prefix else body
