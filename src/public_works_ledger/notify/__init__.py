"""
Notify Module - Outbound notifications for status changes and alerts
"""

from public_works_ledger.notify.dispatcher import NotificationDispatcher
from public_works_ledger.notify.notifier import (
    LoggingNotifier,
    NotificationResult,
    Notifier,
    NullNotifier,
)

__all__ = [
    "NotificationDispatcher",
    "Notifier",
    "NotificationResult",
    "LoggingNotifier",
    "NullNotifier",
]
