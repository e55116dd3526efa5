"""Storage - domain models and the pattern store repository"""

from __future__ import annotations

from opspilot.storage.models import (
    Anomaly,
    ApprovalQueueEntry,
    Event,
    ExecutionRecord,
    Pattern,
    coerce_event,
    parse_logic,
)
from opspilot.storage.repository import PatternStore

__all__ = [
    "Anomaly",
    "ApprovalQueueEntry",
    "Event",
    "ExecutionRecord",
    "Pattern",
    "PatternStore",
    "coerce_event",
    "parse_logic",
]
