"""Domain layer definitions."""

from .alerts import CRITICAL, AlertCounts, SystemAlert
from .disbursements import (
    ALLOWED_TRANSITIONS,
    LIVE_STATUSES,
    DisbursementJob,
    DisbursementResult,
    JobCounts,
    JobStatus,
    WindowOutcomes,
    ensure_transition,
    parse_status,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "AlertCounts",
    "CRITICAL",
    "DisbursementJob",
    "DisbursementResult",
    "JobCounts",
    "JobStatus",
    "LIVE_STATUSES",
    "SystemAlert",
    "WindowOutcomes",
    "ensure_transition",
    "parse_status",
]
