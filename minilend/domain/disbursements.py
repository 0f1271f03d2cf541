"""Domain entities for the disbursement queue.

A disbursement job is one fiat payout owed to a recipient. The job store
owns the documents; the payout worker (a separate process) moves jobs
through ``pending -> processing -> completed | failed`` by writing the
same fields this module describes. Operator actions in this service only
ever move a job back to ``pending``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from minilend.core.errors import InvalidTransitionError


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses that claim a transaction code. A failed job releases it.
LIVE_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.PENDING, JobStatus.PROCESSING, JobStatus.COMPLETED}
)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PENDING}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
}


def parse_status(value: Any) -> JobStatus:
    """Coerce a raw status value, raising ``ValueError`` for unknown ones."""

    if isinstance(value, JobStatus):
        return value
    return JobStatus(str(value).strip().lower())


def ensure_transition(current: JobStatus, target: JobStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)


@dataclass(slots=True, frozen=True)
class DisbursementResult:
    """Outcome recorded by the payout worker on a completed job."""

    success: bool
    transaction_hash: str
    usdc_amount: float
    kes_amount: float
    recipient: str

    @classmethod
    def from_document(cls, document: dict[str, Any] | None) -> "DisbursementResult | None":
        if not document:
            return None
        return cls(
            success=bool(document.get("success", True)),
            transaction_hash=str(document.get("transactionHash") or ""),
            usdc_amount=float(document.get("usdcAmount") or 0),
            kes_amount=float(document.get("kesAmount") or 0),
            recipient=str(document.get("recipient") or ""),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "transactionHash": self.transaction_hash,
            "usdcAmount": self.usdc_amount,
            "kesAmount": self.kes_amount,
            "recipient": self.recipient,
        }


@dataclass(slots=True)
class DisbursementJob:
    """A single queued payout and its lifecycle timestamps."""

    recipient_address: str
    amount_kes: float
    transaction_code: str
    created_at: datetime
    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    id: str | None = None
    processing_started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    result: DisbursementResult | None = None
    error: str | None = None

    @classmethod
    def new(
        cls,
        recipient_address: str,
        amount_kes: float,
        transaction_code: str,
        *,
        now: datetime,
        max_retries: int = 3,
    ) -> "DisbursementJob":
        return cls(
            recipient_address=recipient_address,
            amount_kes=amount_kes,
            transaction_code=transaction_code,
            created_at=now,
            max_retries=max_retries,
        )

    # ------------------------------------------------------------------
    # classification
    # ------------------------------------------------------------------
    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def is_stuck(self, now: datetime, stuck_after: timedelta) -> bool:
        return (
            self.status is JobStatus.PROCESSING
            and self.processing_started_at is not None
            and self.processing_started_at < now - stuck_after
        )

    def is_retryable(self, retry_limit: int | None = None) -> bool:
        limit = self.max_retries if retry_limit is None else retry_limit
        return self.status is JobStatus.FAILED and self.retry_count < limit

    # ------------------------------------------------------------------
    # document mapping
    # ------------------------------------------------------------------
    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "DisbursementJob":
        raw_id = document.get("_id")
        return cls(
            id=str(raw_id) if raw_id is not None else None,
            recipient_address=str(document.get("recipientAddress") or ""),
            amount_kes=float(document.get("amountKES") or 0),
            transaction_code=str(document.get("transactionCode") or ""),
            status=parse_status(document.get("status") or JobStatus.PENDING.value),
            created_at=document["createdAt"],
            processing_started_at=document.get("processingStartedAt"),
            completed_at=document.get("completedAt"),
            failed_at=document.get("failedAt"),
            retry_count=int(document.get("retryCount") or 0),
            max_retries=int(document.get("maxRetries", 3)),
            result=DisbursementResult.from_document(document.get("result")),
            error=document.get("error"),
        )

    def to_document(self) -> dict[str, Any]:
        """Render the stored shape; optional fields are omitted when unset."""

        document: dict[str, Any] = {
            "recipientAddress": self.recipient_address,
            "amountKES": self.amount_kes,
            "transactionCode": self.transaction_code,
            "status": self.status.value,
            "createdAt": self.created_at,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
        }
        optional = {
            "processingStartedAt": self.processing_started_at,
            "completedAt": self.completed_at,
            "failedAt": self.failed_at,
            "result": self.result.to_document() if self.result else None,
            "error": self.error,
        }
        document.update({key: value for key, value in optional.items() if value is not None})
        return document


@dataclass(slots=True)
class JobCounts:
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "pending": self.pending,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
        }


@dataclass(slots=True)
class WindowOutcomes:
    """Completed/failed counts inside a trailing time window."""

    completed: int = 0
    failed: int = 0

    @property
    def success_rate(self) -> float:
        attempts = self.completed + self.failed
        if attempts == 0:
            return 0.0
        return self.completed / attempts * 100
