"""Persistence contract for the disbursement queue and its in-memory store.

Jobs and alerts are kept in their stored document shape (camelCase keys)
so the in-memory store and MongoDB agree on what the payout worker reads
and writes.
"""
from __future__ import annotations

import copy
import threading
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Protocol

from minilend.core.errors import DuplicateJobError
from minilend.domain import (
    CRITICAL,
    LIVE_STATUSES,
    AlertCounts,
    DisbursementJob,
    JobCounts,
    JobStatus,
    SystemAlert,
    WindowOutcomes,
)

_LIVE_VALUES = {status.value for status in LIVE_STATUSES}
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class DisbursementRepository(Protocol):
    """Persistence contract for disbursement jobs and system alerts."""

    name: str

    def ping(self) -> bool: ...

    # jobs
    def insert_job(self, job: DisbursementJob) -> str: ...

    def get_job(self, job_id: str) -> DisbursementJob | None: ...

    def find_live_job(self, transaction_code: str) -> DisbursementJob | None: ...

    def count_by_status(self) -> JobCounts: ...

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 20) -> list[DisbursementJob]: ...

    def list_stuck_jobs(self, started_before: datetime) -> list[DisbursementJob]: ...

    def list_retryable_jobs(self, retry_limit: int, *, limit: int | None = None) -> list[DisbursementJob]: ...

    def count_outcomes_since(self, since: datetime) -> WindowOutcomes: ...

    def total_usdc_disbursed(self) -> float: ...

    def transition_job(
        self,
        job_id: str,
        *,
        expected: JobStatus,
        target: JobStatus,
        set_fields: Mapping[str, Any] | None = None,
        unset_fields: Iterable[str] = (),
    ) -> bool: ...

    def delete_completed_before(self, cutoff: datetime) -> int: ...

    # alerts
    def insert_alert(self, alert: SystemAlert) -> str: ...

    def list_alerts(self, *, limit: int, unacknowledged_only: bool = False) -> list[SystemAlert]: ...

    def count_alerts(self) -> AlertCounts: ...

    def acknowledge_alert(self, alert_id: str, at: datetime) -> bool: ...

    def acknowledge_all_alerts(self, at: datetime) -> int: ...


def _sort_key(document: dict[str, Any], key: str) -> datetime:
    return document.get(key) or _EPOCH


class InMemoryDisbursementRepository:
    """Process-local store for tests and local development.

    A single lock serialises writers, which makes the live-job check and the
    insert one atomic step.
    """

    name = "memory"

    def __init__(self) -> None:
        self._jobs: dict[str, dict[str, Any]] = {}
        self._alerts: dict[str, dict[str, Any]] = {}
        self._job_counter = 0
        self._alert_counter = 0
        self._lock = threading.RLock()

    def ping(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------
    def _next_job_id(self) -> str:
        self._job_counter += 1
        return f"job-{self._job_counter:05d}"

    def _next_alert_id(self) -> str:
        self._alert_counter += 1
        return f"alert-{self._alert_counter:05d}"

    def _live_documents(self, transaction_code: str) -> list[dict[str, Any]]:
        return [
            document
            for document in self._jobs.values()
            if document["transactionCode"] == transaction_code and document["status"] in _LIVE_VALUES
        ]

    def _jobs_where(self, status: JobStatus) -> list[dict[str, Any]]:
        return [document for document in self._jobs.values() if document["status"] == status.value]

    @staticmethod
    def _to_job(document: dict[str, Any]) -> DisbursementJob:
        return DisbursementJob.from_document(copy.deepcopy(document))

    # ------------------------------------------------------------------
    # jobs
    # ------------------------------------------------------------------
    def insert_job(self, job: DisbursementJob) -> str:
        with self._lock:
            if job.status.value in _LIVE_VALUES:
                existing = self._live_documents(job.transaction_code)
                if existing:
                    raise DuplicateJobError(job.transaction_code, existing[0]["_id"])
            job_id = self._next_job_id()
            document = job.to_document()
            document["_id"] = job_id
            self._jobs[job_id] = copy.deepcopy(document)
        job.id = job_id
        return job_id

    def get_job(self, job_id: str) -> DisbursementJob | None:
        with self._lock:
            document = self._jobs.get(job_id)
            return self._to_job(document) if document else None

    def find_live_job(self, transaction_code: str) -> DisbursementJob | None:
        with self._lock:
            documents = self._live_documents(transaction_code)
            if not documents:
                return None
            latest = max(documents, key=lambda document: _sort_key(document, "createdAt"))
            return self._to_job(latest)

    def count_by_status(self) -> JobCounts:
        with self._lock:
            counts = JobCounts(total=len(self._jobs))
            for document in self._jobs.values():
                status = JobStatus(document["status"])
                setattr(counts, status.value, getattr(counts, status.value) + 1)
            return counts

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 20) -> list[DisbursementJob]:
        with self._lock:
            documents = self._jobs_where(status) if status else list(self._jobs.values())
            documents.sort(key=lambda document: _sort_key(document, "createdAt"), reverse=True)
            return [self._to_job(document) for document in documents[:limit]]

    def list_stuck_jobs(self, started_before: datetime) -> list[DisbursementJob]:
        with self._lock:
            return [
                self._to_job(document)
                for document in self._jobs_where(JobStatus.PROCESSING)
                if document.get("processingStartedAt") is not None
                and document["processingStartedAt"] < started_before
            ]

    def list_retryable_jobs(self, retry_limit: int, *, limit: int | None = None) -> list[DisbursementJob]:
        with self._lock:
            documents = [
                document
                for document in self._jobs_where(JobStatus.FAILED)
                if int(document.get("retryCount") or 0) < retry_limit
            ]
            documents.sort(key=lambda document: _sort_key(document, "failedAt"), reverse=True)
            if limit is not None:
                documents = documents[:limit]
            return [self._to_job(document) for document in documents]

    def count_outcomes_since(self, since: datetime) -> WindowOutcomes:
        with self._lock:
            completed = sum(
                1
                for document in self._jobs_where(JobStatus.COMPLETED)
                if document.get("completedAt") is not None and document["completedAt"] >= since
            )
            failed = sum(
                1
                for document in self._jobs_where(JobStatus.FAILED)
                if document.get("failedAt") is not None and document["failedAt"] >= since
            )
            return WindowOutcomes(completed=completed, failed=failed)

    def total_usdc_disbursed(self) -> float:
        with self._lock:
            return float(
                sum(
                    (document.get("result") or {}).get("usdcAmount") or 0
                    for document in self._jobs_where(JobStatus.COMPLETED)
                )
            )

    def transition_job(
        self,
        job_id: str,
        *,
        expected: JobStatus,
        target: JobStatus,
        set_fields: Mapping[str, Any] | None = None,
        unset_fields: Iterable[str] = (),
    ) -> bool:
        with self._lock:
            document = self._jobs.get(job_id)
            if document is None or document["status"] != expected.value:
                return False
            if target.value in _LIVE_VALUES and expected.value not in _LIVE_VALUES:
                others = [
                    other
                    for other in self._live_documents(document["transactionCode"])
                    if other["_id"] != job_id
                ]
                if others:
                    raise DuplicateJobError(document["transactionCode"], others[0]["_id"])
            document.update(copy.deepcopy(dict(set_fields or {})))
            for key in unset_fields:
                document.pop(key, None)
            document["status"] = target.value
            return True

    def delete_completed_before(self, cutoff: datetime) -> int:
        with self._lock:
            doomed = [
                job_id
                for job_id, document in self._jobs.items()
                if document["status"] == JobStatus.COMPLETED.value
                and document.get("completedAt") is not None
                and document["completedAt"] < cutoff
            ]
            for job_id in doomed:
                del self._jobs[job_id]
            return len(doomed)

    # ------------------------------------------------------------------
    # alerts
    # ------------------------------------------------------------------
    def insert_alert(self, alert: SystemAlert) -> str:
        with self._lock:
            alert_id = self._next_alert_id()
            document = alert.to_document()
            document["_id"] = alert_id
            self._alerts[alert_id] = copy.deepcopy(document)
        alert.id = alert_id
        return alert_id

    def list_alerts(self, *, limit: int, unacknowledged_only: bool = False) -> list[SystemAlert]:
        with self._lock:
            documents = [
                document
                for document in self._alerts.values()
                if not unacknowledged_only or not document.get("acknowledged")
            ]
            documents.sort(key=lambda document: _sort_key(document, "timestamp"), reverse=True)
            return [SystemAlert.from_document(copy.deepcopy(document)) for document in documents[:limit]]

    def count_alerts(self) -> AlertCounts:
        with self._lock:
            pending = [document for document in self._alerts.values() if not document.get("acknowledged")]
            return AlertCounts(
                total=len(self._alerts),
                unacknowledged=len(pending),
                critical=sum(1 for document in pending if document.get("severity") == CRITICAL),
            )

    def acknowledge_alert(self, alert_id: str, at: datetime) -> bool:
        with self._lock:
            document = self._alerts.get(alert_id)
            if document is None:
                return False
            document["acknowledged"] = True
            document["acknowledgedAt"] = at
            return True

    def acknowledge_all_alerts(self, at: datetime) -> int:
        with self._lock:
            changed = 0
            for document in self._alerts.values():
                if document.get("acknowledged"):
                    continue
                document["acknowledged"] = True
                document["acknowledgedAt"] = at
                changed += 1
            return changed

    # ------------------------------------------------------------------
    # testing helpers
    # ------------------------------------------------------------------
    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()
            self._alerts.clear()
            self._job_counter = 0
            self._alert_counter = 0
