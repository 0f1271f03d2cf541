"""Application service layer for the disbursement queue."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import ValidationError

from minilend.core.config import QueueSettings
from minilend.core.errors import (
    AlertNotFoundError,
    DuplicateJobError,
    InvalidRequestError,
    JobNotFoundError,
)
from minilend.core.schema import AlertAcknowledgeRequest, EnqueueRequest
from minilend.domain import (
    AlertCounts,
    DisbursementJob,
    JobStatus,
    SystemAlert,
    ensure_transition,
    parse_status,
)
from minilend.infrastructure import DisbursementRepository, InMemoryDisbursementRepository

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _first_error(exc: ValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error.get('msg')}" if location else str(error.get("msg"))


# ----------------------------------------------------------------------
# response shapes
# ----------------------------------------------------------------------
def _result_payload(job: DisbursementJob) -> dict[str, Any] | None:
    return job.result.to_document() if job.result else None


def job_detail(job: DisbursementJob) -> dict[str, Any]:
    return {
        "jobId": job.id,
        "status": job.status.value,
        "recipientAddress": job.recipient_address,
        "amountKES": job.amount_kes,
        "transactionCode": job.transaction_code,
        "retryCount": job.retry_count,
        "maxRetries": job.max_retries,
        "result": _result_payload(job),
        "error": job.error,
        "createdAt": job.created_at,
        "processingStartedAt": job.processing_started_at,
        "completedAt": job.completed_at,
        "failedAt": job.failed_at,
    }


def recent_job_view(job: DisbursementJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "recipientAddress": job.recipient_address,
        "amountKES": job.amount_kes,
        "status": job.status.value,
        "transactionCode": job.transaction_code,
        "retryCount": job.retry_count,
        "createdAt": job.created_at,
        "completedAt": job.completed_at,
        "failedAt": job.failed_at,
        "error": job.error,
        "result": _result_payload(job),
    }


def stuck_job_view(job: DisbursementJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "recipientAddress": job.recipient_address,
        "amountKES": job.amount_kes,
        "processingStartedAt": job.processing_started_at,
        "transactionCode": job.transaction_code,
    }


def retryable_job_view(job: DisbursementJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "recipientAddress": job.recipient_address,
        "amountKES": job.amount_kes,
        "retryCount": job.retry_count,
        "error": job.error,
        "failedAt": job.failed_at,
        "transactionCode": job.transaction_code,
    }


def alert_view(alert: SystemAlert) -> dict[str, Any]:
    payload: dict[str, Any] = dict(alert.details)
    payload.update(
        {
            "id": alert.id,
            "type": alert.type,
            "severity": alert.severity,
            "message": alert.message,
            "timestamp": alert.timestamp,
            "acknowledged": alert.acknowledged,
            "acknowledgedAt": alert.acknowledged_at,
        }
    )
    return payload


class DisbursementService:
    """Coordinates disbursement queue use cases over a job store."""

    def __init__(
        self,
        repository: DisbursementRepository,
        settings: QueueSettings | None = None,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._settings = settings or QueueSettings()
        self._clock = clock

    @property
    def repository(self) -> DisbursementRepository:
        return self._repository

    @property
    def settings(self) -> QueueSettings:
        return self._settings

    def health(self) -> dict[str, object]:
        return {"store": self._repository.name, "reachable": self._repository.ping()}

    # ------------------------------------------------------------------
    # enqueue and lookups
    # ------------------------------------------------------------------
    def enqueue_disbursement(self, recipient_address: Any, amount_kes: Any, transaction_code: Any) -> str:
        """Insert a pending job and return its id.

        Raises ``InvalidRequestError`` on bad input and ``DuplicateJobError``
        when the transaction code already has a pending, processing or
        completed job.
        """

        try:
            request = EnqueueRequest(
                recipientAddress=recipient_address,
                amountKES=amount_kes,
                transactionCode=transaction_code,
            )
        except ValidationError as exc:
            raise InvalidRequestError(_first_error(exc)) from exc

        job = DisbursementJob.new(
            request.recipient_address,
            request.amount_kes,
            request.transaction_code,
            now=self._clock(),
            max_retries=self._settings.max_retries,
        )
        try:
            job_id = self._repository.insert_job(job)
        except DuplicateJobError:
            logger.warning("Duplicate disbursement for transaction %s rejected", request.transaction_code)
            raise
        logger.info(
            "Disbursement job enqueued: %s (%s KES to %s, tx %s)",
            job_id,
            request.amount_kes,
            request.recipient_address,
            request.transaction_code,
        )
        return job_id

    def check_existing_job(self, transaction_code: str) -> DisbursementJob | None:
        return self._repository.find_live_job(transaction_code)

    def get_disbursement_status(self, job_id: str) -> DisbursementJob | None:
        return self._repository.get_job(job_id)

    def list_jobs(self, status: str | None = None, limit: int | None = None) -> list[DisbursementJob]:
        parsed: JobStatus | None = None
        if status:
            try:
                parsed = parse_status(status)
            except ValueError as exc:
                allowed = ", ".join(item.value for item in JobStatus)
                raise InvalidRequestError(f"status must be one of: {allowed}") from exc
        return self._repository.list_jobs(status=parsed, limit=limit or self._settings.recent_limit)

    # ------------------------------------------------------------------
    # operator actions
    # ------------------------------------------------------------------
    def retry_job(self, job_id: str) -> DisbursementJob:
        job = self._repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status is not JobStatus.FAILED:
            raise InvalidRequestError(f"Job status is {job.status.value}, can only retry failed jobs")
        if job.retry_count >= job.max_retries:
            raise InvalidRequestError(
                f"Job has already been retried {job.retry_count} times (max: {job.max_retries})"
            )
        ensure_transition(job.status, JobStatus.PENDING)
        moved = self._repository.transition_job(
            job_id,
            expected=JobStatus.FAILED,
            target=JobStatus.PENDING,
            unset_fields=("failedAt", "error", "processingStartedAt"),
        )
        if not moved:
            # Someone else moved the job between the read and the update.
            current = self._repository.get_job(job_id)
            if current is None:
                raise JobNotFoundError(job_id)
            raise InvalidRequestError(f"Job status is {current.status.value}, can only retry failed jobs")
        logger.info("Job %s reset to pending for retry", job_id)
        refreshed = self._repository.get_job(job_id)
        return refreshed or job

    def retry_all(self) -> int:
        retried = 0
        for job in self._repository.list_retryable_jobs(self._settings.max_retries):
            if job.id is None or job.retry_count >= job.max_retries:
                continue
            ensure_transition(job.status, JobStatus.PENDING)
            try:
                moved = self._repository.transition_job(
                    job.id,
                    expected=JobStatus.FAILED,
                    target=JobStatus.PENDING,
                    unset_fields=("failedAt", "error", "processingStartedAt"),
                )
            except DuplicateJobError:
                logger.warning(
                    "Skipping retry of job %s: transaction %s already has a live job",
                    job.id,
                    job.transaction_code,
                )
                continue
            if moved:
                retried += 1
        logger.info("Reset %d failed jobs to pending", retried)
        return retried

    def reset_stuck_jobs(self) -> int:
        started_before = self._clock() - self._settings.stuck_after
        reset = 0
        for job in self._repository.list_stuck_jobs(started_before):
            if job.id is None:
                continue
            ensure_transition(job.status, JobStatus.PENDING)
            if self._repository.transition_job(
                job.id,
                expected=JobStatus.PROCESSING,
                target=JobStatus.PENDING,
                unset_fields=("processingStartedAt",),
            ):
                reset += 1
        logger.info("Reset %d stuck jobs to pending", reset)
        return reset

    def clear_completed_jobs(self) -> int:
        cutoff = self._clock() - self._settings.completed_retention
        deleted = self._repository.delete_completed_before(cutoff)
        logger.info(
            "Deleted %d completed jobs older than %d days",
            deleted,
            self._settings.completed_retention_days,
        )
        return deleted

    # ------------------------------------------------------------------
    # dashboard
    # ------------------------------------------------------------------
    def get_dashboard(self, now: datetime | None = None) -> dict[str, Any]:
        """Aggregate queue health as of ``now``.

        Each figure comes from its own store query, so the result is not a
        single consistent snapshot.
        """

        now = now or self._clock()
        settings = self._settings
        repository = self._repository

        counts = repository.count_by_status()
        recent_jobs = repository.list_jobs(limit=settings.recent_limit)
        stuck_jobs = repository.list_stuck_jobs(now - settings.stuck_after)
        retryable_jobs = repository.list_retryable_jobs(settings.max_retries, limit=settings.retryable_limit)
        outcomes = repository.count_outcomes_since(now - settings.success_window)
        total_disbursed = repository.total_usdc_disbursed()
        alert_counts: AlertCounts = repository.count_alerts()

        stats: dict[str, Any] = counts.as_dict()
        stats.update(
            {
                "stuck": len(stuck_jobs),
                "retryable": len(retryable_jobs),
                "successRate": f"{outcomes.success_rate:.2f}%",
                "totalUSDCDisbursed": f"{total_disbursed:.2f}",
                "criticalAlerts": alert_counts.critical,
                "unacknowledgedAlerts": alert_counts.unacknowledged,
            }
        )
        return {
            "stats": stats,
            "recentJobs": [recent_job_view(job) for job in recent_jobs],
            "stuckJobs": [stuck_job_view(job) for job in stuck_jobs],
            "retryableJobs": [retryable_job_view(job) for job in retryable_jobs],
        }

    # ------------------------------------------------------------------
    # alerts
    # ------------------------------------------------------------------
    def list_alerts(self, limit: int | None = None, unacknowledged_only: bool = False) -> dict[str, Any]:
        if limit is not None and limit < 1:
            raise InvalidRequestError("limit must be a positive integer")
        alerts = self._repository.list_alerts(
            limit=limit or self._settings.alerts_default_limit,
            unacknowledged_only=unacknowledged_only,
        )
        return {
            "alerts": [alert_view(alert) for alert in alerts],
            "stats": self._repository.count_alerts().as_dict(),
        }

    def acknowledge_alert(self, alert_id: str) -> None:
        if not self._repository.acknowledge_alert(alert_id, self._clock()):
            raise AlertNotFoundError(alert_id)
        logger.info("Alert %s acknowledged", alert_id)

    def acknowledge_all_alerts(self) -> int:
        changed = self._repository.acknowledge_all_alerts(self._clock())
        logger.info("Acknowledged %d alerts", changed)
        return changed

    def handle_acknowledgement(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Dispatch an acknowledgement body: ``{alertId}`` or ``{acknowledgeAll: true}``."""

        try:
            request = AlertAcknowledgeRequest.model_validate(payload)
        except ValidationError as exc:
            raise InvalidRequestError(_first_error(exc)) from exc
        if request.acknowledge_all and request.alert_id:
            raise InvalidRequestError("Provide either alertId or acknowledgeAll, not both")
        if request.acknowledge_all:
            return {"success": True, "acknowledgedCount": self.acknowledge_all_alerts()}
        if request.alert_id:
            self.acknowledge_alert(request.alert_id)
            return {"success": True}
        raise InvalidRequestError("Missing alertId or acknowledgeAll parameter")

    # ------------------------------------------------------------------
    # testing helpers
    # ------------------------------------------------------------------
    def reset(self) -> None:
        if not isinstance(self._repository, InMemoryDisbursementRepository):
            raise RuntimeError("Only the in-memory store can be reset")
        self._repository.reset()


_service = DisbursementService(InMemoryDisbursementRepository())


def configure_disbursement_service(service: DisbursementService) -> None:
    """Install the service used by the HTTP routes."""

    global _service
    _service = service


def get_disbursement_service() -> DisbursementService:
    """Return the process-wide disbursement service."""

    return _service


def reset_disbursement_state() -> None:
    """Clear the active store (used in tests)."""

    _service.reset()
