from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse

from minilend.application import get_disbursement_service, job_detail
from minilend.application.disbursements import recent_job_view
from minilend.core.errors import DisbursementError, DuplicateJobError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/disbursement", tags=["disbursement"])


def _http_error(exc: DisbursementError, failure: str) -> HTTPException:
    if isinstance(exc, DuplicateJobError):
        return HTTPException(status_code=409, detail={"error": exc.message, "jobId": exc.existing_job_id})
    if exc.status_code >= 500:
        logger.error("%s: %s", failure, exc.message)
        return HTTPException(status_code=500, detail={"error": failure, "message": exc.message})
    return HTTPException(status_code=exc.status_code, detail=exc.message)


@router.post("/queue", status_code=201)
def enqueue_disbursement(payload: dict[str, Any]) -> dict:
    service = get_disbursement_service()
    try:
        job_id = service.enqueue_disbursement(
            payload.get("recipientAddress"),
            payload.get("amountKES"),
            payload.get("transactionCode"),
        )
    except DisbursementError as exc:
        raise _http_error(exc, "Failed to enqueue disbursement") from exc
    return {"jobId": job_id, "status": "pending"}


@router.get("/status")
def get_disbursement_status(job_id: str | None = Query(default=None, alias="jobId")) -> dict:
    if not job_id:
        raise HTTPException(status_code=400, detail="Missing jobId parameter")
    service = get_disbursement_service()
    try:
        job = service.get_disbursement_status(job_id)
    except DisbursementError as exc:
        raise _http_error(exc, "Failed to fetch status") from exc
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job_detail(job)


@router.get("/jobs")
def list_jobs(
    status: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=500),
) -> dict:
    service = get_disbursement_service()
    try:
        jobs = service.list_jobs(status, limit)
    except DisbursementError as exc:
        raise _http_error(exc, "Failed to list jobs") from exc
    return {"items": [recent_job_view(job) for job in jobs]}


@router.get("/dashboard")
def get_dashboard() -> dict:
    service = get_disbursement_service()
    try:
        return service.get_dashboard()
    except DisbursementError as exc:
        raise _http_error(exc, "Failed to fetch dashboard data") from exc


@router.post("/retry")
def retry_job(payload: dict[str, Any]) -> dict:
    job_id = payload.get("jobId")
    if not job_id:
        raise HTTPException(status_code=400, detail="Missing jobId parameter")
    service = get_disbursement_service()
    try:
        job = service.retry_job(str(job_id))
    except DisbursementError as exc:
        raise _http_error(exc, "Failed to retry job") from exc
    return {
        "success": True,
        "message": "Job queued for retry",
        "jobId": job.id,
        "retryCount": job.retry_count,
    }


@router.put("/retry")
def retry_all_jobs() -> dict:
    service = get_disbursement_service()
    try:
        count = service.retry_all()
    except DisbursementError as exc:
        raise _http_error(exc, "Failed to retry jobs") from exc
    return {"success": True, "message": f"{count} jobs queued for retry", "count": count}


@router.post("/reset-stuck")
def reset_stuck_jobs() -> dict:
    service = get_disbursement_service()
    try:
        count = service.reset_stuck_jobs()
    except DisbursementError as exc:
        raise _http_error(exc, "Failed to reset stuck jobs") from exc
    return {"success": True, "count": count}


@router.delete("/completed")
def clear_completed_jobs() -> dict:
    service = get_disbursement_service()
    try:
        count = service.clear_completed_jobs()
    except DisbursementError as exc:
        raise _http_error(exc, "Failed to clear completed jobs") from exc
    return {"success": True, "count": count}


@router.get("/alerts")
def list_alerts(
    limit: int | None = Query(default=None, ge=1, le=500),
    unacknowledged: bool = Query(default=False),
) -> dict:
    service = get_disbursement_service()
    try:
        return service.list_alerts(limit, unacknowledged_only=unacknowledged)
    except DisbursementError as exc:
        raise _http_error(exc, "Failed to fetch alerts") from exc


@router.post("/alerts")
def acknowledge_alerts(payload: dict[str, Any]) -> dict:
    service = get_disbursement_service()
    try:
        return service.handle_acknowledgement(payload)
    except DisbursementError as exc:
        raise _http_error(exc, "Failed to acknowledge alert") from exc


@router.get("/health")
def queue_health() -> JSONResponse:
    service = get_disbursement_service()
    health = service.health()
    status_code = 200 if health["reachable"] else 503
    return JSONResponse({"status": "healthy" if health["reachable"] else "unhealthy", **health}, status_code=status_code)
