"""MongoDB-backed disbursement store.

Collections mirror the documents the payout worker and the balance monitor
already write: ``disbursement_queue`` for jobs and ``system_alerts`` for
alerts. A partial unique index on ``transactionCode`` over live statuses
(MongoDB 6.0+) turns duplicate enqueues into a store-level rejection
instead of a check-then-insert race.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterable, Iterator, Mapping

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from minilend.core.errors import DuplicateJobError, StoreError
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

logger = logging.getLogger(__name__)

JOBS_COLLECTION = "disbursement_queue"
ALERTS_COLLECTION = "system_alerts"
LIVE_CODE_INDEX = "live_transaction_code_unique"

_LIVE_VALUES = sorted(status.value for status in LIVE_STATUSES)
# Monitor documents written without the flag count as unacknowledged.
_UNACKNOWLEDGED: dict[str, Any] = {"acknowledged": {"$ne": True}}


def _object_id(value: str) -> ObjectId | None:
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        return None
    return ObjectId(value)


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except PyMongoError as exc:
        logger.exception("MongoDB %s failed", operation)
        raise StoreError(f"{operation} failed: {exc}") from exc


class MongoDisbursementRepository:
    name = "mongodb"

    def __init__(self, database: Database) -> None:
        self._db = database
        self._jobs = database[JOBS_COLLECTION]
        self._alerts = database[ALERTS_COLLECTION]

    @classmethod
    def from_uri(cls, uri: str, db_name: str) -> "MongoDisbursementRepository":
        client: MongoClient = MongoClient(uri, tz_aware=True, serverSelectionTimeoutMS=5000)
        return cls(client[db_name])

    def ensure_indexes(self) -> None:
        with _store_errors("index creation"):
            self._jobs.create_index(
                [("transactionCode", ASCENDING)],
                name=LIVE_CODE_INDEX,
                unique=True,
                partialFilterExpression={"status": {"$in": _LIVE_VALUES}},
            )
            self._jobs.create_index([("status", ASCENDING), ("createdAt", DESCENDING)])
            self._jobs.create_index([("status", ASCENDING), ("processingStartedAt", ASCENDING)])
            self._jobs.create_index([("status", ASCENDING), ("failedAt", DESCENDING)])
            self._jobs.create_index([("status", ASCENDING), ("completedAt", DESCENDING)])
            self._alerts.create_index([("acknowledged", ASCENDING), ("severity", ASCENDING)])
            self._alerts.create_index([("timestamp", DESCENDING)])

    def ping(self) -> bool:
        try:
            self._db.client.admin.command("ping")
        except PyMongoError:
            logger.warning("MongoDB ping failed", exc_info=True)
            return False
        return True

    # ------------------------------------------------------------------
    # jobs
    # ------------------------------------------------------------------
    def insert_job(self, job: DisbursementJob) -> str:
        document = job.to_document()
        with _store_errors("job insert"):
            try:
                result = self._jobs.insert_one(document)
            except DuplicateKeyError as exc:
                existing = self.find_live_job(job.transaction_code)
                raise DuplicateJobError(job.transaction_code, existing.id if existing else None) from exc
        job.id = str(result.inserted_id)
        return job.id

    def get_job(self, job_id: str) -> DisbursementJob | None:
        oid = _object_id(job_id)
        if oid is None:
            return None
        with _store_errors("job lookup"):
            document = self._jobs.find_one({"_id": oid})
        return DisbursementJob.from_document(document) if document else None

    def find_live_job(self, transaction_code: str) -> DisbursementJob | None:
        with _store_errors("live job lookup"):
            document = self._jobs.find_one(
                {"transactionCode": transaction_code, "status": {"$in": _LIVE_VALUES}},
                sort=[("createdAt", DESCENDING)],
            )
        return DisbursementJob.from_document(document) if document else None

    def count_by_status(self) -> JobCounts:
        counts = JobCounts()
        with _store_errors("status count"):
            for row in self._jobs.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
                counts.total += row["count"]
                if row["_id"] in {status.value for status in JobStatus}:
                    setattr(counts, row["_id"], row["count"])
        return counts

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 20) -> list[DisbursementJob]:
        query: dict[str, Any] = {"status": status.value} if status else {}
        with _store_errors("job listing"):
            cursor = self._jobs.find(query).sort("createdAt", DESCENDING).limit(limit)
            return [DisbursementJob.from_document(document) for document in cursor]

    def list_stuck_jobs(self, started_before: datetime) -> list[DisbursementJob]:
        query = {"status": JobStatus.PROCESSING.value, "processingStartedAt": {"$lt": started_before}}
        with _store_errors("stuck job listing"):
            return [DisbursementJob.from_document(document) for document in self._jobs.find(query)]

    def list_retryable_jobs(self, retry_limit: int, *, limit: int | None = None) -> list[DisbursementJob]:
        query = {"status": JobStatus.FAILED.value, "retryCount": {"$lt": retry_limit}}
        with _store_errors("retryable job listing"):
            cursor = self._jobs.find(query).sort("failedAt", DESCENDING)
            if limit is not None:
                cursor = cursor.limit(limit)
            return [DisbursementJob.from_document(document) for document in cursor]

    def count_outcomes_since(self, since: datetime) -> WindowOutcomes:
        with _store_errors("outcome count"):
            completed = self._jobs.count_documents(
                {"status": JobStatus.COMPLETED.value, "completedAt": {"$gte": since}}
            )
            failed = self._jobs.count_documents({"status": JobStatus.FAILED.value, "failedAt": {"$gte": since}})
        return WindowOutcomes(completed=completed, failed=failed)

    def total_usdc_disbursed(self) -> float:
        pipeline = [
            {"$match": {"status": JobStatus.COMPLETED.value}},
            {"$group": {"_id": None, "total": {"$sum": "$result.usdcAmount"}}},
        ]
        with _store_errors("disbursed total"):
            rows = list(self._jobs.aggregate(pipeline))
        return float(rows[0]["total"]) if rows else 0.0

    def transition_job(
        self,
        job_id: str,
        *,
        expected: JobStatus,
        target: JobStatus,
        set_fields: Mapping[str, Any] | None = None,
        unset_fields: Iterable[str] = (),
    ) -> bool:
        oid = _object_id(job_id)
        if oid is None:
            return False
        update: dict[str, Any] = {"$set": {**dict(set_fields or {}), "status": target.value}}
        unset = {key: "" for key in unset_fields}
        if unset:
            update["$unset"] = unset
        with _store_errors("job transition"):
            try:
                result = self._jobs.update_one({"_id": oid, "status": expected.value}, update)
            except DuplicateKeyError as exc:
                document = self._jobs.find_one({"_id": oid}, {"transactionCode": 1}) or {}
                code = str(document.get("transactionCode") or "")
                existing = self.find_live_job(code)
                raise DuplicateJobError(code, existing.id if existing else None) from exc
        return result.matched_count == 1

    def delete_completed_before(self, cutoff: datetime) -> int:
        with _store_errors("completed job cleanup"):
            result = self._jobs.delete_many({"status": JobStatus.COMPLETED.value, "completedAt": {"$lt": cutoff}})
        return result.deleted_count

    # ------------------------------------------------------------------
    # alerts
    # ------------------------------------------------------------------
    def insert_alert(self, alert: SystemAlert) -> str:
        with _store_errors("alert insert"):
            result = self._alerts.insert_one(alert.to_document())
        alert.id = str(result.inserted_id)
        return alert.id

    def list_alerts(self, *, limit: int, unacknowledged_only: bool = False) -> list[SystemAlert]:
        query: dict[str, Any] = dict(_UNACKNOWLEDGED) if unacknowledged_only else {}
        with _store_errors("alert listing"):
            cursor = self._alerts.find(query).sort("timestamp", DESCENDING).limit(limit)
            return [SystemAlert.from_document(document) for document in cursor]

    def count_alerts(self) -> AlertCounts:
        with _store_errors("alert count"):
            return AlertCounts(
                total=self._alerts.count_documents({}),
                unacknowledged=self._alerts.count_documents(_UNACKNOWLEDGED),
                critical=self._alerts.count_documents({"severity": CRITICAL, **_UNACKNOWLEDGED}),
            )

    def acknowledge_alert(self, alert_id: str, at: datetime) -> bool:
        oid = _object_id(alert_id)
        if oid is None:
            return False
        with _store_errors("alert acknowledgement"):
            result = self._alerts.update_one(
                {"_id": oid},
                {"$set": {"acknowledged": True, "acknowledgedAt": at}},
            )
        return result.matched_count > 0

    def acknowledge_all_alerts(self, at: datetime) -> int:
        with _store_errors("bulk alert acknowledgement"):
            result = self._alerts.update_many(
                _UNACKNOWLEDGED,
                {"$set": {"acknowledged": True, "acknowledgedAt": at}},
            )
        return result.modified_count
