"""Exception hierarchy shared by the disbursement service layers.

Routes translate these into HTTP responses; the status code each maps to
lives on the class so the translation stays in one place.
"""
from __future__ import annotations


class DisbursementError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(DisbursementError):
    pass


class InvalidRequestError(DisbursementError):
    status_code = 400


class InvalidTransitionError(InvalidRequestError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Job status is {current}, cannot move to {target}")
        self.current = current
        self.target = target


class JobNotFoundError(DisbursementError):
    status_code = 404

    def __init__(self, job_id: str) -> None:
        super().__init__("Job not found")
        self.job_id = job_id


class AlertNotFoundError(DisbursementError):
    status_code = 404

    def __init__(self, alert_id: str) -> None:
        super().__init__("Alert not found")
        self.alert_id = alert_id


class DuplicateJobError(DisbursementError):
    status_code = 409

    def __init__(self, transaction_code: str, existing_job_id: str | None = None) -> None:
        super().__init__(f"A disbursement job already exists for transaction {transaction_code}")
        self.transaction_code = transaction_code
        self.existing_job_id = existing_job_id


class StoreError(DisbursementError):
    """Raised when the job store cannot be reached or rejects a write."""
