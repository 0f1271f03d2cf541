"""Application services."""

from .disbursements import (
    DisbursementService,
    configure_disbursement_service,
    get_disbursement_service,
    job_detail,
    reset_disbursement_state,
)

__all__ = [
    "DisbursementService",
    "configure_disbursement_service",
    "get_disbursement_service",
    "job_detail",
    "reset_disbursement_state",
]
