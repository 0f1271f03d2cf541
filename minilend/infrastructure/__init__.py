"""Infrastructure layer exports."""

from .mongo import MongoDisbursementRepository
from .repository import DisbursementRepository, InMemoryDisbursementRepository

__all__ = [
    "DisbursementRepository",
    "InMemoryDisbursementRepository",
    "MongoDisbursementRepository",
]
