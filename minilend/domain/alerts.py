"""System alerts written by the payout monitor and acknowledged by operators."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

CRITICAL = "CRITICAL"

_CORE_FIELDS = {"_id", "type", "severity", "message", "timestamp", "acknowledged", "acknowledgedAt"}


@dataclass(slots=True)
class SystemAlert:
    severity: str
    timestamp: datetime
    type: str | None = None
    message: str | None = None
    acknowledged: bool = False
    acknowledged_at: datetime | None = None
    id: str | None = None
    # Monitor-specific fields (balances, thresholds) kept verbatim.
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_critical(self) -> bool:
        return self.severity == CRITICAL

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "SystemAlert":
        raw_id = document.get("_id")
        return cls(
            id=str(raw_id) if raw_id is not None else None,
            type=document.get("type"),
            severity=str(document.get("severity") or ""),
            message=document.get("message"),
            timestamp=document["timestamp"],
            acknowledged=bool(document.get("acknowledged", False)),
            acknowledged_at=document.get("acknowledgedAt"),
            details={key: value for key, value in document.items() if key not in _CORE_FIELDS},
        )

    def to_document(self) -> dict[str, Any]:
        document: dict[str, Any] = dict(self.details)
        document.update(
            {
                "type": self.type,
                "severity": self.severity,
                "message": self.message,
                "timestamp": self.timestamp,
                "acknowledged": self.acknowledged,
            }
        )
        if self.acknowledged_at is not None:
            document["acknowledgedAt"] = self.acknowledged_at
        return document


@dataclass(slots=True)
class AlertCounts:
    total: int = 0
    unacknowledged: int = 0
    critical: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "unacknowledged": self.unacknowledged,
            "critical": self.critical,
        }
