from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, constr, field_validator

NonEmptyStr = constr(strip_whitespace=True, min_length=1)


class EnqueueRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    recipient_address: NonEmptyStr = Field(alias="recipientAddress")
    amount_kes: float = Field(alias="amountKES", gt=0, allow_inf_nan=False)
    transaction_code: NonEmptyStr = Field(alias="transactionCode")

    @field_validator("amount_kes", mode="before")
    @classmethod
    def _reject_bool_amount(cls, value: Any) -> Any:
        # bool is an int subclass; lax mode would read True as 1.0
        if isinstance(value, bool):
            raise ValueError("amountKES must be a number")
        return value


class AlertAcknowledgeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    alert_id: NonEmptyStr | None = Field(default=None, alias="alertId")
    acknowledge_all: bool = Field(default=False, alias="acknowledgeAll")
