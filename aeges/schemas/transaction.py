"""
Transaction input schema.

A TransactionRecord is immutable once accepted. Identifier strings are
sanitized on construction; anything structurally invalid raises
``aeges.exceptions.ValidationError``.
"""

import re
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from aeges.exceptions import ValidationError

_UNSAFE_CHARS = re.compile(r"[<>\"'&]")


def sanitize_identifier(value: str) -> str:
    return _UNSAFE_CHARS.sub("", value).strip()


class AccountHistory(BaseModel):
    """Contextual history of the originating account."""
    model_config = ConfigDict(frozen=True)

    account_age_days: Optional[float] = Field(default=None, ge=0)
    previous_transactions: Optional[int] = Field(default=None, ge=0)
    total_volume: Optional[float] = Field(default=None, ge=0)


class TransactionRecord(BaseModel):
    """A single transaction submitted for analysis."""
    model_config = ConfigDict(frozen=True)

    transaction_id: str = Field(min_length=1)
    amount: float = Field(ge=0)
    timestamp: datetime
    origin: str = Field(min_length=1)
    destination: str = Field(min_length=1)
    wallet_address: str = ""
    asset_type: str = "unknown"
    network: Optional[str] = None
    history: AccountHistory = Field(default_factory=AccountHistory)
    network_metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("transaction_id", "origin", "destination", "wallet_address", mode="before")
    @classmethod
    def strip_unsafe(cls, v: Any) -> Any:
        if isinstance(v, str):
            return sanitize_identifier(v)
        return v

    @field_validator("timestamp")
    @classmethod
    def ensure_aware(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="before")
    @classmethod
    def default_wallet(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("wallet_address"):
            return {**data, "wallet_address": data.get("origin", "")}
        return data

    @classmethod
    def parse(cls, data: dict[str, Any]) -> "TransactionRecord":
        """Build a record from untrusted input, raising the AEGES error type."""
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
            raise ValidationError(
                f"Invalid transaction data: {', '.join(fields) or 'malformed input'}",
                details={"fields": fields},
            ) from exc
