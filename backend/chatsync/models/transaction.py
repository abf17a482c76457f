"""
Transaction list models.

WHAT: List-level summary of one conversation (transaction/counterpart pair)
WHY: The conversations list and unread badges key off the same identity
HOW: Pydantic v2 model that derives the counterpart from the caller's role
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class TransactionSummary(BaseModel):
    """A conversation as shown in the transactions list."""

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True, frozen=True)

    conversation_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("transaction_id", "conversation_id"),
    )
    auction_name: str = ""
    role: str | None = None
    counterpart_id: str | None = None
    counterpart_name: str | None = None
    transaction_status: str | None = None
    last_message: str | None = None
    last_activity: datetime | None = Field(
        default=None,
        validation_alias=AliasChoices("last_activity", "date_time", "created_at"),
    )
    archived: bool = False

    @model_validator(mode="before")
    @classmethod
    def derive_counterpart(cls, data: Any):
        """
        Fill counterpart fields from the raw buyer/seller columns.

        The chat service reports the caller's role; the counterpart is the
        seller for a buyer and the buyer for a seller.
        """
        if not isinstance(data, dict) or data.get("counterpart_id") is not None:
            return data
        data = dict(data)
        role = data.get("role")
        if role == "Buyer":
            data["counterpart_id"] = data.get("seller_id")
            data.setdefault("counterpart_name", data.get("seller_company"))
        elif role == "Seller":
            data["counterpart_id"] = data.get("user_id")
            full_name = " ".join(
                part for part in (data.get("first_name"), data.get("last_name")) if part
            )
            data.setdefault("counterpart_name", full_name or data.get("buyer_company"))
        return data

    @field_validator("last_activity")
    @classmethod
    def normalize_last_activity(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v
