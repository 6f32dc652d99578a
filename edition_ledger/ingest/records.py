from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from edition_ledger.core.timeutil import as_utc
from edition_ledger.domain.states import FinancialState, FulfillmentState, RefundState, SourceKind


class ContactModel(BaseModel):
    email: str | None = None
    name: str | None = None
    phone: str | None = None
    shipping_address: dict[str, Any] | None = None

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().lower()
        return value or None

    @field_validator("name", "phone")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None


class RawLineItem(BaseModel):
    line_item_id: str
    product_id: str
    quantity: int = Field(default=1, ge=1)
    unit_price: int = Field(default=0, ge=0, description="int cents")
    refund_state: RefundState = "none"
    restocked: bool = False
    created_at: datetime | None = None

    @field_validator("created_at")
    @classmethod
    def _created_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class RawOrderRecord(BaseModel):
    source_kind: SourceKind
    source_id: str = Field(min_length=1)
    display_number: str | None = None
    linked_order_id: str | None = Field(
        default=None,
        description="commerce-platform order id referenced by a warehouse/manual record",
    )
    financial_state: FinancialState = "pending"
    fulfillment_state: FulfillmentState = "unfulfilled"
    cancelled_at: datetime | None = None
    purchased_at: datetime
    contact: ContactModel = Field(default_factory=ContactModel)
    line_items: list[RawLineItem] = Field(default_factory=list)

    @field_validator("purchased_at", "cancelled_at")
    @classmethod
    def _times_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @property
    def identity(self) -> tuple[str, str]:
        return (self.source_kind, self.source_id)
