from __future__ import annotations

from typing import Literal

SourceKind = Literal["commerce", "warehouse", "manual"]
FinancialState = Literal["pending", "paid", "partially_paid", "refunded", "voided", "authorized"]
FulfillmentState = Literal["unfulfilled", "fulfilled", "restocked", "canceled"]
RefundState = Literal["none", "partial", "full"]
LineItemStatus = Literal["active", "inactive"]

# Merge priority: earlier kinds are authoritative and win the contact waterfall.
SOURCE_PRIORITY: tuple[str, ...] = ("commerce", "warehouse", "manual")

SYNTHETIC_ID_PREFIX: dict[str, str] = {
    "warehouse": "WH",
    "manual": "MAN",
}

INVALIDATING_FULFILLMENT_STATES = frozenset({"restocked", "canceled"})
INVALIDATING_FINANCIAL_STATES = frozenset({"refunded", "voided"})


def source_rank(kind: str) -> int:
    return SOURCE_PRIORITY.index(kind)
