from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


# Canonical values mirror the CHECK constraints in `billsync/db/migrations/001_init.sql`.
SyncType = Annotated[Literal["products", "customers", "orders", "inventory"], BeforeValidator(_to_lower_str)]
MovementType = Annotated[Literal["in", "out", "adjustment"], BeforeValidator(_to_lower_str)]

DocumentType = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[a-z][a-z0-9_]*$"),
]

PAYMENT_STATUSES = ("unpaid", "partial", "paid", "overdue")
# Cancellation goes through the bulk delete path so inventory can be reversed.
EDITABLE_INVOICE_STATUSES = ("draft", "confirmed", "sent", "overdue")
