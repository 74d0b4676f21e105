"""
Pydantic v2 schemas for the credit ledger endpoints.

TransactionOut uses from_attributes=True so LedgerTransaction ORM rows
map directly without manual conversion.
"""

from __future__ import annotations

import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TransactionOut(BaseModel):
    """One ledger row as exposed to customers and admins."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: str
    kind: str
    amount: int
    balance_before: int
    balance_after: int
    related_request_id: str | None = None
    source_id: str | None = None
    actor: str | None = None
    description: str
    created_at: datetime.datetime


class CreditSummaryOut(BaseModel):
    """Balance overview for the caller's account."""

    model_config = ConfigDict(from_attributes=True)

    account_id: str
    balance: int
    total_purchased: int
    total_used: int
    is_active: bool
    last_purchase_at: datetime.datetime | None = None
    needs_alert: bool
    recent_transactions: list[TransactionOut]


# ── Payment collaborator ────────────────────────────────────
class TopUpRequest(BaseModel):
    """
    Payload sent by the payment collaborator after a confirmed payment.

    source_id is the opaque payment identifier ("pi_…", "ch_…",
    "MANUAL_ADMIN_…"). Replaying the same source_id never double-credits.
    """

    model_config = ConfigDict(extra="forbid")

    account_id: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(..., gt=0, examples=[100])
    source_id: str = Field(..., min_length=1, max_length=255, examples=["pi_3Nf2"])
    description: str = Field(default="Credit purchase", max_length=500)


class BalanceChangeOut(BaseModel):
    account_id: str
    balance: int


# ── Admin corrections ───────────────────────────────────────
class AdjustmentRequest(BaseModel):
    """Manual correction; positive adds credits, negative removes them."""

    model_config = ConfigDict(extra="forbid")

    amount: int = Field(..., examples=[-5])
    actor: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1, max_length=500)

    @field_validator("amount")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("amount must not be zero")
        return value


class RefundRequest(BaseModel):
    """Return credits charged for a specific search request."""

    model_config = ConfigDict(extra="forbid")

    amount: int = Field(..., gt=0)
    request_id: str = Field(..., min_length=1, max_length=128)
    description: str = Field(default="Refund", max_length=500)


class AccountStatusRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    active: bool
