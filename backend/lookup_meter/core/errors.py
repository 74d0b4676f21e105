"""
Metering error taxonomy.

Three families, handled differently by the request-serving layer:

  • MeteringRejection — expected, user-facing outcomes. They carry the
    data needed for a helpful message and are never retried by the
    coordinator (InsufficientBalance, RateLimited, AccountDisabled,
    NegativeBalance).
  • UpstreamUnavailable — transient failure of the external lookup.
    No ledger or cache mutation has happened; the caller may retry.
  • LedgerInvariantError — a programming defect (balance arithmetic
    mismatch, negative balance, duplicate purchase caught at insert time).
    The transaction is rolled back and the error propagates.
"""

from __future__ import annotations


class MeteringRejection(Exception):
    """Base class for expected, user-facing rejections."""

    code = "rejected"

    def to_dict(self) -> dict[str, object]:
        return {"error": self.code, "message": str(self)}


class InsufficientBalance(MeteringRejection):
    """The account cannot pay for the requested search."""

    code = "insufficient_balance"

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient credits. You have {available} credits, "
            f"this search needs {required}."
        )
        self.required = required
        self.available = available

    def to_dict(self) -> dict[str, object]:
        return {
            **super().to_dict(),
            "required": self.required,
            "available": self.available,
        }


class RateLimited(MeteringRejection):
    """An anonymous identity exceeded its rolling request window."""

    code = "rate_limited"

    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__(
            f"Search limit reached. Try again in {retry_after_seconds} seconds."
        )
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> dict[str, object]:
        return {**super().to_dict(), "retry_after_seconds": self.retry_after_seconds}


class AccountDisabled(MeteringRejection):
    """The account has been soft-disabled by an operator."""

    code = "account_disabled"

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account {account_id} is disabled.")
        self.account_id = account_id


class NegativeBalance(MeteringRejection):
    """A manual adjustment would drive the balance below zero."""

    code = "negative_balance"

    def __init__(self, available: int, requested: int) -> None:
        super().__init__(
            f"Adjustment of {requested} would make the balance negative "
            f"(current balance {available})."
        )
        self.available = available
        self.requested = requested

    def to_dict(self) -> dict[str, object]:
        return {
            **super().to_dict(),
            "available": self.available,
            "requested": self.requested,
        }


class UpstreamUnavailable(Exception):
    """The external lookup timed out or failed. Safe to retry."""

    code = "upstream_unavailable"


class LedgerInvariantError(Exception):
    """A ledger write would have violated a balance invariant."""

    code = "ledger_invariant_violation"


class DuplicatePurchaseError(LedgerInvariantError):
    """A PURCHASE for an already-credited source_id reached the insert."""

    code = "duplicate_purchase"
