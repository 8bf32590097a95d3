"""
Credit ledger exceptions.

Every ledger error is raised before any row is written, so a caller that
catches one can rely on the account being unchanged.
"""

from decimal import Decimal
from typing import Any, Dict, Optional, Union


Number = Union[Decimal, float, int]


class CreditError(Exception):
    """Base exception for all ledger errors."""

    def __init__(self, message: str, code: str = "CREDIT_ERROR", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class InsufficientCredits(CreditError):
    """
    Raised when an account balance cannot cover a debit.

    Attributes:
        required: Credits the operation needed
        available: Credits on the account when the check ran
    """

    def __init__(self, required: Number, available: Number):
        required = Decimal(str(required))
        available = Decimal(str(available))
        shortfall = max(Decimal("0"), required - available)
        super().__init__(
            message=f"Insufficient credits. Required: {required}, available: {available}.",
            code="INSUFFICIENT_CREDITS",
            details={
                "required": float(required),
                "available": float(available),
                "shortfall": float(shortfall),
            },
        )
        self.required = required
        self.available = available
        self.shortfall = shortfall


class InvalidReservationState(CreditError):
    """Raised when a settlement targets a missing or already settled entry."""

    def __init__(self, entry_id: Any, reason: str):
        super().__init__(
            message=f"Reservation {entry_id} cannot be settled: {reason}",
            code="INVALID_RESERVATION_STATE",
            details={"entry_id": entry_id, "reason": reason},
        )
        self.entry_id = entry_id
        self.reason = reason


class TrialAlreadyUsed(CreditError):
    """Raised when another account already claimed the trial from this origin."""

    def __init__(self, fingerprint: str):
        super().__init__(
            message="Trial credits already used from this network origin.",
            code="TRIAL_ALREADY_USED",
            details={"fingerprint": fingerprint},
        )
        self.fingerprint = fingerprint


class AccountNotFound(CreditError):
    def __init__(self, user_id: str):
        super().__init__(
            message=f"Account {user_id} not found.",
            code="ACCOUNT_NOT_FOUND",
            details={"user_id": user_id},
        )
        self.user_id = user_id


class InvalidAmount(CreditError):
    def __init__(self, amount: Any, reason: str = "amount must be greater than 0"):
        super().__init__(
            message=f"Invalid credit amount {amount}: {reason}",
            code="INVALID_AMOUNT",
            details={"amount": str(amount), "reason": reason},
        )
        self.amount = amount
