from __future__ import annotations

from typing import Optional


class DebtTrackerError(Exception):
    """Base class for every error the debt tracker raises on purpose."""


class ValidationError(DebtTrackerError, ValueError):
    """Malformed or out-of-range input (non-positive amount, missing field, illegal state)."""


class NotFoundError(DebtTrackerError, LookupError):
    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class OverpaymentError(ValidationError):
    def __init__(self, debt_id: str, amount_cents: int, remaining_cents: int) -> None:
        super().__init__(
            f"payment of {amount_cents} cents exceeds remaining balance of {remaining_cents} cents (debt={debt_id})"
        )
        self.debt_id = debt_id
        self.amount_cents = amount_cents
        self.remaining_cents = remaining_cents


class ConflictError(DebtTrackerError):
    """The debt changed between read and write; re-read and retry."""

    def __init__(self, debt_id: str, expected_version: int, actual_version: Optional[int]) -> None:
        super().__init__(
            f"debt {debt_id} version mismatch (expected={expected_version} actual={actual_version})"
        )
        self.debt_id = debt_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class ExternalDependencyError(DebtTrackerError):
    """
    Persistence or notification transport failure.

    `committed` tells the caller whether local state was already committed when the dependency failed
    (e.g. a reminder record exists even though the email never left).
    """

    def __init__(self, dependency: str, message: str, *, committed: bool) -> None:
        super().__init__(f"{dependency}: {message}")
        self.dependency = dependency
        self.committed = committed
