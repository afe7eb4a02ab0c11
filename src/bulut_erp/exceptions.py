"""Domain error taxonomy shared by the pricing engine and the business layer."""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, customer, sale, or expense is unknown."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when user input is incomplete or out of range.

    Validation always happens before any collection is touched, so a raised
    ``ValidationError`` means nothing was applied.
    """


class ConsistencyError(BusinessRuleViolation):
    """Raised when an operation would break a cross-record invariant."""


class AlreadyInvoicedError(ConsistencyError):
    """Raised when a sale that already carries an invoice is cancelled or re-invoiced."""


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "ValidationError",
    "ConsistencyError",
    "AlreadyInvoicedError",
]
