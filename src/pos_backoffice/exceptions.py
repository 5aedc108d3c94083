"""Error taxonomy shared by the lifecycle manager, inventory and storage layers."""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised for malformed input such as an incomplete sale draft."""


class InventoryError(BusinessRuleViolation):
    """Raised when an adjustment would leave a product with negative stock."""


class InvalidStateError(BusinessRuleViolation):
    """Raised when a lifecycle transition is attempted from a disallowed state."""


class MissingReferenceError(InvalidStateError):
    """Raised when a referenced sale, product, staff member or credit is unknown."""


class AuthorizationError(BusinessRuleViolation):
    """Raised when the administrator credential does not match."""


class PersistenceError(RuntimeError):
    """Raised when the storage layer fails after exhausting its retries."""


__all__ = [
    "BusinessRuleViolation",
    "ValidationError",
    "InventoryError",
    "InvalidStateError",
    "MissingReferenceError",
    "AuthorizationError",
    "PersistenceError",
]
