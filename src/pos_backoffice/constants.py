"""Enumerations shared across the back-office modules.

Centralises domain constants so that the data access layer (DAL), the
business logic layer (BLL), the metrics engine and the CLI rely on a single
source of truth for statuses, payment methods and sheet names.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.0.0"

# The cash register is a single document stored under a fixed key.
CASH_REGISTER_ID = "current"


class SaleStatus(str, Enum):
    """Lifecycle states of a sale."""

    ACTIVE = "active"
    CANCELLED = "cancelled"


class DiscountStatus(str, Enum):
    """States of the optional staff discount attached to a sale."""

    ACTIVE = "active"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    """Enumerate the payment methods broken down by the financial report."""

    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"


class CreditStatus(str, Enum):
    """States of an installment (credit) account."""

    ACTIVE = "active"
    PAID = "paid"
    CANCELLED = "cancelled"


class ExpenseStatus(str, Enum):
    """States of a recorded expense."""

    ACTIVE = "active"
    CANCELLED = "cancelled"


class StockPolicy(str, Enum):
    """How inventory adjustments treat a quantity that would drop below zero."""

    REJECT = "reject"
    CLAMP = "clamp"
    ALLOW = "allow"


class Collection(str, Enum):
    """Enumerate the workbook sheets managed by the DAL."""

    PRODUCTS = "Products"
    STAFF = "Staff"
    CLIENTS = "Clients"
    SALES = "Sales"
    EXPENSES = "Expenses"
    CREDITS = "Credits"
    CASH_REGISTER = "CashRegister"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "CASH_REGISTER_ID",
    "SaleStatus",
    "DiscountStatus",
    "PaymentMethod",
    "CreditStatus",
    "ExpenseStatus",
    "StockPolicy",
    "Collection",
]
