"""Enumerations and fixed constants shared across BulutERP modules.

The persistence layer, the business logic and the reports all read their
identifiers from here so sheet names, enum spellings and the VAT rate have a
single source of truth.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# System-wide VAT (KDV) rate applied on top of tax-exclusive prices.
VAT_RATE = Decimal("0.20")

MONEY_QUANTUM = Decimal("0.01")

# Synthetic service lines are never limited by stock.
SERVICE_VIRTUAL_STOCK = 9999
SERVICE_ITEM_CODE = "SERVICE"
SERVICE_ID_PREFIX = "svc-"

INVOICE_NUMBER_PREFIX = "GIB"

WALK_IN_MARKER = "WALK-IN"


class CollectionKey(str, Enum):
    """Persisted collections; the value doubles as the storage key."""

    PRODUCTS = "products"
    CUSTOMERS = "customers"
    SALES = "sales"
    INVOICES = "invoices"
    EXPENSES = "expenses"

    @property
    def sheet_name(self) -> str:
        return self.value.capitalize()


class CustomerType(str, Enum):
    INDIVIDUAL = "INDIVIDUAL"
    CORPORATE = "CORPORATE"


class InvoiceStatus(str, Enum):
    """Lifecycle markers of an e-archive invoice. Issuance only produces SIGNED."""

    DRAFT = "DRAFT"
    SIGNED = "SIGNED"
    SENT = "SENT"


class ExpenseCategory(str, Enum):
    RENT = "RENT"
    UTILITIES = "UTILITIES"
    SALARY = "SALARY"
    MEAL = "MEAL"
    TAX = "TAX"
    MARKETING = "MARKETING"
    OTHER = "OTHER"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CREDIT_CARD = "CREDIT_CARD"
    BANK_TRANSFER = "BANK_TRANSFER"


class SaleState(str, Enum):
    """States a sale moves through; CANCELLED sales are removed from storage."""

    OPEN_CART = "OPEN_CART"
    COMMITTED = "COMMITTED"
    INVOICED = "INVOICED"
    CANCELLED = "CANCELLED"


class VatBalanceLabel(str, Enum):
    PAYABLE = "payable"
    CARRIED_FORWARD = "carried forward"


EXPENSE_CATEGORY_LABELS = {
    ExpenseCategory.RENT: "Rent",
    ExpenseCategory.UTILITIES: "Utilities (electricity/water/internet)",
    ExpenseCategory.SALARY: "Staff salary/advance",
    ExpenseCategory.MEAL: "Meals/kitchen",
    ExpenseCategory.TAX: "Tax/social security",
    ExpenseCategory.MARKETING: "Advertising & marketing",
    ExpenseCategory.OTHER: "Other",
}

PAYMENT_METHOD_LABELS = {
    PaymentMethod.CASH: "Cash",
    PaymentMethod.CREDIT_CARD: "Credit card",
    PaymentMethod.BANK_TRANSFER: "Bank transfer",
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "VAT_RATE",
    "MONEY_QUANTUM",
    "SERVICE_VIRTUAL_STOCK",
    "SERVICE_ITEM_CODE",
    "SERVICE_ID_PREFIX",
    "INVOICE_NUMBER_PREFIX",
    "WALK_IN_MARKER",
    "CollectionKey",
    "CustomerType",
    "InvoiceStatus",
    "ExpenseCategory",
    "PaymentMethod",
    "SaleState",
    "VatBalanceLabel",
    "EXPENSE_CATEGORY_LABELS",
    "PAYMENT_METHOD_LABELS",
]
