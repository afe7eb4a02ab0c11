"""Pricing and costing engine.

Pure functions only: tax-inclusive prices, cart totals, and the
weighted-average cost update applied when stock is received. Nothing here
touches the workbook or the domain store.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import Any, Iterable, Optional

from . import log
from .constants import MONEY_QUANTUM, VAT_RATE
from .data_manager import CartItem, ProductRow
from .exceptions import ValidationError

MAX_AMOUNT_EXPONENT = 15


@dataclass(frozen=True)
class CartTotals:
    """Tax-exclusive subtotal, VAT and grand total of a set of lines."""

    sub_total: Decimal
    tax_total: Decimal
    total: Decimal


def _parse_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        candidate = value
    else:
        try:
            candidate = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return None
    return candidate if candidate.is_finite() else None


def exceeds_amount_range(value: Any) -> bool:
    """Whether ``value`` is a number too large to be treated as an amount."""

    candidate = _parse_decimal(value)
    return bool(candidate) and candidate.adjusted() >= MAX_AMOUNT_EXPONENT


def to_decimal(value: Any) -> Decimal:
    """Coerce ``value`` to :class:`Decimal`, treating anything unusable as zero.

    ``None``, empty strings, non-numeric text, non-finite numbers (NaN,
    infinity) and magnitudes of 10**MAX_AMOUNT_EXPONENT or more all map to
    ``Decimal("0")``. The function never raises, which lets totals be
    computed over half-filled forms.
    """

    if exceeds_amount_range(value):
        return Decimal("0")
    candidate = _parse_decimal(value)
    return candidate if candidate is not None else Decimal("0")


def quantize_money(value: Any) -> Decimal:
    """Round to two decimals, half away from zero.

    Precision is widened for large amounts so quantizing never overflows the
    context.
    """

    amount = _parse_decimal(value) or Decimal("0")
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, amount.adjusted() + 4)
        return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def tax_inclusive(price: Any) -> Decimal:
    """Return ``price × (1 + VAT_RATE)`` rounded to cents."""

    return quantize_money(to_decimal(price) * (Decimal("1") + VAT_RATE))


def vat_amount(price: Any) -> Decimal:
    """Return the VAT added on top of a tax-exclusive ``price``."""

    return quantize_money(to_decimal(price) * VAT_RATE)


def line_total(item: CartItem) -> Decimal:
    return to_decimal(item.price) * to_decimal(item.quantity)


def line_cost(item: CartItem) -> Decimal:
    return to_decimal(item.cost_price) * to_decimal(item.quantity)


def items_cost(items: Iterable[CartItem]) -> Decimal:
    """Sum of ``cost_price × quantity`` over ``items`` (unrounded)."""

    return sum((line_cost(item) for item in items), Decimal("0"))


def cart_totals(items: Iterable[CartItem]) -> CartTotals:
    """Compute subtotal, VAT, and grand total for a cart.

    ``sub_total`` is Σ price × quantity and ``tax_total`` is the subtotal
    times :data:`~bulut_erp.constants.VAT_RATE`, both rounded to cents, and
    ``total`` is their exact sum so ``total == sub_total + tax_total`` always
    holds. Missing or non-numeric prices and quantities count as zero.
    """

    sub_total = quantize_money(sum((line_total(item) for item in items), Decimal("0")))
    tax_total = quantize_money(sub_total * VAT_RATE)
    return CartTotals(sub_total=sub_total, tax_total=tax_total, total=sub_total + tax_total)


def weighted_average_cost(stock: Any, cost_price: Any, added_qty: Any, unit_cost: Any) -> Decimal:
    """Blend existing stock value with a purchase into a new unit cost.

    Returns ``(stock × cost_price + added_qty × unit_cost) / (stock + added_qty)``
    rounded to cents, or ``unit_cost`` when the combined quantity is zero.
    """

    current_stock = to_decimal(stock)
    current_cost = to_decimal(cost_price)
    quantity = to_decimal(added_qty)
    purchase_cost = to_decimal(unit_cost)

    total_quantity = current_stock + quantity
    if total_quantity <= 0:
        return quantize_money(purchase_cost)
    blended = (current_stock * current_cost + quantity * purchase_cost) / total_quantity
    return quantize_money(blended)


def receive_purchase(product: ProductRow, added_qty: Any, unit_cost: Any) -> ProductRow:
    """Apply a purchase receipt to ``product``.

    This is the only place, besides a direct product edit, where a unit cost
    changes.

    Args:
        product (ProductRow): Product before the receipt.
        added_qty: Received quantity; must be a positive whole number.
        unit_cost: Tax-exclusive unit cost of the received goods.

    Returns:
        ProductRow: Copy of ``product`` with ``stock`` increased by
            ``added_qty`` and ``cost_price`` set to the weighted average.

    Raises:
        ValidationError: If ``added_qty`` is not strictly positive.
    """

    quantity = to_decimal(added_qty)
    if quantity <= 0 or quantity != quantity.to_integral_value():
        log.error("Purchase quantity validation failed for '%s': %s", product.product_id, added_qty)
        raise ValidationError("invalid quantity")
    if to_decimal(unit_cost) < 0 or exceeds_amount_range(unit_cost):
        log.error("Purchase unit cost validation failed for '%s': %s", product.product_id, unit_cost)
        raise ValidationError("invalid unit cost")

    new_cost = weighted_average_cost(product.stock, product.cost_price, quantity, unit_cost)
    return replace(product, stock=product.stock + int(quantity), cost_price=new_cost)


__all__ = [
    "CartTotals",
    "to_decimal",
    "exceeds_amount_range",
    "quantize_money",
    "tax_inclusive",
    "vat_amount",
    "line_total",
    "line_cost",
    "items_cost",
    "cart_totals",
    "weighted_average_cost",
    "receive_purchase",
]
