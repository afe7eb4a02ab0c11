"""Read-side reports recomputed from the domain collections.

Every function here is pure: it takes the current collections (and an
optional date window) and returns frozen result records. Nothing is cached
and nothing is written back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import log, pricing
from .constants import VAT_RATE, VatBalanceLabel
from .data_manager import CustomerRow, ExpenseRow, ProductRow, SaleRow
from .exceptions import ValidationError

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class DateRange:
    """Inclusive date window; ``end`` covers the whole of its day."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValidationError(f"Report window starts after it ends: {self.start} > {self.end}")

    @classmethod
    def last_days(cls, days: int = 30, today: Optional[date] = None) -> "DateRange":
        end = today or datetime.now(UTC).date()
        return cls(start=end - timedelta(days=days), end=end)

    @property
    def start_at(self) -> datetime:
        return datetime.combine(self.start, time.min, tzinfo=UTC)

    @property
    def end_at(self) -> datetime:
        return datetime.combine(self.end, time.max, tzinfo=UTC)

    def contains(self, moment: datetime) -> bool:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=UTC)
        return self.start_at <= moment <= self.end_at


@dataclass(frozen=True)
class SaleProfitLine:
    sale_id: str
    date: datetime
    customer_name: str
    revenue: Decimal
    cost: Decimal
    profit: Decimal


@dataclass(frozen=True)
class SalesReport:
    """Profitability of a date window.

    ``revenue`` is tax-exclusive; ``cogs`` uses the unit costs frozen into
    each sale line at checkout.
    """

    date_range: DateRange
    revenue: Decimal
    cogs: Decimal
    expense_total: Decimal
    gross_profit: Decimal
    net_profit: Decimal
    sales: Tuple[SaleRow, ...]
    expenses: Tuple[ExpenseRow, ...]
    lines: Tuple[SaleProfitLine, ...]


@dataclass(frozen=True)
class VatMonth:
    month: str
    output: Decimal
    input: Decimal
    balance: Decimal
    label: VatBalanceLabel


@dataclass(frozen=True)
class StockLine:
    product_id: str
    code: str
    name: str
    stock: int
    cost_value: Decimal
    sale_value: Decimal


@dataclass(frozen=True)
class StockValuation:
    total_cost_value: Decimal
    total_sale_value: Decimal
    lines: Tuple[StockLine, ...]


@dataclass(frozen=True)
class CustomerStatement:
    customer: CustomerRow
    date_range: DateRange
    sales: Tuple[SaleRow, ...]
    total: Decimal


@dataclass(frozen=True)
class DailySales:
    day: date
    total: Decimal


@dataclass(frozen=True)
class DashboardSummary:
    total_revenue: Decimal
    total_stock: int
    critical_count: int
    order_count: int
    recent_days: Tuple[DailySales, ...]


@dataclass(frozen=True)
class PriceLine:
    product_id: str
    code: str
    name: str
    price: Decimal
    vat: Decimal
    price_with_vat: Decimal
    stock: int


def filter_sales(sales: Iterable[SaleRow], date_range: DateRange) -> List[SaleRow]:
    return [sale for sale in sales if date_range.contains(sale.date)]


def filter_expenses(expenses: Iterable[ExpenseRow], date_range: DateRange) -> List[ExpenseRow]:
    return [expense for expense in expenses if date_range.contains(expense.date)]


def sales_report(
    sales: Iterable[SaleRow],
    expenses: Iterable[ExpenseRow],
    date_range: DateRange,
) -> SalesReport:
    """Compute revenue, cost of goods, and profit over ``date_range``.

    Args:
        sales (Iterable[SaleRow]): All sales; filtered here by date.
        expenses (Iterable[ExpenseRow]): All expenses; filtered here by date.
        date_range (DateRange): Inclusive reporting window.

    Returns:
        SalesReport: ``gross_profit = revenue - cogs`` and
            ``net_profit = gross_profit - expense_total``. Amounts are rounded
            to cents after summing.
    """

    window_sales = tuple(filter_sales(sales, date_range))
    window_expenses = tuple(filter_expenses(expenses, date_range))

    lines = []
    for sale in window_sales:
        cost = pricing.quantize_money(pricing.items_cost(sale.items))
        lines.append(
            SaleProfitLine(
                sale_id=sale.sale_id,
                date=sale.date,
                customer_name=sale.customer_name,
                revenue=sale.sub_total,
                cost=cost,
                profit=sale.sub_total - cost,
            )
        )

    revenue = pricing.quantize_money(sum((sale.sub_total for sale in window_sales), ZERO))
    cogs = pricing.quantize_money(sum((pricing.items_cost(sale.items) for sale in window_sales), ZERO))
    expense_total = pricing.quantize_money(sum((expense.amount for expense in window_expenses), ZERO))
    gross_profit = revenue - cogs
    net_profit = gross_profit - expense_total

    log.debug(
        "Sales report %s..%s: revenue=%s cogs=%s expenses=%s",
        date_range.start,
        date_range.end,
        revenue,
        cogs,
        expense_total,
    )
    return SalesReport(
        date_range=date_range,
        revenue=revenue,
        cogs=cogs,
        expense_total=expense_total,
        gross_profit=gross_profit,
        net_profit=net_profit,
        sales=window_sales,
        expenses=window_expenses,
        lines=tuple(lines),
    )


def month_key(moment: datetime) -> str:
    return f"{moment.year:04d}-{moment.month:02d}"


def monthly_vat_balance(sales: Iterable[SaleRow]) -> List[VatMonth]:
    """Group every sale by calendar month and net output VAT against input VAT.

    Input VAT is estimated as ``cost_price × quantity × VAT_RATE`` over the
    sold lines; real purchase invoices are not tracked. A positive balance is
    payable, anything else is carried forward. Months come newest first.
    """

    output: Dict[str, Decimal] = {}
    estimated_input: Dict[str, Decimal] = {}
    for sale in sales:
        key = month_key(sale.date)
        output[key] = output.get(key, ZERO) + sale.tax_total
        estimated_input[key] = estimated_input.get(key, ZERO) + pricing.items_cost(sale.items) * VAT_RATE

    months = []
    for key in sorted(output, reverse=True):
        out_vat = pricing.quantize_money(output[key])
        in_vat = pricing.quantize_money(estimated_input[key])
        balance = out_vat - in_vat
        label = VatBalanceLabel.PAYABLE if balance > 0 else VatBalanceLabel.CARRIED_FORWARD
        months.append(VatMonth(month=key, output=out_vat, input=in_vat, balance=balance, label=label))
    log.debug("Computed VAT balance for %d month(s)", len(months))
    return months


def stock_valuation(products: Iterable[ProductRow]) -> StockValuation:
    """Value current stock at cost and at sale price, both tax-exclusive."""

    lines = tuple(
        StockLine(
            product_id=product.product_id,
            code=product.code,
            name=product.name,
            stock=product.stock,
            cost_value=pricing.quantize_money(product.cost_price * product.stock),
            sale_value=pricing.quantize_money(product.price * product.stock),
        )
        for product in products
    )
    return StockValuation(
        total_cost_value=sum((line.cost_value for line in lines), ZERO),
        total_sale_value=sum((line.sale_value for line in lines), ZERO),
        lines=lines,
    )


def customer_history(customer_id: str, sales: Iterable[SaleRow]) -> List[SaleRow]:
    """All-time sales of one customer, newest first."""

    matches = [sale for sale in sales if sale.customer_id == customer_id]
    return sorted(matches, key=lambda sale: sale.date, reverse=True)


def customer_statement(
    customer: CustomerRow,
    sales: Iterable[SaleRow],
    date_range: DateRange,
) -> CustomerStatement:
    """Sales of ``customer`` inside ``date_range`` and their total."""

    window = tuple(filter_sales(customer_history(customer.customer_id, sales), date_range))
    total = sum((sale.total for sale in window), ZERO)
    return CustomerStatement(customer=customer, date_range=date_range, sales=window, total=total)


def customer_totals(customers: Iterable[CustomerRow]) -> List[Tuple[CustomerRow, Decimal]]:
    """Every customer with their all-time purchase total."""

    return [(customer, customer.total_purchases) for customer in customers]


def dashboard_summary(
    products: Sequence[ProductRow],
    sales: Sequence[SaleRow],
    *,
    recent_days: int = 7,
) -> DashboardSummary:
    """Headline figures for the landing view.

    ``recent_days`` keeps the last N calendar days that actually had sales,
    oldest first.
    """

    per_day: Dict[date, Decimal] = {}
    for sale in sales:
        day = sale.date.date()
        per_day[day] = per_day.get(day, ZERO) + sale.total
    days = sorted(per_day)[-recent_days:] if recent_days > 0 else []

    return DashboardSummary(
        total_revenue=sum((sale.total for sale in sales), ZERO),
        total_stock=sum(product.stock for product in products),
        critical_count=sum(1 for product in products if product.is_critical),
        order_count=len(sales),
        recent_days=tuple(DailySales(day=day, total=per_day[day]) for day in days),
    )


def price_list(products: Iterable[ProductRow]) -> List[PriceLine]:
    return [
        PriceLine(
            product_id=product.product_id,
            code=product.code,
            name=product.name,
            price=product.price,
            vat=pricing.vat_amount(product.price),
            price_with_vat=pricing.tax_inclusive(product.price),
            stock=product.stock,
        )
        for product in products
    ]


__all__ = [
    "DateRange",
    "SaleProfitLine",
    "SalesReport",
    "VatMonth",
    "StockLine",
    "StockValuation",
    "CustomerStatement",
    "DailySales",
    "DashboardSummary",
    "PriceLine",
    "filter_sales",
    "filter_expenses",
    "sales_report",
    "month_key",
    "monthly_vat_balance",
    "stock_valuation",
    "customer_history",
    "customer_statement",
    "customer_totals",
    "dashboard_summary",
    "price_list",
]
