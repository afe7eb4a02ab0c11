"""Business logic layer for BulutERP.

This module holds the domain store and every operation that mutates it:
catalog and customer maintenance, purchase receipts, the sale lifecycle
(checkout, cancellation, invoicing), and expense tracking. All I/O goes
through :mod:`bulut_erp.data_manager`; all arithmetic goes through
:mod:`bulut_erp.pricing`.

Each mutation validates first, builds the new collections, swaps them into
the store together, and only then persists. A storage failure never undoes an
accepted mutation; it is recorded on :attr:`DomainStore.last_save`.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook

from . import data_manager, log, pricing
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    INVOICE_NUMBER_PREFIX,
    SERVICE_ID_PREFIX,
    SERVICE_ITEM_CODE,
    SERVICE_VIRTUAL_STOCK,
    WALK_IN_MARKER,
    CollectionKey,
    CustomerType,
    ExpenseCategory,
    InvoiceStatus,
    PaymentMethod,
    SaleState,
)
from .data_manager import CartItem, CustomerRow, ExpenseRow, InvoiceRow, ProductRow, SaleRow, SaveResult
from .exceptions import (
    AlreadyInvoicedError,
    BusinessRuleViolation,
    ConsistencyError,
    MissingReferenceError,
    ValidationError,
)


@dataclass
class DomainStore:
    """The five in-memory collections plus the outcome of the latest save.

    Sales and invoices are kept most-recent-first.
    """

    products: List[ProductRow] = field(default_factory=list)
    customers: List[CustomerRow] = field(default_factory=list)
    sales: List[SaleRow] = field(default_factory=list)
    invoices: List[InvoiceRow] = field(default_factory=list)
    expenses: List[ExpenseRow] = field(default_factory=list)
    last_save: Optional[SaveResult] = None

    def collection(self, key: CollectionKey) -> list:
        return getattr(self, CollectionKey(key).value)


@dataclass(frozen=True)
class RuntimeContext:
    """Configuration, the live workbook, and the domain store it was loaded into."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    store: DomainStore = field(default_factory=DomainStore)


@dataclass(frozen=True)
class ProductCommand:
    """User intent for creating or editing a product; numbers may arrive as text."""

    code: str
    name: str
    price: Any
    cost_price: Any = Decimal("0")
    stock: Any = 0
    min_stock_level: Any = 0


@dataclass(frozen=True)
class CustomerCommand:
    """User intent for registering a customer account."""

    name: str
    customer_type: CustomerType = CustomerType.INDIVIDUAL
    tax_number: Optional[str] = None
    contact_info: str = ""


@dataclass(frozen=True)
class ExpenseCommand:
    """User intent for recording an operating expense (amount includes VAT)."""

    description: str
    amount: Any
    category: ExpenseCategory = ExpenseCategory.OTHER
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    date: Optional[date] = None


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings, the workbook, and every collection.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Context whose store mirrors the workbook contents.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    store = load_store(workbook)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook, store=store)


def load_store(workbook: Workbook) -> DomainStore:
    """Read every collection; unreadable ones start empty."""

    return DomainStore(
        products=data_manager.load_collection(workbook, CollectionKey.PRODUCTS, []),
        customers=data_manager.load_collection(workbook, CollectionKey.CUSTOMERS, []),
        sales=data_manager.load_collection(workbook, CollectionKey.SALES, []),
        invoices=data_manager.load_collection(workbook, CollectionKey.INVOICES, []),
        expenses=data_manager.load_collection(workbook, CollectionKey.EXPENSES, []),
    )


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work on a workbook declared with a different schema version.

    Raises:
        RuntimeError: If ``SchemaVersion`` in ``config.ini`` does not match
            ``EXPECTED_SCHEMA_VERSION``.
    """

    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> SaveResult:
    """Explicitly save every collection to the configured workbook."""

    result = data_manager.persist_collections(
        context.workbook,
        context.settings.data_file,
        {key: context.store.collection(key) for key in CollectionKey},
    )
    context.store.last_save = result
    if result.ok:
        log.info("Persisted workbook '%s'", context.settings.data_file)
    return result


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload workbook and store from disk, discarding unsaved changes.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """

    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, store=load_store(workbook))


def _commit(context: RuntimeContext, changes: Mapping[CollectionKey, Sequence[Any]]) -> SaveResult:
    """Swap validated collections into the store, then persist just those.

    Callers must finish all validation before calling; from here on the
    in-memory change is final even if the save fails.
    """

    store = context.store
    for key, records in changes.items():
        setattr(store, CollectionKey(key).value, list(records))

    result = data_manager.persist_collections(
        context.workbook,
        context.settings.data_file,
        {key: store.collection(key) for key in changes},
    )
    store.last_save = result
    if not result.ok:
        log.warning("Changes to %s kept in memory only: %s", ", ".join(result.keys), result.error)
    return result


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def generate_id(*, prefix: str = "", when: Optional[datetime] = None) -> str:
    """Generate a timestamp-derived identifier ``{prefix}{YYYYMMDDHHMMSSffffff}``.

    Uniqueness is only as good as the clock resolution; two calls within the
    same microsecond collide. That is acceptable for a single operator.
    """

    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def generate_invoice_number(*, when: Optional[datetime] = None, rng: Optional[random.Random] = None) -> str:
    """Build an e-archive number: ``GIB`` + 4-digit year + 6 random digits.

    The number is random, not sequential, and uniqueness is not checked.
    """

    when = when or _resolve_timestamp(None)
    source = rng or random
    return f"{INVOICE_NUMBER_PREFIX}{when.year:04d}{source.randrange(1_000_000):06d}"


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_text(value: Optional[str], field_name: str) -> str:
    """Return ``value`` stripped, or raise when it is blank."""

    text = optional_text(value, field_name)
    if not text:
        log.error("Required field '%s' is empty", field_name)
        raise ValidationError(f"{field_name} is required")
    return text


def optional_text(value: Optional[str], field_name: str) -> str:
    """Return ``value`` stripped (possibly empty); control characters are refused."""

    text = (value or "").strip()
    if not data_manager.is_storable_text(text):
        log.error("Field '%s' contains control characters", field_name)
        raise ValidationError(f"{field_name} contains characters that cannot be stored")
    return text


def require_amount_in_range(value: Any, field_name: str) -> Decimal:
    """Coerce ``value`` like :func:`pricing.to_decimal` but refuse absurd magnitudes."""

    if pricing.exceeds_amount_range(value):
        log.error("Value for '%s' is out of range: %s", field_name, value)
        raise ValidationError(f"{field_name} is out of range")
    return pricing.to_decimal(value)


def require_nonnegative_money(value: Any, field_name: str) -> Decimal:
    amount = require_amount_in_range(value, field_name)
    if amount < 0:
        log.error("Monetary value validation failed for '%s': %s", field_name, value)
        raise ValidationError(f"{field_name} must be zero or positive")
    return pricing.quantize_money(amount)


def require_whole_number(value: Any, field_name: str, *, minimum: int = 0) -> int:
    number = require_amount_in_range(value, field_name)
    if number < minimum or number != number.to_integral_value():
        log.error("Quantity validation failed for '%s': %s", field_name, value)
        raise ValidationError(f"{field_name} must be a whole number >= {minimum}")
    return int(number)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext) -> List[ProductRow]:
    return list(context.store.products)


def get_product(context: RuntimeContext, product_id: str) -> ProductRow:
    """Resolve a product by id.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
    """

    for product in context.store.products:
        if product.product_id == product_id:
            return product
    log.warning("Product lookup failed for id '%s'", product_id)
    raise MissingReferenceError(f"Unknown product id: {product_id}")


def find_product_by_code(context: RuntimeContext, code: str) -> ProductRow:
    """Resolve a product by SKU, case-insensitively.

    Raises:
        MissingReferenceError: If no product carries ``code``.
    """

    wanted = (code or "").strip().upper()
    for product in context.store.products:
        if product.code.upper() == wanted:
            return product
    log.warning("Product lookup failed for code '%s'", code)
    raise MissingReferenceError(f"Unknown product code: {code}")


def search_products(context: RuntimeContext, term: str = "") -> List[ProductRow]:
    """Products whose name or code contains ``term`` (case-insensitive)."""

    needle = (term or "").strip().lower()
    return [
        product
        for product in context.store.products
        if needle in product.name.lower() or needle in product.code.lower()
    ]


def critical_products(products: Iterable[ProductRow]) -> List[ProductRow]:
    """Products whose stock has fallen to or below their minimum level."""

    return [product for product in products if product.is_critical]


def _build_product(context: RuntimeContext, command: ProductCommand, *, product_id: str) -> ProductRow:
    name = require_text(command.name, "name")
    code = require_text(command.code, "code").upper()
    for other in context.store.products:
        if other.product_id != product_id and other.code.upper() == code:
            log.error("Duplicate product code '%s'", code)
            raise ValidationError(f"Product code already in use: {code}")
    return ProductRow(
        product_id=product_id,
        code=code,
        name=name,
        price=require_nonnegative_money(command.price, "price"),
        cost_price=require_nonnegative_money(command.cost_price, "cost_price"),
        stock=require_whole_number(command.stock, "stock"),
        min_stock_level=require_whole_number(command.min_stock_level, "min_stock_level"),
    )


def add_product(context: RuntimeContext, command: ProductCommand, *, when: Optional[datetime] = None) -> ProductRow:
    """Validate and append a new catalog entry.

    Codes are upper-cased and must be unique. Blank numeric fields count as
    zero; negative values are rejected.

    Raises:
        ValidationError: If name or code is blank, the code is taken, or a
            numeric field is negative.
    """

    product = _build_product(context, command, product_id=generate_id(prefix="P", when=_resolve_timestamp(when)))
    _commit(context, {CollectionKey.PRODUCTS: [*context.store.products, product]})
    log.info("Added product '%s' (%s)", product.code, product.product_id)
    return product


def update_product(context: RuntimeContext, product_id: str, command: ProductCommand) -> ProductRow:
    """Replace the editable fields of an existing product.

    Past sales keep their own snapshots and are unaffected.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
        ValidationError: As for :func:`add_product`.
    """

    get_product(context, product_id)
    updated = _build_product(context, command, product_id=product_id)
    products = [updated if product.product_id == product_id else product for product in context.store.products]
    _commit(context, {CollectionKey.PRODUCTS: products})
    log.info("Updated product '%s' (%s)", updated.code, product_id)
    return updated


def delete_product(context: RuntimeContext, product_id: str) -> ProductRow:
    """Remove a product from the catalog; sales keep their line snapshots.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
    """

    product = get_product(context, product_id)
    products = [row for row in context.store.products if row.product_id != product_id]
    _commit(context, {CollectionKey.PRODUCTS: products})
    log.info("Deleted product '%s' (%s)", product.code, product_id)
    return product


def receive_stock(context: RuntimeContext, product_id: str, quantity: Any, unit_cost: Any) -> ProductRow:
    """Book a purchase receipt: add stock and re-average the unit cost.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
        ValidationError: If ``quantity`` is not a positive whole number.
    """

    product = get_product(context, product_id)
    updated = pricing.receive_purchase(product, quantity, unit_cost)
    products = [updated if row.product_id == product_id else row for row in context.store.products]
    _commit(context, {CollectionKey.PRODUCTS: products})
    log.info(
        "Received %s x '%s' at %s; stock=%d cost=%s",
        quantity,
        product.code,
        unit_cost,
        updated.stock,
        updated.cost_price,
    )
    return updated


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


def list_customers(context: RuntimeContext) -> List[CustomerRow]:
    return list(context.store.customers)


def get_customer(context: RuntimeContext, customer_id: str) -> CustomerRow:
    """Resolve a customer by id.

    Raises:
        MissingReferenceError: If ``customer_id`` is unknown.
    """

    for customer in context.store.customers:
        if customer.customer_id == customer_id:
            return customer
    log.warning("Customer lookup failed for id '%s'", customer_id)
    raise MissingReferenceError(f"Unknown customer id: {customer_id}")


def search_customers(context: RuntimeContext, term: str = "") -> List[CustomerRow]:
    needle = (term or "").strip().lower()
    return [
        customer
        for customer in context.store.customers
        if needle in customer.name.lower() or needle in (customer.tax_number or "").lower()
    ]


def add_customer(context: RuntimeContext, command: CustomerCommand, *, when: Optional[datetime] = None) -> CustomerRow:
    """Register a customer with an empty purchase history.

    Raises:
        ValidationError: If the name is blank.
    """

    customer = CustomerRow(
        customer_id=generate_id(prefix="C", when=_resolve_timestamp(when)),
        name=require_text(command.name, "name"),
        customer_type=CustomerType(command.customer_type),
        tax_number=optional_text(command.tax_number, "tax_number") or None,
        contact_info=optional_text(command.contact_info, "contact_info"),
        total_purchases=Decimal("0.00"),
    )
    _commit(context, {CollectionKey.CUSTOMERS: [*context.store.customers, customer]})
    log.info("Added customer '%s' (%s)", customer.name, customer.customer_id)
    return customer


def walk_in_customer(context: RuntimeContext) -> Optional[CustomerRow]:
    """The reserved account for anonymous retail sales, if one exists.

    The configured ``WalkInCustomer`` id wins; otherwise the first customer
    whose name carries the walk-in marker.
    """

    for customer in context.store.customers:
        if customer.customer_id == context.settings.walk_in_customer_id:
            return customer
    for customer in context.store.customers:
        if WALK_IN_MARKER.lower() in customer.name.lower():
            return customer
    return None


def resolve_checkout_customer(context: RuntimeContext, customer_id: Optional[str]) -> CustomerRow:
    """Pick the customer a sale is booked to.

    An unknown or missing ``customer_id`` falls back to the first customer in
    the collection.

    Raises:
        MissingReferenceError: If there are no customers at all.
    """

    customers = context.store.customers
    for customer in customers:
        if customer.customer_id == customer_id:
            return customer
    if not customers:
        log.error("Checkout refused: no customer available")
        raise MissingReferenceError("no customer available")
    fallback = customers[0]
    log.warning("Customer '%s' not found; booking sale to '%s'", customer_id, fallback.customer_id)
    return fallback


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------


def snapshot_product(product: ProductRow, quantity: int = 1) -> CartItem:
    """Freeze the current catalog values of ``product`` into a cart line."""

    return CartItem(
        product_id=product.product_id,
        code=product.code,
        name=product.name,
        price=product.price,
        cost_price=product.cost_price,
        stock=product.stock,
        min_stock_level=product.min_stock_level,
        quantity=quantity,
        is_service=False,
    )


def make_service_item(name: str, price: Any, *, when: Optional[datetime] = None) -> CartItem:
    """Build a non-catalog labour/service line.

    Service lines have no tracked cost and unlimited virtual stock.

    Raises:
        ValidationError: If ``name`` is blank or ``price`` is not positive.
    """

    label = require_text(name, "service name")
    amount = require_amount_in_range(price, "service price")
    if amount <= 0:
        log.error("Service price validation failed: %s", price)
        raise ValidationError("service price must be greater than zero")
    moment = _resolve_timestamp(when)
    return CartItem(
        product_id=generate_id(prefix=SERVICE_ID_PREFIX, when=moment),
        code=SERVICE_ITEM_CODE,
        name=label,
        price=pricing.quantize_money(amount),
        cost_price=Decimal("0.00"),
        stock=SERVICE_VIRTUAL_STOCK,
        min_stock_level=0,
        quantity=1,
        is_service=True,
    )


class Cart:
    """An open, unsaved basket of lines (the OPEN_CART state of a sale).

    Catalog lines never exceed the stock captured when they were added;
    quantities never drop below one.
    """

    def __init__(self, items: Iterable[CartItem] = ()) -> None:
        self._items: List[CartItem] = list(items)

    @property
    def items(self) -> tuple[CartItem, ...]:
        return tuple(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def is_empty(self) -> bool:
        return not self._items

    def add_product(self, product: ProductRow) -> CartItem:
        """Add one unit of ``product``, merging with an existing line.

        Raises:
            ValidationError: If the product is out of stock.
        """

        if product.stock <= 0:
            log.warning("Product '%s' is out of stock", product.code)
            raise ValidationError(f"Product '{product.code}' is out of stock")
        for index, item in enumerate(self._items):
            if item.product_id == product.product_id and not item.is_service:
                if item.quantity >= product.stock:
                    log.info("Cart line '%s' already at available stock %d", product.code, product.stock)
                    return item
                merged = replace(item, quantity=item.quantity + 1)
                self._items[index] = merged
                return merged
        line = snapshot_product(product)
        self._items.append(line)
        return line

    def add_service(self, name: str, price: Any, *, when: Optional[datetime] = None) -> CartItem:
        line = make_service_item(name, price, when=when)
        self._items.append(line)
        return line

    def update_quantity(self, item_id: str, delta: int) -> CartItem:
        """Shift a line's quantity by ``delta``; floor at 1, cap at stock.

        A change that would exceed a catalog line's stock leaves the line as it
        is.

        Raises:
            MissingReferenceError: If no line has ``item_id``.
        """

        for index, item in enumerate(self._items):
            if item.product_id != item_id:
                continue
            quantity = max(1, item.quantity + int(delta))
            if not item.is_service and quantity > item.stock:
                return item
            updated = replace(item, quantity=quantity)
            self._items[index] = updated
            return updated
        raise MissingReferenceError(f"Unknown cart line: {item_id}")

    def remove(self, item_id: str) -> None:
        self._items = [item for item in self._items if item.product_id != item_id]

    def clear(self) -> None:
        self._items.clear()

    def totals(self) -> pricing.CartTotals:
        return pricing.cart_totals(self._items)


# ---------------------------------------------------------------------------
# Sale lifecycle
# ---------------------------------------------------------------------------


def list_sales(context: RuntimeContext) -> List[SaleRow]:
    return list(context.store.sales)


def get_sale(context: RuntimeContext, sale_id: str) -> SaleRow:
    """Resolve a sale by id.

    Raises:
        MissingReferenceError: If ``sale_id`` is unknown (or was cancelled).
    """

    for sale in context.store.sales:
        if sale.sale_id == sale_id:
            return sale
    log.warning("Sale lookup failed for id '%s'", sale_id)
    raise MissingReferenceError(f"Unknown sale id: {sale_id}")


def sale_state(sale: SaleRow) -> SaleState:
    return SaleState.INVOICED if sale.is_invoiced else SaleState.COMMITTED


def uninvoiced_sales(context: RuntimeContext) -> List[SaleRow]:
    """Sales still awaiting an invoice, newest first."""

    pending = [sale for sale in context.store.sales if not sale.is_invoiced]
    return sorted(pending, key=lambda sale: sale.date, reverse=True)


def _normalize_line(item: CartItem) -> CartItem:
    quantity = require_whole_number(item.quantity, "quantity", minimum=1)
    return replace(
        item,
        price=pricing.quantize_money(item.price),
        cost_price=pricing.quantize_money(item.cost_price),
        quantity=quantity,
    )


def _catalog_quantities(items: Iterable[CartItem]) -> Dict[str, int]:
    """Total quantity per product id over the non-service lines."""

    quantities: Dict[str, int] = {}
    for item in items:
        if item.is_service:
            continue
        quantities[item.product_id] = quantities.get(item.product_id, 0) + item.quantity
    return quantities


def checkout(
    context: RuntimeContext,
    items: Iterable[CartItem],
    customer_id: Optional[str] = None,
    *,
    when: Optional[datetime] = None,
) -> SaleRow:
    """Turn a cart into a committed sale.

    The sale freezes the cart lines and their totals. Three collections change
    together: the sale is prepended to ``sales``, each catalog line's quantity
    is taken off the matching product's stock (never below zero), and the
    sale total is added to the customer's ``total_purchases``. Nothing is
    applied unless every check passes.

    Args:
        context (RuntimeContext): Runtime context holding the store.
        items (Iterable[CartItem]): Cart lines; service lines never touch
            stock.
        customer_id (str | None): Customer to book the sale to; unknown or
            missing ids fall back to the first customer.
        when (datetime | None): Sale timestamp, defaulting to now (UTC).

    Returns:
        SaleRow: The committed sale.

    Raises:
        ValidationError: If the cart is empty, a quantity is not a positive
            whole number, or a catalog line asks for more than is in stock.
        MissingReferenceError: If no customer exists.
    """

    lines = tuple(_normalize_line(item) for item in items)
    if not lines:
        log.error("Checkout refused: cart is empty")
        raise ValidationError("cart is empty")
    customer = resolve_checkout_customer(context, customer_id)

    sold = _catalog_quantities(lines)
    for product in context.store.products:
        wanted = sold.get(product.product_id)
        if wanted is not None and wanted > product.stock:
            log.error("Checkout refused: %d x '%s' requested, %d in stock", wanted, product.code, product.stock)
            raise ValidationError(f"Insufficient stock for '{product.code}': {product.stock} available")

    timestamp = _resolve_timestamp(when)
    totals = pricing.cart_totals(lines)
    sale = SaleRow(
        sale_id=generate_id(prefix="S", when=timestamp),
        date=timestamp,
        items=lines,
        sub_total=totals.sub_total,
        tax_total=totals.tax_total,
        total=totals.total,
        customer_id=customer.customer_id,
        customer_name=customer.name,
        tax_id=customer.tax_number,
        is_invoiced=False,
    )

    products = [
        replace(product, stock=max(0, product.stock - sold[product.product_id]))
        if product.product_id in sold
        else product
        for product in context.store.products
    ]
    customers = [
        replace(row, total_purchases=row.total_purchases + sale.total)
        if row.customer_id == customer.customer_id
        else row
        for row in context.store.customers
    ]
    _commit(
        context,
        {
            CollectionKey.SALES: [sale, *context.store.sales],
            CollectionKey.PRODUCTS: products,
            CollectionKey.CUSTOMERS: customers,
        },
    )
    log.info(
        "Recorded sale '%s' for customer '%s' (lines=%d, total=%s)",
        sale.sale_id,
        customer.customer_id,
        len(lines),
        sale.total,
    )
    return sale


def cancel_sale(context: RuntimeContext, sale_id: str) -> SaleRow:
    """Cancel an uninvoiced sale and undo its effects.

    Stock is restored for every catalog line, the sale total is taken back
    off the customer's ``total_purchases`` (never below zero), and the sale is
    deleted outright; no cancelled record is kept.

    Returns:
        SaleRow: The sale that was removed.

    Raises:
        MissingReferenceError: If ``sale_id`` is unknown.
        AlreadyInvoicedError: If the sale has an invoice; nothing changes.
    """

    sale = get_sale(context, sale_id)
    if sale.is_invoiced:
        log.warning("Refused to cancel invoiced sale '%s'", sale_id)
        raise AlreadyInvoicedError("already invoiced, cannot cancel")

    returned = _catalog_quantities(sale.items)
    products = [
        replace(product, stock=product.stock + returned[product.product_id])
        if product.product_id in returned
        else product
        for product in context.store.products
    ]
    customers = [
        replace(row, total_purchases=max(Decimal("0.00"), row.total_purchases - sale.total))
        if row.customer_id == sale.customer_id
        else row
        for row in context.store.customers
    ]
    sales = [row for row in context.store.sales if row.sale_id != sale_id]
    _commit(
        context,
        {
            CollectionKey.SALES: sales,
            CollectionKey.PRODUCTS: products,
            CollectionKey.CUSTOMERS: customers,
        },
    )
    log.info("Cancelled sale '%s' (total=%s)", sale_id, sale.total)
    return sale


def issue_invoice(
    context: RuntimeContext,
    sale_id: str,
    *,
    when: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> InvoiceRow:
    """Issue the e-archive invoice for a sale and mark the sale invoiced.

    The invoice copies the sale's total and VAT and is created ``SIGNED``.
    There is no void or credit-note path; once invoiced, a sale can no longer
    be cancelled.

    Raises:
        MissingReferenceError: If ``sale_id`` is unknown.
        AlreadyInvoicedError: If the sale already has an invoice.
    """

    sale = get_sale(context, sale_id)
    if sale.is_invoiced:
        log.warning("Refused to invoice sale '%s' twice", sale_id)
        raise AlreadyInvoicedError(f"Sale {sale_id} is already invoiced")

    timestamp = _resolve_timestamp(when)
    invoice = InvoiceRow(
        invoice_id=generate_id(prefix="I", when=timestamp),
        sale_id=sale.sale_id,
        invoice_number=generate_invoice_number(when=timestamp, rng=rng),
        date=timestamp,
        total=sale.total,
        tax_total=sale.tax_total,
        status=InvoiceStatus.SIGNED,
    )
    sales = [replace(row, is_invoiced=True) if row.sale_id == sale_id else row for row in context.store.sales]
    _commit(
        context,
        {
            CollectionKey.INVOICES: [invoice, *context.store.invoices],
            CollectionKey.SALES: sales,
        },
    )
    log.info("Issued invoice '%s' for sale '%s'", invoice.invoice_number, sale_id)
    return invoice


def list_invoices(context: RuntimeContext) -> List[InvoiceRow]:
    """All invoices, newest first."""

    return sorted(context.store.invoices, key=lambda invoice: invoice.date, reverse=True)


def get_invoice_for_sale(context: RuntimeContext, sale_id: str) -> Optional[InvoiceRow]:
    for invoice in context.store.invoices:
        if invoice.sale_id == sale_id:
            return invoice
    return None


# ---------------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------------


def _expense_timestamp(value: Optional[date]) -> datetime:
    if value is None:
        return _resolve_timestamp(None)
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return datetime.combine(value, time.min, tzinfo=UTC)


def add_expense(context: RuntimeContext, command: ExpenseCommand, *, when: Optional[datetime] = None) -> ExpenseRow:
    """Record an operating expense.

    Raises:
        ValidationError: If the description is blank or the amount is not
            positive.
    """

    description = require_text(command.description, "description")
    amount = require_amount_in_range(command.amount, "amount")
    if amount <= 0:
        log.error("Expense amount validation failed: %s", command.amount)
        raise ValidationError("amount must be greater than zero")

    expense = ExpenseRow(
        expense_id=generate_id(prefix="E", when=_resolve_timestamp(when)),
        description=description,
        amount=pricing.quantize_money(amount),
        category=ExpenseCategory(command.category),
        date=_expense_timestamp(command.date),
        payment_method=PaymentMethod(command.payment_method),
    )
    _commit(context, {CollectionKey.EXPENSES: [*context.store.expenses, expense]})
    log.info("Recorded expense '%s' (%s, amount=%s)", expense.expense_id, expense.category.value, expense.amount)
    return expense


def delete_expense(context: RuntimeContext, expense_id: str) -> ExpenseRow:
    """Remove an expense record.

    Raises:
        MissingReferenceError: If ``expense_id`` is unknown.
    """

    for expense in context.store.expenses:
        if expense.expense_id == expense_id:
            break
    else:
        log.warning("Expense lookup failed for id '%s'", expense_id)
        raise MissingReferenceError(f"Unknown expense id: {expense_id}")

    expenses = [row for row in context.store.expenses if row.expense_id != expense_id]
    _commit(context, {CollectionKey.EXPENSES: expenses})
    log.info("Deleted expense '%s'", expense_id)
    return expense


def list_expenses(
    context: RuntimeContext,
    *,
    category: Optional[ExpenseCategory] = None,
    term: str = "",
) -> List[ExpenseRow]:
    """Expenses filtered by category and description text, newest first."""

    needle = (term or "").strip().lower()
    matches = [
        expense
        for expense in context.store.expenses
        if needle in expense.description.lower()
        and (category is None or expense.category == ExpenseCategory(category))
    ]
    return sorted(matches, key=lambda expense: expense.date, reverse=True)


def expense_total(expenses: Iterable[ExpenseRow]) -> Decimal:
    return sum((expense.amount for expense in expenses), Decimal("0.00"))


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "ValidationError",
    "ConsistencyError",
    "AlreadyInvoicedError",
    "DomainStore",
    "RuntimeContext",
    "ProductCommand",
    "CustomerCommand",
    "ExpenseCommand",
    "Cart",
    "load_runtime_context",
    "load_store",
    "ensure_schema_version",
    "persist_context",
    "refresh_context",
    "generate_id",
    "generate_invoice_number",
    "list_products",
    "get_product",
    "find_product_by_code",
    "search_products",
    "critical_products",
    "add_product",
    "update_product",
    "delete_product",
    "receive_stock",
    "list_customers",
    "get_customer",
    "search_customers",
    "add_customer",
    "walk_in_customer",
    "resolve_checkout_customer",
    "snapshot_product",
    "make_service_item",
    "list_sales",
    "get_sale",
    "sale_state",
    "uninvoiced_sales",
    "checkout",
    "cancel_sale",
    "issue_invoice",
    "list_invoices",
    "get_invoice_for_sale",
    "add_expense",
    "delete_expense",
    "list_expenses",
    "expense_total",
]
