"""Data access layer for BulutERP.

This module owns every read from and write to the master workbook. Each
persisted collection (products, customers, sales, invoices, expenses) lives
on its own sheet. Business rules belong elsewhere.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, refreshing, and persisting the Excel file.
3. Collection codecs: turning sheet rows into frozen records and back, with
   a best-effort ``load_collection``/``persist_collections`` pair that never
   raises to the caller.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.utils.exceptions import IllegalCharacterError
from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import CollectionKey, CustomerType, ExpenseCategory, InvoiceStatus, PaymentMethod


CONFIG_FILE_NAME = "config.ini"

SHEET_COLUMNS: Mapping[CollectionKey, Sequence[str]] = {
    CollectionKey.PRODUCTS: [
        "ProductID",
        "Code",
        "Name",
        "Price",
        "CostPrice",
        "Stock",
        "MinStockLevel",
    ],
    CollectionKey.CUSTOMERS: [
        "CustomerID",
        "Name",
        "Type",
        "TaxNumber",
        "ContactInfo",
        "TotalPurchases",
    ],
    CollectionKey.SALES: [
        "SaleID",
        "Date",
        "Items",
        "SubTotal",
        "TaxTotal",
        "Total",
        "CustomerID",
        "CustomerName",
        "TaxID",
        "IsInvoiced",
    ],
    CollectionKey.INVOICES: [
        "InvoiceID",
        "SaleID",
        "InvoiceNumber",
        "Date",
        "Total",
        "TaxTotal",
        "Status",
    ],
    CollectionKey.EXPENSES: [
        "ExpenseID",
        "Description",
        "Amount",
        "Category",
        "Date",
        "PaymentMethod",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    walk_in_customer_id: str


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    code: str
    name: str
    price: Decimal
    cost_price: Decimal
    stock: int
    min_stock_level: int

    @property
    def is_critical(self) -> bool:
        return self.stock <= self.min_stock_level


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    name: str
    customer_type: CustomerType
    tax_number: Optional[str]
    contact_info: str
    total_purchases: Decimal


@dataclass(frozen=True)
class CartItem:
    """Product snapshot frozen into a cart or sale line."""

    product_id: str
    code: str
    name: str
    price: Decimal
    cost_price: Decimal
    stock: int
    min_stock_level: int
    quantity: int
    is_service: bool = False


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    date: datetime
    items: tuple[CartItem, ...]
    sub_total: Decimal
    tax_total: Decimal
    total: Decimal
    customer_id: str
    customer_name: str
    tax_id: Optional[str] = None
    is_invoiced: bool = False


@dataclass(frozen=True)
class InvoiceRow:
    """In-memory view of a row from the ``Invoices`` sheet."""

    invoice_id: str
    sale_id: str
    invoice_number: str
    date: datetime
    total: Decimal
    tax_total: Decimal
    status: InvoiceStatus


@dataclass(frozen=True)
class ExpenseRow:
    """In-memory view of a row from the ``Expenses`` sheet."""

    expense_id: str
    description: str
    amount: Decimal
    category: ExpenseCategory
    date: datetime
    payment_method: PaymentMethod


@dataclass(frozen=True)
class SaveResult:
    """Outcome of a best-effort save; failures are reported, never raised."""

    ok: bool
    keys: tuple[str, ...] = field(default_factory=tuple)
    error: Optional[str] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The caller's path or the discovered configuration file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are anchored to ``base_path`` (normally the
    directory holding ``config.ini``) or to the working directory.

    Raises:
        KeyError: If one of the required sections or options is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        walk_in_customer_id = parser.get("Defaults", "WalkInCustomer")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw).expanduser()
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        walk_in_customer_id=walk_in_customer_id,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def load_collection(workbook: Workbook, key: CollectionKey, default: Optional[list] = None) -> list:
    """Decode every row of the sheet behind ``key``.

    This is the read half of the persistence contract: it never raises. A
    missing sheet, an unexpected header, or any row that fails to decode makes
    the whole collection fall back to ``default`` so callers never work with
    a partially read collection.

    Args:
        workbook (Workbook): Workbook holding the collection sheets.
        key (CollectionKey): Which collection to read.
        default (list | None): Value returned on missing or malformed data.
            ``None`` is replaced by a fresh empty list.

    Returns:
        list: Decoded records in sheet order, or ``default``.
    """

    fallback = [] if default is None else default
    sheet_name = key.sheet_name
    try:
        sheet = workbook[sheet_name]
    except KeyError:
        log.warning("Sheet '%s' missing; using default for '%s'", sheet_name, key.value)
        return fallback

    try:
        header = [cell.value for cell in sheet[1]]
        expected = list(SHEET_COLUMNS[key])
        if header[: len(expected)] != expected:
            log.warning("Sheet '%s' has unexpected header %s", sheet_name, header)
            return fallback
        decoder = _DECODERS[key]
        records = []
        for raw in sheet.iter_rows(min_row=2, max_col=len(expected), values_only=True):
            if any(cell is not None for cell in raw):
                records.append(decoder(raw))
    except (KeyError, ValueError, TypeError, ArithmeticError, IndexError) as exc:
        log.warning("Malformed data in sheet '%s'; using default: %s", sheet_name, exc)
        return fallback

    log.debug("Loaded %d records from '%s'", len(records), sheet_name)
    return records


def write_collection(workbook: Workbook, key: CollectionKey, records: Iterable[Any]) -> None:
    """Replace the body of the sheet behind ``key`` with ``records``.

    The header row is kept (or written when the sheet has to be created);
    every data row below it is rewritten from the serialized records. All
    records are serialized and checked first, so a record that cannot be
    stored leaves the sheet untouched.

    Raises:
        IllegalCharacterError: If a text value holds characters a worksheet
            cell cannot store.
    """

    encoder = _ENCODERS[key]
    rows = [encoder(record) for record in records]
    for row in rows:
        for value in row:
            if isinstance(value, str) and not is_storable_text(value):
                raise IllegalCharacterError(f"{value!r} cannot be used in worksheets.")

    sheet_name = key.sheet_name
    if sheet_name in workbook.sheetnames:
        sheet = workbook[sheet_name]
        if sheet.max_row > 1:
            sheet.delete_rows(2, sheet.max_row - 1)
    else:
        sheet = workbook.create_sheet(title=sheet_name)
        sheet.append(list(SHEET_COLUMNS[key]))

    for row_index, row in enumerate(rows, start=2):
        for column_index, value in enumerate(row, start=1):
            sheet.cell(row=row_index, column=column_index, value=value)


def is_storable_text(value: str) -> bool:
    """Whether ``value`` is free of control characters worksheets reject."""

    return ILLEGAL_CHARACTERS_RE.search(value) is None


def persist_collections(
    workbook: Workbook,
    destination: Path,
    collections: Mapping[CollectionKey, Iterable[Any]],
) -> SaveResult:
    """Write the given collections and save the workbook, best effort.

    This is the write half of the persistence contract. Storage failures are
    logged and reported through the returned :class:`SaveResult` instead of
    being raised, so the caller's in-memory state stays authoritative.
    """

    keys = tuple(key.value for key in collections)
    try:
        for key, records in collections.items():
            write_collection(workbook, key, records)
        save_workbook(workbook, destination)
    except (OSError, ValueError, TypeError, IllegalCharacterError) as exc:
        log.error("Failed to persist %s to '%s': %s", ", ".join(keys), destination, exc)
        return SaveResult(ok=False, keys=keys, error=str(exc))

    log.debug("Persisted %s to '%s'", ", ".join(keys), destination)
    return SaveResult(ok=True, keys=keys)


def serialize_product(record: ProductRow) -> list[object]:
    """Arrange a product as ``[ProductID, Code, Name, Price, CostPrice, Stock, MinStockLevel]``."""

    return [
        record.product_id,
        record.code,
        record.name,
        record.price,
        record.cost_price,
        record.stock,
        record.min_stock_level,
    ]


def serialize_customer(record: CustomerRow) -> list[object]:
    return [
        record.customer_id,
        record.name,
        record.customer_type.value,
        record.tax_number,
        record.contact_info,
        record.total_purchases,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale into the ``Sales`` column order.

    Line items are nested, so they are stored as a JSON array in the
    ``Items`` cell; see :func:`encode_items`.
    """

    return [
        record.sale_id,
        format_timestamp(record.date),
        encode_items(record.items),
        record.sub_total,
        record.tax_total,
        record.total,
        record.customer_id,
        record.customer_name,
        record.tax_id,
        record.is_invoiced,
    ]


def serialize_invoice(record: InvoiceRow) -> list[object]:
    return [
        record.invoice_id,
        record.sale_id,
        record.invoice_number,
        format_timestamp(record.date),
        record.total,
        record.tax_total,
        record.status.value,
    ]


def serialize_expense(record: ExpenseRow) -> list[object]:
    return [
        record.expense_id,
        record.description,
        record.amount,
        record.category.value,
        format_timestamp(record.date),
        record.payment_method.value,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Numeric cells become :class:`~decimal.Decimal` or ``int`` and identifier
    cells are coerced to ``str`` so values Excel turned into numbers still
    compare equal to their textual ids.
    """

    product_id, code, name, price, cost_price, stock, min_stock_level = raw_row[:7]
    return ProductRow(
        product_id=str(product_id),
        code=_text(code),
        name=_text(name),
        price=_decimal(price),
        cost_price=_decimal(cost_price),
        stock=_integer(stock),
        min_stock_level=_integer(min_stock_level),
    )


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    customer_id, name, customer_type, tax_number, contact_info, total_purchases = raw_row[:6]
    return CustomerRow(
        customer_id=str(customer_id),
        name=_text(name),
        customer_type=CustomerType(_text(customer_type) or CustomerType.INDIVIDUAL.value),
        tax_number=_optional_text(tax_number),
        contact_info=_text(contact_info),
        total_purchases=_decimal(total_purchases),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw ``Sales`` row, decoding the JSON ``Items`` cell.

    Raises:
        ValueError: If the items cell is not valid JSON or a timestamp cannot
            be parsed.
    """

    (
        sale_id,
        date,
        items,
        sub_total,
        tax_total,
        total,
        customer_id,
        customer_name,
        tax_id,
        is_invoiced,
    ) = raw_row[:10]
    return SaleRow(
        sale_id=str(sale_id),
        date=parse_timestamp(date),
        items=decode_items(items),
        sub_total=_decimal(sub_total),
        tax_total=_decimal(tax_total),
        total=_decimal(total),
        customer_id=_text(customer_id),
        customer_name=_text(customer_name),
        tax_id=_optional_text(tax_id),
        is_invoiced=_flag(is_invoiced),
    )


def deserialize_invoice(raw_row: Sequence[object]) -> InvoiceRow:
    invoice_id, sale_id, invoice_number, date, total, tax_total, status = raw_row[:7]
    return InvoiceRow(
        invoice_id=str(invoice_id),
        sale_id=_text(sale_id),
        invoice_number=_text(invoice_number),
        date=parse_timestamp(date),
        total=_decimal(total),
        tax_total=_decimal(tax_total),
        status=InvoiceStatus(_text(status)),
    )


def deserialize_expense(raw_row: Sequence[object]) -> ExpenseRow:
    expense_id, description, amount, category, date, payment_method = raw_row[:6]
    return ExpenseRow(
        expense_id=str(expense_id),
        description=_text(description),
        amount=_decimal(amount),
        category=ExpenseCategory(_text(category)),
        date=parse_timestamp(date),
        payment_method=PaymentMethod(_text(payment_method)),
    )


def encode_items(items: Iterable[CartItem]) -> str:
    """Serialize sale lines to a JSON array, keeping decimals as strings."""

    payload = []
    for item in items:
        entry = asdict(item)
        entry["price"] = str(item.price)
        entry["cost_price"] = str(item.cost_price)
        payload.append(entry)
    return json.dumps(payload, ensure_ascii=False)


def decode_items(raw: object) -> tuple[CartItem, ...]:
    """Rebuild sale lines from the JSON ``Items`` cell.

    Raises:
        ValueError: If ``raw`` is not a JSON array of line objects.
    """

    if raw is None or raw == "":
        return ()
    entries = json.loads(str(raw))
    if not isinstance(entries, list):
        raise ValueError("Sale items must be a JSON array")
    return tuple(
        CartItem(
            product_id=str(entry["product_id"]),
            code=_text(entry.get("code")),
            name=_text(entry.get("name")),
            price=_decimal(entry.get("price")),
            cost_price=_decimal(entry.get("cost_price")),
            stock=_integer(entry.get("stock")),
            min_stock_level=_integer(entry.get("min_stock_level")),
            quantity=_integer(entry.get("quantity")),
            is_service=bool(entry.get("is_service", False)),
        )
        for entry in entries
    )


def format_timestamp(moment: datetime) -> str:
    return moment.isoformat()


def parse_timestamp(raw: object) -> datetime:
    """Parse an ISO timestamp cell; naive values are taken as UTC.

    Raises:
        ValueError: If ``raw`` is empty or not ISO-8601.
    """

    if isinstance(raw, datetime):
        moment = raw
    elif raw is None or raw == "":
        raise ValueError("Missing timestamp")
    else:
        moment = datetime.fromisoformat(str(raw))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


def _decimal(raw: object) -> Decimal:
    return Decimal(str(raw)) if raw is not None and raw != "" else Decimal("0.00")


def _integer(raw: object) -> int:
    return int(Decimal(str(raw))) if raw is not None and raw != "" else 0


def _text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def _optional_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None and raw != "" else None


def _flag(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"true", "1", "yes"}
    return bool(raw)


_ENCODERS: Mapping[CollectionKey, Callable[[Any], list[object]]] = {
    CollectionKey.PRODUCTS: serialize_product,
    CollectionKey.CUSTOMERS: serialize_customer,
    CollectionKey.SALES: serialize_sale,
    CollectionKey.INVOICES: serialize_invoice,
    CollectionKey.EXPENSES: serialize_expense,
}

_DECODERS: Mapping[CollectionKey, Callable[[Sequence[object]], Any]] = {
    CollectionKey.PRODUCTS: deserialize_product,
    CollectionKey.CUSTOMERS: deserialize_customer,
    CollectionKey.SALES: deserialize_sale,
    CollectionKey.INVOICES: deserialize_invoice,
    CollectionKey.EXPENSES: deserialize_expense,
}
