"""Utility for initializing the BulutERP master workbook.

The module doubles as a script (``bulut-setup`` or
``python -m bulut_erp.setup_excel``) and as a library used by tests or other
tooling. Sheet layouts and row encodings come from
:mod:`bulut_erp.data_manager`, so a freshly created workbook always loads.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import List, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log, pricing
from .constants import (
    CollectionKey,
    CustomerType,
    ExpenseCategory,
    InvoiceStatus,
    PaymentMethod,
)
from .data_manager import CustomerRow, ExpenseRow, InvoiceRow, ProductRow, SaleRow

CONFIG_FILE = "config.ini"
WALK_IN_CUSTOMER_NAME = "PERAKENDE (HIZLI SATIŞ) WALK-IN"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path
    walk_in_customer_id: str


@dataclass(frozen=True)
class SeedData:
    products: List[ProductRow]
    customers: List[CustomerRow]
    sales: List[SaleRow]
    invoices: List[InvoiceRow]
    expenses: List[ExpenseRow]


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory, the same way the runtime does.
    """

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)
    return SetupSettings(
        data_file=settings.data_file,
        walk_in_customer_id=settings.walk_in_customer_id,
    )


def walk_in_customer(customer_id: str) -> CustomerRow:
    return CustomerRow(
        customer_id=customer_id,
        name=WALK_IN_CUSTOMER_NAME,
        customer_type=CustomerType.INDIVIDUAL,
        tax_number=None,
        contact_info="-",
        total_purchases=Decimal("0.00"),
    )


def demo_seed(walk_in_customer_id: str, *, now: Optional[datetime] = None) -> SeedData:
    """Sample shop: six products, three customers, two sales, one invoice, two expenses.

    Dates are relative to ``now`` so the demo always falls inside the default
    thirty-day report window.
    """

    now = now or datetime.now(UTC)
    day = timedelta(days=1)

    def product(product_id, code, name, price, cost, stock, minimum):
        return ProductRow(product_id, code, name, Decimal(price), Decimal(cost), stock, minimum)

    products = [
        product("1", "ELK-001", "Kablosuz Gaming Mouse", "1250.90", "800.00", 45, 10),
        product("2", "ELK-002", "Mekanik Klavye (RGB)", "2800.00", "1900.00", 8, 5),
        product("3", "ELK-003", '27" IPS Monitör', "6500.00", "4800.00", 12, 3),
        product("4", "MOB-101", "Ergonomik Ofis Koltuğu", "4200.50", "2500.00", 4, 2),
        product("5", "AKS-505", "USB-C Hub", "850.00", "400.00", 150, 20),
        product("6", "AKS-506", "Laptop Standı", "450.00", "200.00", 0, 15),
    ]

    def line(row: ProductRow, quantity: int) -> data_manager.CartItem:
        return data_manager.CartItem(
            product_id=row.product_id,
            code=row.code,
            name=row.name,
            price=row.price,
            cost_price=row.cost_price,
            stock=row.stock,
            min_stock_level=row.min_stock_level,
            quantity=quantity,
        )

    def sale(sale_id, when, items, customer, invoiced):
        totals = pricing.cart_totals(items)
        return SaleRow(
            sale_id=sale_id,
            date=when,
            items=tuple(items),
            sub_total=totals.sub_total,
            tax_total=totals.tax_total,
            total=totals.total,
            customer_id=customer.customer_id,
            customer_name=customer.name,
            tax_id=customer.tax_number,
            is_invoiced=invoiced,
        )

    customers = [
        walk_in_customer(walk_in_customer_id),
        CustomerRow("c2", "Ahmet Yılmaz", CustomerType.INDIVIDUAL, None, "555-123-4567", Decimal("0.00")),
        CustomerRow("c3", "Ayşe Demir", CustomerType.INDIVIDUAL, None, "555-987-6543", Decimal("0.00")),
    ]
    sales = [
        sale("s2", now - day, [line(products[4], 1)], customers[2], False),
        sale("s1", now - 2 * day, [line(products[0], 2)], customers[1], True),
    ]
    totals_by_customer = {row.customer_id: row.total for row in sales}
    customers = [
        replace(customer, total_purchases=totals_by_customer.get(customer.customer_id, customer.total_purchases))
        for customer in customers
    ]
    invoices = [
        InvoiceRow(
            invoice_id="inv1",
            sale_id="s1",
            invoice_number="GIB2024100523",
            date=sales[1].date,
            total=sales[1].total,
            tax_total=sales[1].tax_total,
            status=InvoiceStatus.SENT,
        )
    ]
    expenses = [
        ExpenseRow("ex1", "Monthly rent", Decimal("5000.00"), ExpenseCategory.RENT, now - 15 * day, PaymentMethod.BANK_TRANSFER),
        ExpenseRow("ex2", "Electricity bill", Decimal("450.00"), ExpenseCategory.UTILITIES, now - 5 * day, PaymentMethod.CREDIT_CARD),
    ]
    return SeedData(products=products, customers=customers, sales=sales, invoices=invoices, expenses=expenses)


def create_master_workbook(
    destination: Path,
    *,
    walk_in_customer_id: str,
    demo: bool = False,
    overwrite: bool = False,
) -> Path:
    """Create the BulutERP master workbook at ``destination``.

    Every collection gets its own sheet with a bold header row. The walk-in
    customer is always seeded; ``demo`` adds the sample shop from
    :func:`demo_seed`. When ``overwrite`` is ``False`` (the default) this
    function raises ``FileExistsError`` if the target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing master workbook: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # openpyxl always starts with a default "Sheet".
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for key, columns in data_manager.SHEET_COLUMNS.items():
        worksheet = workbook.create_sheet(title=key.sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    if demo:
        seed = demo_seed(walk_in_customer_id)
        collections = {
            CollectionKey.PRODUCTS: seed.products,
            CollectionKey.CUSTOMERS: seed.customers,
            CollectionKey.SALES: seed.sales,
            CollectionKey.INVOICES: seed.invoices,
            CollectionKey.EXPENSES: seed.expenses,
        }
    else:
        collections = {CollectionKey.CUSTOMERS: [walk_in_customer(walk_in_customer_id)]}

    for key, records in collections.items():
        data_manager.write_collection(workbook, key, records)

    workbook.save(destination)
    log.info("Created master workbook '%s' (demo=%s)", destination, demo)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False, demo: bool = False) -> Path:
    settings = load_settings(config_path)
    return create_master_workbook(
        settings.data_file,
        walk_in_customer_id=settings.walk_in_customer_id,
        demo=demo,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the BulutERP data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    parser.add_argument(
        "--demo",
        action="store_true",
        help="Seed the workbook with a sample catalog, customers, sales and expenses.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- BulutERP Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force, demo=args.demo)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
