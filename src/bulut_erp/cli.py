"""Command-line entry points for the BulutERP toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing results. Every sub-command declares the view it belongs
to and, where relevant, the capability it needs; :func:`dispatch_command`
checks both against the acting role before anything runs.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import advisor, core_logic, log, pricing, reports
from .access import AccessDeniedError, Capability, UserRole, ViewId, has_capability, require_capability, require_view
from .constants import EXPENSE_CATEGORY_LABELS, PAYMENT_METHOD_LABELS, CustomerType, ExpenseCategory, PaymentMethod
from .data_manager import CartItem

DEFAULT_REPORT_DAYS = 30


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured, gated, and executed."""

    name: str
    help_text: str
    view: ViewId
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    capability: Optional[Capability] = None


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="bulut-cli",
        description="Point-of-sale and bookkeeping tools for the BulutERP workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    parser.add_argument(
        "--role",
        type=UserRole,
        choices=list(UserRole),
        default=UserRole.ADMIN,
        metavar="{" + ",".join(role.value for role in UserRole) + "}",
        help="Role of the operator running the command (default: ADMIN).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as checkout and stock receipts."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "receive": register_receive_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "checkout": register_checkout_command(subparsers),
        "cancel-sale": register_cancel_sale_command(subparsers),
        "invoice": register_invoice_command(subparsers),
        "add-expense": register_add_expense_command(subparsers),
        "delete-expense": register_delete_expense_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "prices": register_prices_command(subparsers),
        "stock": register_stock_command(subparsers),
        "profit": register_profit_command(subparsers),
        "vat": register_vat_command(subparsers),
        "customers": register_customers_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
        "sales": register_sales_command(subparsers),
        "invoices": register_invoices_command(subparsers),
        "expenses": register_expenses_command(subparsers),
        "advisor-context": register_advisor_context_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_product_fields(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument("--code", required=required)
    parser.add_argument("--name", required=required)
    parser.add_argument("--price", required=required, help="Tax-exclusive sale price.")
    parser.add_argument("--cost-price", default=None, help="Tax-exclusive unit cost.")
    parser.add_argument("--stock", default=None)
    parser.add_argument("--min-stock", default=None)


def _add_date_window(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", type=date.fromisoformat, default=None, help="First day (YYYY-MM-DD).")
    parser.add_argument("--end", type=date.fromisoformat, default=None, help="Last day (YYYY-MM-DD).")


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add a product to the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_product_fields(parser, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        view=ViewId.INVENTORY,
        capability=Capability.EDIT_PRODUCT,
        register=registrar,
        execute=run_add_product,
    )


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Edit a catalog entry; omitted fields keep their current value."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        _add_product_fields(parser, required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        view=ViewId.INVENTORY,
        capability=Capability.EDIT_PRODUCT,
        register=registrar,
        execute=run_update_product,
    )


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Remove a product from the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        view=ViewId.INVENTORY,
        capability=Capability.DELETE_PRODUCT,
        register=registrar,
        execute=run_delete_product,
    )


def register_receive_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``receive``."""
    name = "receive"
    help_text = "Book a purchase receipt and re-average the unit cost."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--unit-cost", required=True, help="Tax-exclusive unit cost of the purchase.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        view=ViewId.INVENTORY,
        capability=Capability.EDIT_PRODUCT,
        register=registrar,
        execute=run_receive,
    )


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a customer account."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument(
            "--type",
            dest="customer_type",
            choices=[member.value for member in CustomerType],
            default=CustomerType.INDIVIDUAL.value,
        )
        parser.add_argument("--tax-number", default=None)
        parser.add_argument("--contact", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, view=ViewId.CUSTOMERS, register=registrar, execute=run_add_customer)


def register_checkout_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``checkout``."""
    name = "checkout"
    help_text = "Commit a sale from catalog items and service lines."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            default=[],
            metavar="CODE[=QTY]",
            help="Catalog product by code, optionally with a quantity (repeatable).",
        )
        parser.add_argument(
            "--service",
            dest="services",
            action="append",
            default=[],
            metavar="NAME=PRICE",
            help="Labour or service line with a tax-exclusive price (repeatable).",
        )
        parser.add_argument("--customer-id", default=None, help="Defaults to the walk-in customer.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, view=ViewId.SALES, register=registrar, execute=run_checkout)


def register_cancel_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cancel-sale``."""
    name = "cancel-sale"
    help_text = "Cancel an uninvoiced sale and restore its stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, view=ViewId.SALES, register=registrar, execute=run_cancel_sale)


def register_invoice_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoice``."""
    name = "invoice"
    help_text = "Issue the e-archive invoice for a sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--sale-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, view=ViewId.INVOICES, register=registrar, execute=run_invoice)


def register_add_expense_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-expense``."""
    name = "add-expense"
    help_text = "Record an operating expense."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--description", required=True)
        parser.add_argument("--amount", required=True, help="Amount including VAT.")
        parser.add_argument(
            "--category",
            choices=[member.value for member in ExpenseCategory],
            default=ExpenseCategory.OTHER.value,
        )
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.BANK_TRANSFER.value,
        )
        parser.add_argument("--date", type=date.fromisoformat, default=None, help="Defaults to today.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, view=ViewId.EXPENSES, register=registrar, execute=run_add_expense)


def register_delete_expense_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-expense``."""
    name = "delete-expense"
    help_text = "Remove an expense record."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--expense-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(
        name=name,
        help_text=help_text,
        view=ViewId.EXPENSES,
        register=registrar,
        execute=run_delete_expense,
    )


def register_prices_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``prices``."""
    name = "prices"
    help_text = "Show sale prices with and without VAT."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default="", help="Filter by name or code.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, view=ViewId.VIEW_PRICES, register=registrar, execute=run_prices)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels and their value."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--critical", action="store_true", help="Only products at or below minimum stock.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, view=ViewId.INVENTORY, register=registrar, execute=run_stock_report)


def register_profit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``profit``."""
    name = "profit"
    help_text = "Display revenue, cost of goods, expenses and profit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_date_window(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, view=ViewId.REPORTS, register=registrar, execute=run_profit_report)


def register_vat_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``vat``."""
    name = "vat"
    help_text = "Display the monthly VAT balance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, view=ViewId.REPORTS, register=registrar, execute=run_vat_report)


def register_customers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``customers``."""
    name = "customers"
    help_text = "List customer totals, or one customer's statement."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", default=None, help="Show the statement of this customer.")
        _add_date_window(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, view=ViewId.CUSTOMERS, register=registrar, execute=run_customers_report)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display headline figures."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, view=ViewId.DASHBOARD, register=registrar, execute=run_dashboard)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List recorded sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--uninvoiced", action="store_true", help="Only sales awaiting an invoice.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, view=ViewId.SALES, register=registrar, execute=run_sales_report)


def register_invoices_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``invoices``."""
    name = "invoices"
    help_text = "List issued invoices."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, view=ViewId.INVOICES, register=registrar, execute=run_invoices_report)


def register_expenses_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``expenses``."""
    name = "expenses"
    help_text = "List expenses and their total."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category", choices=[member.value for member in ExpenseCategory], default=None)
        parser.add_argument("--search", default="")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, view=ViewId.EXPENSES, register=registrar, execute=run_expenses_report)


def register_advisor_context_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``advisor-context``."""
    name = "advisor-context"
    help_text = "Print the shop summary handed to the business advisor."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, view=ViewId.DASHBOARD, register=registrar, execute=run_advisor_context)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations and check its schema."""
    context = core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Check the acting role, then run the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    role = getattr(args, "role", UserRole.ADMIN)
    require_view(role, spec.view)
    if spec.capability is not None:
        require_capability(role, spec.capability)
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def format_money(value: Decimal) -> str:
    return f"{pricing.quantize_money(value):,.2f}"


def can_see_cost(args: argparse.Namespace) -> bool:
    return has_capability(getattr(args, "role", UserRole.ADMIN), Capability.VIEW_COST_PRICE)


def report_window(args: argparse.Namespace) -> reports.DateRange:
    """Date window from ``--start``/``--end``; the last 30 days by default."""
    default = reports.DateRange.last_days(DEFAULT_REPORT_DAYS)
    return reports.DateRange(start=args.start or default.start, end=args.end or default.end)


def translate_product(args: argparse.Namespace) -> core_logic.ProductCommand:
    """Translate CLI args into a product command object."""
    return core_logic.ProductCommand(
        code=args.code,
        name=args.name,
        price=args.price,
        cost_price=args.cost_price,
        stock=args.stock,
        min_stock_level=args.min_stock,
    )


def translate_product_update(
    args: argparse.Namespace,
    current: core_logic.ProductRow,
) -> core_logic.ProductCommand:
    """Merge the supplied CLI args over the current product values."""

    def pick(supplied, existing):
        return existing if supplied is None else supplied

    return core_logic.ProductCommand(
        code=pick(args.code, current.code),
        name=pick(args.name, current.name),
        price=pick(args.price, current.price),
        cost_price=pick(args.cost_price, current.cost_price),
        stock=pick(args.stock, current.stock),
        min_stock_level=pick(args.min_stock, current.min_stock_level),
    )


def translate_customer(args: argparse.Namespace) -> core_logic.CustomerCommand:
    """Translate CLI args into a customer command object."""
    return core_logic.CustomerCommand(
        name=args.name,
        customer_type=CustomerType(args.customer_type),
        tax_number=args.tax_number,
        contact_info=args.contact,
    )


def translate_expense(args: argparse.Namespace) -> core_logic.ExpenseCommand:
    """Translate CLI args into an expense command object."""
    return core_logic.ExpenseCommand(
        description=args.description,
        amount=args.amount,
        category=ExpenseCategory(args.category),
        payment_method=PaymentMethod(args.payment_method),
        date=args.date,
    )


def translate_checkout(context: core_logic.RuntimeContext, args: argparse.Namespace) -> List[CartItem]:
    """Turn ``--item`` and ``--service`` values into cart lines.

    Raises:
        ValidationError: If a value is malformed.
        MissingReferenceError: If a product code is unknown.
    """
    lines: List[CartItem] = []
    for raw in args.items:
        code, _, quantity = raw.partition("=")
        product = core_logic.find_product_by_code(context, code)
        lines.append(
            core_logic.snapshot_product(
                product,
                core_logic.require_whole_number(quantity or 1, "quantity", minimum=1),
            )
        )
    for raw in args.services:
        label, separator, price = raw.rpartition("=")
        if not separator:
            raise core_logic.ValidationError(f"Service must look like NAME=PRICE: {raw}")
        lines.append(core_logic.make_service_item(label, price))
    return lines


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, translate_product(args))
    print(f"Added product {product.code} ({product.product_id}).")
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow in the BLL."""
    current = core_logic.get_product(context, args.product_id)
    product = core_logic.update_product(context, args.product_id, translate_product_update(args, current))
    print(f"Updated product {product.code} ({product.product_id}).")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow in the BLL."""
    product = core_logic.delete_product(context, args.product_id)
    print(f"Deleted product {product.code} ({product.product_id}).")
    return 0


def run_receive(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase receipt workflow in the BLL."""
    product = core_logic.receive_stock(context, args.product_id, args.quantity, args.unit_cost)
    message = f"Received stock for {product.code}; now {product.stock} in stock"
    if can_see_cost(args):
        message += f" at unit cost {format_money(product.cost_price)}"
    print(message + ".")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    customer = core_logic.add_customer(context, translate_customer(args))
    print(f"Added customer {customer.name} ({customer.customer_id}).")
    return 0


def run_checkout(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the checkout workflow in the BLL."""
    lines = translate_checkout(context, args)
    customer_id = args.customer_id
    if customer_id is None:
        walk_in = core_logic.walk_in_customer(context)
        customer_id = walk_in.customer_id if walk_in is not None else None
    sale = core_logic.checkout(context, lines, customer_id)
    print(f"Sale {sale.sale_id} for {sale.customer_name}")
    print(f"  Subtotal: {format_money(sale.sub_total)}")
    print(f"  VAT:      {format_money(sale.tax_total)}")
    print(f"  Total:    {format_money(sale.total)}")
    return 0


def run_cancel_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale cancellation workflow in the BLL."""
    sale = core_logic.cancel_sale(context, args.sale_id)
    print(f"Cancelled sale {sale.sale_id} ({format_money(sale.total)}).")
    return 0


def run_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the invoicing workflow in the BLL."""
    invoice = core_logic.issue_invoice(context, args.sale_id)
    print(f"Issued invoice {invoice.invoice_number} for sale {invoice.sale_id} ({format_money(invoice.total)}).")
    return 0


def run_add_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-expense workflow in the BLL."""
    expense = core_logic.add_expense(context, translate_expense(args))
    print(f"Recorded expense {expense.expense_id} ({format_money(expense.amount)}).")
    return 0


def run_delete_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-expense workflow in the BLL."""
    expense = core_logic.delete_expense(context, args.expense_id)
    print(f"Deleted expense {expense.expense_id}.")
    return 0


def run_prices(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the price-check list."""
    for line in reports.price_list(core_logic.search_products(context, args.search)):
        print(
            f"{line.code:<10} {line.name:<30} {format_money(line.price):>12} "
            f"+VAT {format_money(line.vat):>10} = {format_money(line.price_with_vat):>12}  stock {line.stock}"
        )
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print stock levels; cost figures only for roles allowed to see them."""
    products = core_logic.list_products(context)
    if args.critical:
        products = core_logic.critical_products(products)
    show_cost = can_see_cost(args)
    valuation = reports.stock_valuation(products)
    for product, line in zip(products, valuation.lines):
        flag = " CRITICAL" if product.is_critical else ""
        row = f"{product.code:<10} {product.name:<30} {product.stock:>6} (min {product.min_stock_level}){flag}"
        if show_cost:
            row += f"  cost {format_money(product.cost_price)}  value {format_money(line.cost_value)}"
        print(row)
    print(f"Stock value at sale price: {format_money(valuation.total_sale_value)}")
    if show_cost:
        print(f"Stock value at cost:       {format_money(valuation.total_cost_value)}")
    return 0


def run_profit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print profitability for the requested window."""
    summary = reports.sales_report(context.store.sales, context.store.expenses, report_window(args))
    print(f"Period:        {summary.date_range.start} .. {summary.date_range.end}")
    print(f"Sales:         {len(summary.sales)}")
    print(f"Revenue:       {format_money(summary.revenue)}")
    print(f"Cost of goods: {format_money(summary.cogs)}")
    print(f"Gross profit:  {format_money(summary.gross_profit)}")
    print(f"Expenses:      {format_money(summary.expense_total)}")
    print(f"Net profit:    {format_money(summary.net_profit)}")
    return 0


def run_vat_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the monthly VAT balance."""
    for month in reports.monthly_vat_balance(context.store.sales):
        print(
            f"{month.month}  output {format_money(month.output):>12}  input {format_money(month.input):>12}  "
            f"balance {format_money(month.balance):>12}  {month.label.value}"
        )
    return 0


def run_customers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print all customer totals or a single customer's statement."""
    if args.customer_id is None:
        for customer, total in reports.customer_totals(core_logic.list_customers(context)):
            print(f"{customer.customer_id:<24} {customer.name:<32} {format_money(total):>12}")
        return 0

    customer = core_logic.get_customer(context, args.customer_id)
    statement = reports.customer_statement(customer, context.store.sales, report_window(args))
    print(f"Statement for {customer.name} ({statement.date_range.start} .. {statement.date_range.end})")
    for sale in statement.sales:
        status = "invoiced" if sale.is_invoiced else "open"
        print(f"  {sale.date:%Y-%m-%d}  {sale.sale_id:<24} {format_money(sale.total):>12}  {status}")
    print(f"Total: {format_money(statement.total)}")
    return 0


def run_dashboard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the dashboard figures."""
    summary = reports.dashboard_summary(context.store.products, context.store.sales)
    print(f"Total revenue:  {format_money(summary.total_revenue)}")
    print(f"Total stock:    {summary.total_stock}")
    print(f"Critical stock: {summary.critical_count}")
    print(f"Orders:         {summary.order_count}")
    for day in summary.recent_days:
        print(f"  {day.day.isoformat()}  {format_money(day.total):>12}")
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print recorded sales, newest first."""
    sales = core_logic.uninvoiced_sales(context) if args.uninvoiced else core_logic.list_sales(context)
    for sale in sales:
        print(
            f"{sale.date:%Y-%m-%d %H:%M}  {sale.sale_id:<24} {sale.customer_name:<30} "
            f"{format_money(sale.total):>12}  {core_logic.sale_state(sale).value}"
        )
    return 0


def run_invoices_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print issued invoices, newest first."""
    for invoice in core_logic.list_invoices(context):
        print(
            f"{invoice.date:%Y-%m-%d}  {invoice.invoice_number:<16} sale {invoice.sale_id:<24} "
            f"{format_money(invoice.total):>12}  {invoice.status.value}"
        )
    return 0


def run_expenses_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print expenses, newest first, and their total."""
    category = ExpenseCategory(args.category) if args.category else None
    expenses = core_logic.list_expenses(context, category=category, term=args.search)
    for expense in expenses:
        print(
            f"{expense.date:%Y-%m-%d}  {expense.description:<30} {EXPENSE_CATEGORY_LABELS[expense.category]:<14} "
            f"{PAYMENT_METHOD_LABELS[expense.payment_method]:<14} {format_money(expense.amount):>12}"
        )
    print(f"Total: {format_money(core_logic.expense_total(expenses))}")
    return 0


def run_advisor_context(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the advisor's JSON summary of the shop."""
    print(advisor.build_advisor_context(context.store.products, context.store.sales))
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, AccessDeniedError):
        log.error("%s", error)
        return 4
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def report_save_outcome(context: core_logic.RuntimeContext) -> None:
    """Warn when the last mutation could not be written to the workbook."""
    outcome = context.store.last_save
    if outcome is not None and not outcome.ok:
        print(f"Warning: changes were applied but could not be saved: {outcome.error}")


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        report_save_outcome(context)
        return exit_code
    except Exception as error:  # noqa: BLE001
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
