"""Unit tests verifying the business logic layer with a mocked data access layer."""

from __future__ import annotations

import random
from dataclasses import replace
from datetime import UTC, date, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from bulut_erp import constants, core_logic, data_manager
from bulut_erp.constants import CollectionKey
from conftest import make_customer, make_product


def _cart_lines(context, *pairs):
    """Snapshot catalog products into cart lines: ``("P1", 2), ...``."""

    return [core_logic.snapshot_product(core_logic.get_product(context, pid), qty) for pid, qty in pairs]


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings, workbook and store."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "master.xlsx",
        store_name="Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        walk_in_customer_id="c1",
    )
    workbook = Mock(name="workbook")
    products = [make_product()]

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)
    load_collection = Mock(side_effect=lambda wb, key, default: products if key is CollectionKey.PRODUCTS else default)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)
    monkeypatch.setattr(data_manager, "load_collection", load_collection)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    assert context.store.products == products
    assert context.store.sales == []
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)
    assert load_collection.call_count == len(CollectionKey)


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_settings = replace(context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, workbook=context.workbook)
    with pytest.raises(RuntimeError, match="schema mismatch"):
        core_logic.ensure_schema_version(bad_context)


def test_generate_id_uses_prefix_and_timestamp():
    """Identifiers are the prefix followed by a microsecond timestamp."""

    moment = datetime(2024, 10, 5, 9, 30, 15, 123456, tzinfo=UTC)
    assert core_logic.generate_id(prefix="S", when=moment) == "S20241005093015123456"


def test_generate_invoice_number_format():
    """Invoice numbers are GIB + year + six zero-padded digits."""

    rng = Mock(spec=random.Random)
    rng.randrange.return_value = 42

    number = core_logic.generate_invoice_number(when=datetime(2024, 1, 2, tzinfo=UTC), rng=rng)

    assert number == "GIB2024000042"
    rng.randrange.assert_called_once_with(1_000_000)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


def test_add_product_normalizes_and_persists(context, persist_spy):
    """New products get an upper-case code and only the catalog is saved."""

    command = core_logic.ProductCommand(code=" mob-101 ", name="Office Chair", price="4200.50", cost_price="2500", stock="4", min_stock_level=2)

    product = core_logic.add_product(context, command)

    assert product.code == "MOB-101"
    assert product.price == Decimal("4200.50")
    assert product.stock == 4
    assert context.store.products[-1] == product
    written = persist_spy.call_args.args[2]
    assert list(written) == [CollectionKey.PRODUCTS]


def test_add_product_rejects_duplicate_code(context, persist_spy):
    """Codes are unique regardless of case."""

    before = list(context.store.products)
    with pytest.raises(core_logic.ValidationError, match="already in use"):
        core_logic.add_product(context, core_logic.ProductCommand(code="elk-001", name="Clone", price=1))

    assert context.store.products == before
    persist_spy.assert_not_called()


def test_add_product_rejects_unstorable_text(context, persist_spy):
    """Control characters are refused before the store changes."""

    before = list(context.store.products)
    with pytest.raises(core_logic.ValidationError, match="cannot be stored"):
        core_logic.add_product(context, core_logic.ProductCommand(code="X1", name="Bad\x01name", price="5"))

    assert context.store.products == before
    persist_spy.assert_not_called()


def test_add_customer_rejects_unstorable_contact_info(context, persist_spy):
    """Optional customer text is checked the same way as required text."""

    with pytest.raises(core_logic.ValidationError):
        core_logic.add_customer(context, core_logic.CustomerCommand(name="Ayse", contact_info="555\x00123"))

    assert len(context.store.customers) == 2
    persist_spy.assert_not_called()


@pytest.mark.parametrize(
    "command",
    [
        core_logic.ProductCommand(code="NEW-1", name="  ", price=1),
        core_logic.ProductCommand(code="NEW-1", name="Huge", price="1e30"),
        core_logic.ProductCommand(code="NEW-1", name="Huge stock", price=1, stock="1e20"),
        core_logic.ProductCommand(code="", name="Thing", price=1),
        core_logic.ProductCommand(code="NEW-1", name="Thing", price="-1"),
        core_logic.ProductCommand(code="NEW-1", name="Thing", price=1, stock="1.5"),
    ],
)
def test_add_product_rejects_invalid_input(context, command):
    """Blank required fields and bad numbers are refused."""

    with pytest.raises(core_logic.ValidationError):
        core_logic.add_product(context, command)


def test_update_product_replaces_fields_in_place(context):
    """Editing keeps the id and position of the product."""

    command = core_logic.ProductCommand(code="ELK-001", name="Wireless Mouse", price="110", cost_price="60", stock=10, min_stock_level=3)

    updated = core_logic.update_product(context, "P1", command)

    assert updated.product_id == "P1"
    assert context.store.products[0].name == "Wireless Mouse"
    assert context.store.products[0].min_stock_level == 3


def test_update_product_unknown_id_raises(context):
    """Editing a missing product raises MissingReferenceError."""

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.update_product(context, "nope", core_logic.ProductCommand(code="X", name="Y", price=1))


def test_delete_product_removes_it(context):
    """Deleted products disappear from the catalog."""

    removed = core_logic.delete_product(context, "P2")

    assert removed.code == "AKS-505"
    assert [product.product_id for product in context.store.products] == ["P1"]


def test_receive_stock_applies_weighted_average(context):
    """Receiving 5 at 130 on top of 10 at 100 gives 15 at 110.00."""

    context.store.products[0] = replace(context.store.products[0], stock=10, cost_price=Decimal("100"))

    product = core_logic.receive_stock(context, "P1", 5, "130")

    assert product.stock == 15
    assert product.cost_price == Decimal("110.00")
    assert core_logic.get_product(context, "P1") == product


def test_receive_stock_rejects_zero_quantity(context):
    """A zero receipt is invalid and changes nothing."""

    before = list(context.store.products)
    with pytest.raises(core_logic.ValidationError, match="invalid quantity"):
        core_logic.receive_stock(context, "P1", 0, "10")
    assert context.store.products == before


def test_critical_products_counts_stock_at_or_below_minimum():
    """Stock equal to the minimum is already critical."""

    products = [make_product("A", stock=5, min_stock_level=5), make_product("B", stock=6, min_stock_level=5)]

    assert [product.product_id for product in core_logic.critical_products(products)] == ["A"]


def test_search_products_matches_name_or_code(context):
    """Search is case-insensitive over name and code."""

    assert [p.product_id for p in core_logic.search_products(context, "usb")] == ["P2"]
    assert [p.product_id for p in core_logic.search_products(context, "elk-")] == ["P1"]
    assert len(core_logic.search_products(context, "")) == 2


def test_find_product_by_code_unknown_raises(context):
    """Unknown SKUs raise MissingReferenceError."""

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.find_product_by_code(context, "ZZZ-999")


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------


def test_add_customer_starts_with_zero_purchases(context):
    """New customers have no purchase history."""

    customer = core_logic.add_customer(
        context,
        core_logic.CustomerCommand(name="Acme Ltd", customer_type=constants.CustomerType.CORPORATE, tax_number=" 1234567890 "),
    )

    assert customer.total_purchases == Decimal("0.00")
    assert customer.tax_number == "1234567890"
    assert context.store.customers[-1] == customer


def test_add_customer_requires_name(context):
    """A blank customer name is refused."""

    with pytest.raises(core_logic.ValidationError):
        core_logic.add_customer(context, core_logic.CustomerCommand(name=""))


def test_resolve_checkout_customer_falls_back_to_first(context):
    """Unknown ids book the sale to the first customer."""

    assert core_logic.resolve_checkout_customer(context, "ghost").customer_id == "c1"
    assert core_logic.resolve_checkout_customer(context, None).customer_id == "c1"
    assert core_logic.resolve_checkout_customer(context, "c2").customer_id == "c2"


def test_walk_in_customer_prefers_configured_id(context):
    """The configured walk-in id wins; otherwise the name marker is used."""

    assert core_logic.walk_in_customer(context).customer_id == "c1"

    other = core_logic.RuntimeContext(
        settings=replace(context.settings, walk_in_customer_id="missing"),
        workbook=context.workbook,
        store=core_logic.DomainStore(customers=[make_customer("x", name="Someone"), make_customer("y", name="Shop walk-in")]),
    )
    assert core_logic.walk_in_customer(other).customer_id == "y"


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------


def test_cart_add_product_merges_and_caps_at_stock():
    """Adding the same product increments its line but never beyond stock."""

    cart = core_logic.Cart()
    product = make_product(stock=2)

    cart.add_product(product)
    cart.add_product(product)
    line = cart.add_product(product)

    assert len(cart) == 1
    assert line.quantity == 2


def test_cart_add_product_rejects_out_of_stock():
    """Products with no stock cannot be added."""

    with pytest.raises(core_logic.ValidationError, match="out of stock"):
        core_logic.Cart().add_product(make_product(stock=0))


def test_cart_update_quantity_floors_at_one_and_caps_at_stock():
    """Quantities stay between one and the captured stock."""

    cart = core_logic.Cart()
    cart.add_product(make_product("P1", stock=3))

    assert cart.update_quantity("P1", -5).quantity == 1
    assert cart.update_quantity("P1", 2).quantity == 3
    assert cart.update_quantity("P1", 1).quantity == 3


def test_cart_service_line_has_no_cost_and_virtual_stock(set_fixed_datetime):
    """Service lines carry a synthetic id, zero cost and unlimited stock."""

    set_fixed_datetime(datetime(2024, 10, 5, 12, 0, tzinfo=UTC))
    cart = core_logic.Cart()

    line = cart.add_service("Installation", "150")

    assert line.is_service is True
    assert line.product_id.startswith(constants.SERVICE_ID_PREFIX)
    assert line.code == constants.SERVICE_ITEM_CODE
    assert line.cost_price == Decimal("0.00")
    assert line.stock == constants.SERVICE_VIRTUAL_STOCK
    assert cart.update_quantity(line.product_id, 20).quantity == 21


@pytest.mark.parametrize("name, price", [("", "10"), ("Repair", "0"), ("Repair", "-5")])
def test_cart_add_service_validates_input(name, price):
    """Services need a name and a positive price."""

    with pytest.raises(core_logic.ValidationError):
        core_logic.Cart().add_service(name, price)


def test_cart_totals_and_clear():
    """Cart totals follow the pricing engine; clear empties the cart."""

    cart = core_logic.Cart()
    cart.add_product(make_product("P1", price="100"))
    cart.add_product(make_product("P1", price="100"))
    cart.add_product(make_product("P2", code="AKS-505", price="50"))

    assert cart.totals().total == Decimal("300.00")
    cart.remove("P2")
    assert cart.totals().sub_total == Decimal("200.00")
    cart.clear()
    assert cart.is_empty()


# ---------------------------------------------------------------------------
# Sale lifecycle
# ---------------------------------------------------------------------------


def test_checkout_commits_sale_stock_and_customer_together(context, persist_spy, set_fixed_datetime):
    """A sale decrements stock, credits the customer and is stored first."""

    moment = set_fixed_datetime(datetime(2024, 10, 5, 9, 30, tzinfo=UTC))
    context.store.sales.append(
        data_manager.SaleRow("S-old", datetime(2024, 10, 1, tzinfo=UTC), (), Decimal("0"), Decimal("0"), Decimal("0"), "c1", "Walk-in")
    )

    sale = core_logic.checkout(context, _cart_lines(context, ("P1", 2), ("P2", 1)), "c2")

    assert sale.sale_id == "S20241005093000000000"
    assert sale.date == moment
    assert (sale.sub_total, sale.tax_total, sale.total) == (Decimal("250.00"), Decimal("50.00"), Decimal("300.00"))
    assert sale.customer_name == "Ahmet Yilmaz"
    assert sale.is_invoiced is False
    assert context.store.sales[0] == sale
    assert core_logic.get_product(context, "P1").stock == 8
    assert core_logic.get_product(context, "P2").stock == 2
    assert core_logic.get_customer(context, "c2").total_purchases == Decimal("300.00")
    persist_spy.assert_called_once()
    assert set(persist_spy.call_args.args[2]) == {CollectionKey.SALES, CollectionKey.PRODUCTS, CollectionKey.CUSTOMERS}


def test_checkout_service_lines_do_not_touch_stock(context):
    """Service lines are sold without any stock movement."""

    before = list(context.store.products)
    service = core_logic.make_service_item("Setup", "80")

    sale = core_logic.checkout(context, [service], "c1")

    assert sale.total == Decimal("96.00")
    assert context.store.products == before


def test_checkout_empty_cart_is_rejected(context, persist_spy):
    """An empty cart cannot be checked out."""

    with pytest.raises(core_logic.ValidationError, match="empty"):
        core_logic.checkout(context, [], "c1")
    assert context.store.sales == []
    persist_spy.assert_not_called()


def test_checkout_rejects_quantity_above_stock(context, persist_spy):
    """Asking for more than is on hand leaves every collection untouched."""

    products = list(context.store.products)
    customers = list(context.store.customers)

    with pytest.raises(core_logic.ValidationError, match="Insufficient stock"):
        core_logic.checkout(context, _cart_lines(context, ("P1", 1), ("P2", 4)), "c2")

    assert context.store.products == products
    assert context.store.customers == customers
    assert context.store.sales == []
    persist_spy.assert_not_called()


def test_checkout_without_customers_is_rejected(context):
    """With no customer at all the sale cannot be booked."""

    context.store.customers.clear()
    with pytest.raises(core_logic.MissingReferenceError, match="no customer available"):
        core_logic.checkout(context, _cart_lines(context, ("P1", 1)), None)


def test_checkout_then_cancel_restores_state(context):
    """Cancelling an uninvoiced sale undoes stock and customer totals exactly."""

    products = list(context.store.products)
    customers = list(context.store.customers)

    sale = core_logic.checkout(context, _cart_lines(context, ("P1", 3), ("P2", 3)), "c2")
    removed = core_logic.cancel_sale(context, sale.sale_id)

    assert removed == sale
    assert context.store.products == products
    assert context.store.customers == customers
    assert context.store.sales == []


def test_cancel_invoiced_sale_is_rejected_and_changes_nothing(context):
    """Invoiced sales cannot be cancelled."""

    sale = core_logic.checkout(context, _cart_lines(context, ("P1", 1)), "c2")
    core_logic.issue_invoice(context, sale.sale_id)
    snapshot = (list(context.store.products), list(context.store.customers), list(context.store.sales))

    with pytest.raises(core_logic.AlreadyInvoicedError, match="already invoiced, cannot cancel"):
        core_logic.cancel_sale(context, sale.sale_id)

    assert (context.store.products, context.store.customers, context.store.sales) == snapshot


def test_cancel_unknown_sale_raises(context):
    """Unknown sale ids raise MissingReferenceError."""

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.cancel_sale(context, "S-missing")


def test_issue_invoice_creates_signed_invoice_once(context, persist_spy):
    """Invoicing copies the totals, flips the sale, and cannot be repeated."""

    sale = core_logic.checkout(context, _cart_lines(context, ("P2", 1)), "c1")
    rng = random.Random(7)

    invoice = core_logic.issue_invoice(context, sale.sale_id, when=datetime(2024, 11, 1, tzinfo=UTC), rng=rng)

    assert invoice.status is constants.InvoiceStatus.SIGNED
    assert invoice.sale_id == sale.sale_id
    assert invoice.total == sale.total
    assert invoice.tax_total == sale.tax_total
    assert invoice.invoice_number.startswith("GIB2024")
    assert len(invoice.invoice_number) == 13
    assert core_logic.get_sale(context, sale.sale_id).is_invoiced is True
    assert core_logic.get_invoice_for_sale(context, sale.sale_id) == invoice
    assert set(persist_spy.call_args.args[2]) == {CollectionKey.INVOICES, CollectionKey.SALES}

    with pytest.raises(core_logic.AlreadyInvoicedError):
        core_logic.issue_invoice(context, sale.sale_id)
    assert len(context.store.invoices) == 1


def test_sale_state_and_uninvoiced_sales(context):
    """Only committed, uninvoiced sales are pending."""

    first = core_logic.checkout(context, _cart_lines(context, ("P1", 1)), "c1", when=datetime(2024, 10, 1, tzinfo=UTC))
    second = core_logic.checkout(context, _cart_lines(context, ("P1", 1)), "c1", when=datetime(2024, 10, 2, tzinfo=UTC))
    core_logic.issue_invoice(context, first.sale_id)

    assert core_logic.sale_state(core_logic.get_sale(context, first.sale_id)) is constants.SaleState.INVOICED
    assert core_logic.sale_state(second) is constants.SaleState.COMMITTED
    assert [sale.sale_id for sale in core_logic.uninvoiced_sales(context)] == [second.sale_id]


def test_storage_failure_keeps_in_memory_change(context, monkeypatch):
    """A failed save is recorded but the sale still stands."""

    failure = data_manager.SaveResult(ok=False, keys=("sales", "products", "customers"), error="quota exceeded")
    monkeypatch.setattr(data_manager, "persist_collections", Mock(return_value=failure))

    sale = core_logic.checkout(context, _cart_lines(context, ("P1", 1)), "c1")

    assert context.store.sales == [sale]
    assert core_logic.get_product(context, "P1").stock == 9
    assert context.store.last_save == failure


# ---------------------------------------------------------------------------
# Expenses
# ---------------------------------------------------------------------------


def test_add_expense_records_date_and_enums(context):
    """Expenses default to a bank transfer in the OTHER category."""

    expense = core_logic.add_expense(
        context,
        core_logic.ExpenseCommand(description="Stationery", amount="45.5", date=date(2024, 10, 3)),
    )

    assert expense.amount == Decimal("45.50")
    assert expense.category is constants.ExpenseCategory.OTHER
    assert expense.payment_method is constants.PaymentMethod.BANK_TRANSFER
    assert expense.date == datetime(2024, 10, 3, tzinfo=UTC)


@pytest.mark.parametrize("description, amount", [("", "10"), ("Rent", "0"), ("Rent", "abc"), ("Rent", "1e30"), ("Bad\x02rent", "10")])
def test_add_expense_validates_input(context, description, amount):
    """Expenses need a description and a positive amount."""

    with pytest.raises(core_logic.ValidationError):
        core_logic.add_expense(context, core_logic.ExpenseCommand(description=description, amount=amount))


def test_list_expenses_filters_and_sorts_newest_first(context):
    """Expenses can be filtered by category and text, newest first."""

    rent = core_logic.add_expense(
        context,
        core_logic.ExpenseCommand("October rent", "5000", constants.ExpenseCategory.RENT, date=date(2024, 10, 1)),
    )
    power = core_logic.add_expense(
        context,
        core_logic.ExpenseCommand("Electricity", "450", constants.ExpenseCategory.UTILITIES, date=date(2024, 10, 20)),
    )

    assert core_logic.list_expenses(context) == [power, rent]
    assert core_logic.list_expenses(context, category=constants.ExpenseCategory.RENT) == [rent]
    assert core_logic.list_expenses(context, term="ELECTRIC") == [power]
    assert core_logic.expense_total(core_logic.list_expenses(context)) == Decimal("5450.00")


def test_delete_expense_removes_record(context):
    """Deleting an expense removes it; unknown ids raise."""

    expense = core_logic.add_expense(context, core_logic.ExpenseCommand("Lunch", "120", constants.ExpenseCategory.MEAL))

    core_logic.delete_expense(context, expense.expense_id)

    assert context.store.expenses == []
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.delete_expense(context, expense.expense_id)
