"""Shared pytest fixtures and utilities for BulutERP tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure the source package is importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from bulut_erp import access, cli, constants, core_logic, data_manager  # noqa: E402
from bulut_erp.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_WALK_IN_ID = "c1"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "WalkInCustomer = {walk_in_customer_id}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    walk_in_customer_id: str
    schema_version: str
    store_name: str


def make_product(
    product_id: str = "P1",
    *,
    code: str = "ELK-001",
    name: str = "Gaming Mouse",
    price: str = "100.00",
    cost_price: str = "60.00",
    stock: int = 10,
    min_stock_level: int = 2,
) -> data_manager.ProductRow:
    """Build a product row with sensible defaults."""

    return data_manager.ProductRow(
        product_id=product_id,
        code=code,
        name=name,
        price=Decimal(price),
        cost_price=Decimal(cost_price),
        stock=stock,
        min_stock_level=min_stock_level,
    )


def make_customer(customer_id: str = "c1", *, name: str = "Walk-in", total: str = "0.00") -> data_manager.CustomerRow:
    """Build a customer row with sensible defaults."""

    return data_manager.CustomerRow(
        customer_id=customer_id,
        name=name,
        customer_type=constants.CustomerType.INDIVIDUAL,
        tax_number=None,
        contact_info="",
        total_purchases=Decimal(total),
    )


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        walk_in_customer_id: str = DEFAULT_WALK_IN_ID,
        filename: str = "master_workbook.xlsx",
        demo: bool = False,
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(
            workbook_path,
            walk_in_customer_id=walk_in_customer_id,
            demo=demo,
            overwrite=True,
        )
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        walk_in_customer_id: str = DEFAULT_WALK_IN_ID,
        demo: bool = False,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(
            subdir=f"bundle_{bundle_id}",
            walk_in_customer_id=walk_in_customer_id,
            demo=demo,
        )
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                walk_in_customer_id=walk_in_customer_id,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            walk_in_customer_id=walk_in_customer_id,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def demo_config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Config path whose workbook carries the demo shop."""

    return config_factory(demo=True).config_path


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="bulut-cli", description="BulutERP CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec, dict]:
    """Provide a placeholder command table entry for dispatch tests."""

    called = {"called": False}

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        called["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        view=access.ViewId.INVENTORY,
        capability=access.Capability.DELETE_PRODUCT,
        register=register,
        execute=execute,
    )
    return "catalog-test", spec, called


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            access.ViewId.DASHBOARD,
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        store_name="Test Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        walk_in_customer_id=DEFAULT_WALK_IN_ID,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def persist_spy(monkeypatch: pytest.MonkeyPatch) -> Mock:
    """Replace the workbook writer with a spy that always succeeds."""

    def _persist(workbook, destination, collections):
        return data_manager.SaveResult(ok=True, keys=tuple(key.value for key in collections))

    spy = Mock(side_effect=_persist)
    monkeypatch.setattr(data_manager, "persist_collections", spy)
    return spy


@pytest.fixture
def context(
    settings: data_manager.ConfigSettings,
    workbook: Mock,
    persist_spy: Mock,
) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and a mock workbook."""

    store = core_logic.DomainStore(
        products=[
            make_product("P1", code="ELK-001", name="Gaming Mouse", price="100.00", cost_price="60.00", stock=10),
            make_product("P2", code="AKS-505", name="USB-C Hub", price="50.00", cost_price="20.00", stock=3),
        ],
        customers=[
            make_customer("c1", name="PERAKENDE WALK-IN"),
            make_customer("c2", name="Ahmet Yilmaz"),
        ],
    )
    return core_logic.RuntimeContext(settings=settings, workbook=workbook, store=store)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` so ``now(UTC)`` returns a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime(datetime):
            @classmethod
            def now(cls, tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
