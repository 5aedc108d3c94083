"""Shared pytest fixtures and utilities for the back-office tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional
from unittest.mock import Mock

import pytest

# Ensure the source package is importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pos_backoffice import cli, constants, core_logic, data_manager  # noqa: E402
from pos_backoffice.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
ADMIN_PASSWORD = "s3cret"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Security]\n"
    "AdminPassword = {admin_password}\n\n"
    "[Policies]\n"
    "StockPolicy = {stock_policy}\n"
    "DeleteRequiresCancellation = {delete_requires_cancellation}\n\n"
    "[Storage]\n"
    "RetryAttempts = 2\n"
    "RetryBackoffSeconds = 0\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    business_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: Optional[str] = None, filename: str = "backoffice.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        stock_policy: str = "reject",
        delete_requires_cancellation: bool = False,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                admin_password=ADMIN_PASSWORD,
                stock_policy=stock_policy,
                delete_requires_cancellation=str(delete_requires_cancellation).lower(),
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            business_name=business_name,
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


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


def make_product(
    product_id: str = "P1",
    *,
    quantity: str = "10",
    cost_price: str = "60",
    base_price: str = "100",
    name: Optional[str] = None,
) -> data_manager.ProductRow:
    return data_manager.ProductRow(
        product_id=product_id,
        name=name or f"Product {product_id}",
        code=f"C-{product_id}",
        category="General",
        quantity=Decimal(quantity),
        cost_price=Decimal(cost_price),
        base_price=Decimal(base_price),
    )


def make_line(
    product_id: str = "P1",
    *,
    quantity: str = "1",
    original_price: str = "60",
    final_price: str = "100",
) -> data_manager.LineItem:
    return data_manager.LineItem(
        product_id=product_id,
        name=f"Product {product_id}",
        code=f"C-{product_id}",
        category="General",
        quantity=Decimal(quantity),
        original_price=Decimal(original_price),
        final_price=Decimal(final_price),
    )


def make_sale(
    sale_id: str = "S1",
    *,
    date: str = "2024-03-10T12:00:00+00:00",
    status: str = constants.SaleStatus.ACTIVE.value,
    total: str = "100",
    payment_method: str = constants.PaymentMethod.CASH.value,
    products: tuple = (),
    invoice_number: int = 1,
    staff_id: Optional[str] = None,
    client_code: Optional[str] = None,
    staff_discount: Optional[data_manager.StaffDiscount] = None,
) -> data_manager.SaleRow:
    return data_manager.SaleRow(
        sale_id=sale_id,
        invoice_number=invoice_number,
        date=date,
        status=status,
        client_name="Walk-in",
        client_code=client_code,
        staff_id=staff_id,
        staff_commission=Decimal("0"),
        staff_discount=staff_discount,
        products=products,
        subtotal=Decimal(total),
        discount=Decimal("0"),
        total=Decimal(total),
        payment_method=payment_method,
    )


def make_credit(
    credit_id: str = "C1",
    *,
    created_at: str = "2024-03-10T09:00:00+00:00",
    original_price: str = "200",
    final_price: str = "300",
    paid: tuple = (),
    status: str = constants.CreditStatus.ACTIVE.value,
) -> data_manager.CreditRow:
    return data_manager.CreditRow(
        credit_id=credit_id,
        created_at=created_at,
        client_name="Jane",
        status=status,
        original_price=Decimal(original_price),
        final_price=Decimal(final_price),
        payments=tuple(
            data_manager.CreditPayment(amount=Decimal(amount), date=created_at) for amount in paid
        ),
    )


def make_expense(
    expense_id: str = "E1",
    *,
    date: str = "2024-03-10T08:00:00+00:00",
    amount: str = "50",
    status: str = constants.ExpenseStatus.ACTIVE.value,
) -> data_manager.ExpenseRow:
    return data_manager.ExpenseRow(
        expense_id=expense_id,
        date=date,
        description="Supplies",
        amount=Decimal(amount),
        status=status,
    )


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="backoffice-cli", description="Back-office CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
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
        data_file=tmp_path / "backoffice.xlsx",
        business_name="Test Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        admin_password=ADMIN_PASSWORD,
        retry=data_manager.RetryPolicy(attempts=1, backoff_seconds=0),
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
