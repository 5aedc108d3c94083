"""Data access layer for the back-office workbook.

This module provides low-level helpers that read from and write to the
master ``.xlsx`` workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Record codecs: converting worksheet rows into typed, immutable records and
   back. Nested sequences (line items, ledgers, payments) are stored as JSON
   text cells with decimals encoded as strings.
4. Storage collaborators: :class:`CollectionStore` offers ``load``/``save``/
   ``delete`` over one worksheet, and :class:`CashRegisterStore` manages the
   single ``"current"`` cash register document.
"""


from __future__ import annotations

import configparser
import json
import time
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import CASH_REGISTER_ID, Collection, StockPolicy


CONFIG_FILE_NAME = "config.ini"

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    Collection.PRODUCTS.value: [
        "ProductID",
        "Name",
        "Code",
        "Category",
        "Quantity",
        "CostPrice",
        "BasePrice",
    ],
    Collection.STAFF.value: [
        "StaffID",
        "Name",
        "CommissionRate",
        "Sales",
    ],
    Collection.CLIENTS.value: [
        "ClientID",
        "Code",
        "Name",
        "Purchases",
    ],
    Collection.SALES.value: [
        "SaleID",
        "InvoiceNumber",
        "Date",
        "Status",
        "ClientName",
        "ClientCode",
        "StaffID",
        "StaffCommission",
        "StaffDiscount",
        "Products",
        "Subtotal",
        "Discount",
        "Total",
        "PaymentMethod",
        "Reference",
        "CancellationReason",
    ],
    Collection.EXPENSES.value: [
        "ExpenseID",
        "Date",
        "Description",
        "Amount",
        "Status",
    ],
    Collection.CREDITS.value: [
        "CreditID",
        "CreatedAt",
        "ClientName",
        "Status",
        "OriginalPrice",
        "FinalPrice",
        "Payments",
    ],
    Collection.CASH_REGISTER.value: [
        "RegisterID",
        "Amount",
        "LastModified",
    ],
}


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry settings used when writing the workbook to disk."""

    attempts: int = 3
    backoff_seconds: float = 1.0


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    business_name: str
    schema_version: str
    admin_password: str = field(repr=False)
    stock_policy: StockPolicy = StockPolicy.REJECT
    delete_requires_cancellation: bool = False
    retry: RetryPolicy = RetryPolicy()


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LineItem:
    """One product quantity/price entry within a sale."""

    product_id: str
    name: str
    code: str
    category: str
    quantity: Decimal
    original_price: Decimal
    final_price: Decimal


@dataclass(frozen=True)
class StaffDiscount:
    """Optional discount granted to a staff member on their own purchase."""

    amount: Decimal
    reason: str
    status: str
    cancellation_reason: Optional[str] = None


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    invoice_number: int
    date: str
    status: str
    client_name: str
    client_code: Optional[str]
    staff_id: Optional[str]
    staff_commission: Decimal
    staff_discount: Optional[StaffDiscount]
    products: tuple[LineItem, ...]
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    payment_method: str
    reference: Optional[str] = None
    cancellation_reason: Optional[str] = None


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    code: str
    category: str
    quantity: Decimal
    cost_price: Decimal
    base_price: Decimal


@dataclass(frozen=True)
class SnapshotLine:
    """Line item copy stored in staff ledgers and client purchase histories."""

    product_id: str
    name: str
    quantity: Decimal
    price: Decimal


@dataclass(frozen=True)
class StaffSaleRecord:
    """Commission ledger entry appended to a staff member per sale."""

    sale_id: str
    date: str
    total: Decimal
    commission: Decimal
    commission_paid: bool
    products: tuple[SnapshotLine, ...]


@dataclass(frozen=True)
class StaffRow:
    """In-memory view of a row from the ``Staff`` sheet."""

    staff_id: str
    name: str
    commission_rate: Decimal = Decimal("0")
    sales: tuple[StaffSaleRecord, ...] = ()


@dataclass(frozen=True)
class PurchaseRecord:
    """Historical purchase snapshot appended to a client."""

    sale_id: str
    date: str
    total: Decimal
    products: tuple[SnapshotLine, ...]


@dataclass(frozen=True)
class ClientRow:
    """In-memory view of a row from the ``Clients`` sheet."""

    client_id: str
    code: str
    name: str
    purchases: tuple[PurchaseRecord, ...] = ()


@dataclass(frozen=True)
class CreditPayment:
    """A single installment paid against a credit account."""

    amount: Decimal
    date: str
    note: Optional[str] = None


@dataclass(frozen=True)
class CreditRow:
    """In-memory view of a row from the ``Credits`` sheet."""

    credit_id: str
    created_at: str
    client_name: str
    status: str
    original_price: Decimal
    final_price: Decimal
    payments: tuple[CreditPayment, ...] = ()


@dataclass(frozen=True)
class ExpenseRow:
    """In-memory view of a row from the ``Expenses`` sheet."""

    expense_id: str
    date: str
    description: str
    amount: Decimal
    status: str


@dataclass(frozen=True)
class CashRegister:
    """The single cash register document."""

    register_id: str
    amount: Decimal
    last_modified: str


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``. The first match that exists on disk wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory contains ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Security]`` entries are mandatory. ``[Policies]`` and
    ``[Storage]`` are optional and fall back to the defaults of
    :class:`ConfigSettings`. Relative ``DataFile`` entries are anchored to
    ``base_path`` (or the current working directory).

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to resolve a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If an optional entry holds an unsupported value.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
        admin_password = parser.get("Security", "AdminPassword")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    stock_policy_raw = parser.get("Policies", "StockPolicy", fallback=StockPolicy.REJECT.value)
    try:
        stock_policy = StockPolicy(stock_policy_raw.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported StockPolicy: {stock_policy_raw}") from exc

    delete_requires_cancellation = parser.getboolean(
        "Policies", "DeleteRequiresCancellation", fallback=False)
    retry = RetryPolicy(
        attempts=parser.getint("Storage", "RetryAttempts", fallback=RetryPolicy.attempts),
        backoff_seconds=parser.getfloat(
            "Storage", "RetryBackoffSeconds", fallback=RetryPolicy.backoff_seconds),
    )
    if retry.attempts < 1:
        raise ValueError("RetryAttempts must be at least 1")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        business_name=business_name,
        schema_version=schema_version,
        admin_password=admin_password,
        stock_policy=stock_policy,
        delete_requires_cancellation=delete_requires_cancellation,
        retry=retry,
    )


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def save_with_retry(
    workbook: Workbook,
    destination: Path,
    *,
    retry: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Write the workbook to disk, retrying with exponential backoff.

    A workbook that is open in Excel is locked on some platforms, which makes
    ``save`` fail with :class:`PermissionError`. Each failed attempt waits
    ``backoff_seconds * 2 ** attempt`` before trying again.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Target path.
        retry (RetryPolicy): Number of attempts and base backoff.
        sleep (Callable[[float], None]): Injected for tests.

    Returns:
        bool: ``True`` once a write succeeds, ``False`` after the last failure.
    """

    for attempt in range(retry.attempts):
        try:
            save_workbook(workbook, destination)
            return True
        except OSError as exc:
            if attempt >= retry.attempts - 1:
                log.error(
                    "Giving up writing workbook '%s' after %d attempts: %s",
                    destination,
                    retry.attempts,
                    exc,
                )
                return False
            log.warning(
                "Attempt %d to write workbook '%s' failed: %s",
                attempt + 1,
                destination,
                exc,
            )
            sleep(retry.backoff_seconds * (2 ** attempt))
    return False


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    """Normalise a cell or JSON value into a :class:`Decimal`."""

    if raw is None or raw == "":
        return Decimal(default)
    return Decimal(str(raw))


def _decimal_cell(value: Decimal) -> str:
    """Render a decimal as a text cell, keeping every significant digit."""

    return str(value)


def _optional_text(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _text(raw: object) -> str:
    return "" if raw is None else str(raw)


def _json_cell(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def _json_value(raw: object, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    return json.loads(str(raw))


def _snapshot_to_json(line: SnapshotLine) -> dict[str, str]:
    return {
        "id": line.product_id,
        "name": line.name,
        "quantity": str(line.quantity),
        "price": str(line.price),
    }


def _snapshot_from_json(raw: Mapping[str, Any]) -> SnapshotLine:
    return SnapshotLine(
        product_id=str(raw["id"]),
        name=_text(raw.get("name")),
        quantity=_to_decimal(raw.get("quantity")),
        price=_to_decimal(raw.get("price")),
    )


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def serialize_product(record: ProductRow) -> list[object]:
    """Arrange a product in ``Products`` column order."""

    return [
        record.product_id,
        record.name,
        record.code,
        record.category,
        _decimal_cell(record.quantity),
        _decimal_cell(record.cost_price),
        _decimal_cell(record.base_price),
    ]


def deserialize_product(raw: Mapping[str, object]) -> ProductRow:
    """Build a :class:`ProductRow` from a header-keyed worksheet row.

    Identifier and text fields are coerced to ``str`` because Excel happily
    turns product codes such as ``0012`` into numbers.
    """

    return ProductRow(
        product_id=str(raw["ProductID"]),
        name=_text(raw.get("Name")),
        code=_text(raw.get("Code")),
        category=_text(raw.get("Category")),
        quantity=_to_decimal(raw.get("Quantity")),
        cost_price=_to_decimal(raw.get("CostPrice"), "0.00"),
        base_price=_to_decimal(raw.get("BasePrice"), "0.00"),
    )


def serialize_staff(record: StaffRow) -> list[object]:
    """Arrange a staff member in ``Staff`` column order."""

    ledger = [
        {
            "saleId": entry.sale_id,
            "date": entry.date,
            "total": str(entry.total),
            "commission": str(entry.commission),
            "commissionPaid": entry.commission_paid,
            "products": [_snapshot_to_json(line) for line in entry.products],
        }
        for entry in record.sales
    ]
    return [record.staff_id, record.name, _decimal_cell(record.commission_rate), _json_cell(ledger)]


def deserialize_staff(raw: Mapping[str, object]) -> StaffRow:
    """Build a :class:`StaffRow`, decoding the JSON commission ledger."""

    ledger = tuple(
        StaffSaleRecord(
            sale_id=str(entry["saleId"]),
            date=_text(entry.get("date")),
            total=_to_decimal(entry.get("total")),
            commission=_to_decimal(entry.get("commission")),
            commission_paid=bool(entry.get("commissionPaid", False)),
            products=tuple(_snapshot_from_json(line) for line in entry.get("products", [])),
        )
        for entry in _json_value(raw.get("Sales"), [])
    )
    return StaffRow(
        staff_id=str(raw["StaffID"]),
        name=_text(raw.get("Name")),
        commission_rate=_to_decimal(raw.get("CommissionRate")),
        sales=ledger,
    )


def serialize_client(record: ClientRow) -> list[object]:
    """Arrange a client in ``Clients`` column order."""

    purchases = [
        {
            "saleId": purchase.sale_id,
            "date": purchase.date,
            "total": str(purchase.total),
            "products": [_snapshot_to_json(line) for line in purchase.products],
        }
        for purchase in record.purchases
    ]
    return [record.client_id, record.code, record.name, _json_cell(purchases)]


def deserialize_client(raw: Mapping[str, object]) -> ClientRow:
    """Build a :class:`ClientRow`, decoding the JSON purchase history."""

    purchases = tuple(
        PurchaseRecord(
            sale_id=str(entry["saleId"]),
            date=_text(entry.get("date")),
            total=_to_decimal(entry.get("total")),
            products=tuple(_snapshot_from_json(line) for line in entry.get("products", [])),
        )
        for entry in _json_value(raw.get("Purchases"), [])
    )
    return ClientRow(
        client_id=str(raw["ClientID"]),
        code=_text(raw.get("Code")),
        name=_text(raw.get("Name")),
        purchases=purchases,
    )


def serialize_sale(record: SaleRow) -> list[object]:
    """Arrange a sale in ``Sales`` column order.

    Line items and the optional staff discount are embedded as JSON so the
    whole sale stays on one row.
    """

    discount_payload = None
    if record.staff_discount is not None:
        discount_payload = {
            "amount": str(record.staff_discount.amount),
            "reason": record.staff_discount.reason,
            "status": record.staff_discount.status,
            "cancellationReason": record.staff_discount.cancellation_reason,
        }
    items = [
        {
            "id": item.product_id,
            "name": item.name,
            "code": item.code,
            "category": item.category,
            "quantity": str(item.quantity),
            "originalPrice": str(item.original_price),
            "finalPrice": str(item.final_price),
        }
        for item in record.products
    ]
    return [
        record.sale_id,
        record.invoice_number,
        record.date,
        record.status,
        record.client_name,
        record.client_code,
        record.staff_id,
        _decimal_cell(record.staff_commission),
        _json_cell(discount_payload),
        _json_cell(items),
        _decimal_cell(record.subtotal),
        _decimal_cell(record.discount),
        _decimal_cell(record.total),
        record.payment_method,
        record.reference,
        record.cancellation_reason,
    ]


def deserialize_sale(raw: Mapping[str, object]) -> SaleRow:
    """Build a :class:`SaleRow` from a header-keyed worksheet row.

    The payment method and status are kept as raw text: the metrics engine
    must tolerate values outside the known enumerations.
    """

    discount_raw = _json_value(raw.get("StaffDiscount"), None)
    staff_discount = None
    if discount_raw is not None:
        staff_discount = StaffDiscount(
            amount=_to_decimal(discount_raw.get("amount")),
            reason=_text(discount_raw.get("reason")),
            status=_text(discount_raw.get("status")),
            cancellation_reason=_optional_text(discount_raw.get("cancellationReason")),
        )
    items = tuple(
        LineItem(
            product_id=str(item["id"]),
            name=_text(item.get("name")),
            code=_text(item.get("code")),
            category=_text(item.get("category")),
            quantity=_to_decimal(item.get("quantity")),
            original_price=_to_decimal(item.get("originalPrice")),
            final_price=_to_decimal(item.get("finalPrice")),
        )
        for item in _json_value(raw.get("Products"), [])
    )
    invoice_raw = raw.get("InvoiceNumber")
    return SaleRow(
        sale_id=str(raw["SaleID"]),
        invoice_number=int(invoice_raw) if invoice_raw not in (None, "") else 0,
        date=_text(raw.get("Date")),
        status=_text(raw.get("Status")),
        client_name=_text(raw.get("ClientName")),
        client_code=_optional_text(raw.get("ClientCode")),
        staff_id=_optional_text(raw.get("StaffID")),
        staff_commission=_to_decimal(raw.get("StaffCommission")),
        staff_discount=staff_discount,
        products=items,
        subtotal=_to_decimal(raw.get("Subtotal"), "0.00"),
        discount=_to_decimal(raw.get("Discount"), "0.00"),
        total=_to_decimal(raw.get("Total"), "0.00"),
        payment_method=_text(raw.get("PaymentMethod")),
        reference=_optional_text(raw.get("Reference")),
        cancellation_reason=_optional_text(raw.get("CancellationReason")),
    )


def serialize_expense(record: ExpenseRow) -> list[object]:
    return [record.expense_id, record.date, record.description, _decimal_cell(record.amount), record.status]


def deserialize_expense(raw: Mapping[str, object]) -> ExpenseRow:
    return ExpenseRow(
        expense_id=str(raw["ExpenseID"]),
        date=_text(raw.get("Date")),
        description=_text(raw.get("Description")),
        amount=_to_decimal(raw.get("Amount"), "0.00"),
        status=_text(raw.get("Status")),
    )


def serialize_credit(record: CreditRow) -> list[object]:
    """Arrange a credit account in ``Credits`` column order."""

    payments = [
        {"amount": str(payment.amount), "date": payment.date, "note": payment.note}
        for payment in record.payments
    ]
    return [
        record.credit_id,
        record.created_at,
        record.client_name,
        record.status,
        _decimal_cell(record.original_price),
        _decimal_cell(record.final_price),
        _json_cell(payments),
    ]


def deserialize_credit(raw: Mapping[str, object]) -> CreditRow:
    """Build a :class:`CreditRow`, decoding the JSON payment list."""

    payments = tuple(
        CreditPayment(
            amount=_to_decimal(entry.get("amount")),
            date=_text(entry.get("date")),
            note=_optional_text(entry.get("note")),
        )
        for entry in _json_value(raw.get("Payments"), [])
    )
    return CreditRow(
        credit_id=str(raw["CreditID"]),
        created_at=_text(raw.get("CreatedAt")),
        client_name=_text(raw.get("ClientName")),
        status=_text(raw.get("Status")),
        original_price=_to_decimal(raw.get("OriginalPrice"), "0.00"),
        final_price=_to_decimal(raw.get("FinalPrice"), "0.00"),
        payments=payments,
    )


def serialize_cash_register(record: CashRegister) -> list[object]:
    return [record.register_id, _decimal_cell(record.amount), record.last_modified]


def deserialize_cash_register(raw: Mapping[str, object]) -> CashRegister:
    return CashRegister(
        register_id=str(raw["RegisterID"]),
        amount=_to_decimal(raw.get("Amount"), "0.00"),
        last_modified=_text(raw.get("LastModified")),
    )


@dataclass(frozen=True)
class RecordCodec:
    """Bundle the (de)serialisers and primary key accessor of one collection."""

    serialize: Callable[[Any], list[object]]
    deserialize: Callable[[Mapping[str, object]], Any]
    key: Callable[[Any], str]


CODECS: Mapping[Collection, RecordCodec] = {
    Collection.PRODUCTS: RecordCodec(serialize_product, deserialize_product, lambda r: r.product_id),
    Collection.STAFF: RecordCodec(serialize_staff, deserialize_staff, lambda r: r.staff_id),
    Collection.CLIENTS: RecordCodec(serialize_client, deserialize_client, lambda r: r.client_id),
    Collection.SALES: RecordCodec(serialize_sale, deserialize_sale, lambda r: r.sale_id),
    Collection.EXPENSES: RecordCodec(serialize_expense, deserialize_expense, lambda r: r.expense_id),
    Collection.CREDITS: RecordCodec(serialize_credit, deserialize_credit, lambda r: r.credit_id),
    Collection.CASH_REGISTER: RecordCodec(
        serialize_cash_register, deserialize_cash_register, lambda r: r.register_id),
}


# ---------------------------------------------------------------------------
# Sheet helpers
# ---------------------------------------------------------------------------


def _header_row(sheet: Worksheet) -> list[str]:
    return [cell.value for cell in sheet[1]]


def _snapshot_rows(sheet: Worksheet) -> list[tuple[object, ...]]:
    return [
        raw
        for raw in sheet.iter_rows(min_row=2, values_only=True)
        if any(cell is not None for cell in raw)
    ]


def _replace_rows(sheet: Worksheet, rows: Iterable[Sequence[object]]) -> None:
    """Drop every data row below the header and append ``rows`` in order."""

    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)
    for row in rows:
        sheet.append(list(row))


def _last_write_wins(records: Iterable[Any], key: Callable[[Any], str]) -> list[Any]:
    """Collapse duplicate keys, keeping the first position and the last value."""

    ordered: dict[str, Any] = {}
    for record in records:
        ordered[key(record)] = record
    return list(ordered.values())


# ---------------------------------------------------------------------------
# Storage collaborators
# ---------------------------------------------------------------------------


class CollectionStore:
    """Keyed-document store over one worksheet of the master workbook.

    ``save`` replaces the entire collection (upsert plus delete-missing) and
    writes the workbook to ``destination`` with a bounded retry. When every
    attempt fails the worksheet is restored to its previous rows so that the
    in-memory workbook never diverges from the file on disk.
    """

    def __init__(
        self,
        workbook: Workbook,
        collection: Collection,
        destination: Path,
        *,
        retry: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.workbook = workbook
        self.collection = collection
        self.destination = destination
        self.retry = retry
        self._sleep = sleep
        self._codec = CODECS[collection]

    @property
    def sheet_name(self) -> str:
        return self.collection.value

    def _sheet(self) -> Optional[Worksheet]:
        try:
            return self.workbook[self.sheet_name]
        except KeyError:
            log.error("Worksheet '%s' is missing from the workbook", self.sheet_name)
            return None

    def load(self) -> list[Any]:
        """Return every record of the collection; never raises.

        Malformed rows are skipped with a warning so that one damaged cell does
        not hide the rest of the collection.
        """

        sheet = self._sheet()
        if sheet is None:
            return []

        headers = _header_row(sheet)
        records: list[Any] = []
        for index, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
            if not any(cell is not None for cell in raw):
                continue
            try:
                records.append(self._codec.deserialize(dict(zip(headers, raw))))
            except (KeyError, TypeError, ValueError, ArithmeticError, AttributeError) as exc:
                log.warning(
                    "Skipping malformed row %d in '%s': %s",
                    index,
                    self.sheet_name,
                    exc,
                )
        log.debug("Loaded %d records from '%s'", len(records), self.sheet_name)
        return records

    def save(self, records: Sequence[Any]) -> bool:
        """Replace the collection contents with ``records`` and write to disk."""

        sheet = self._sheet()
        if sheet is None:
            return False

        previous = _snapshot_rows(sheet)
        unique = _last_write_wins(records, self._codec.key)
        _replace_rows(sheet, (self._codec.serialize(record) for record in unique))

        if save_with_retry(self.workbook, self.destination, retry=self.retry, sleep=self._sleep):
            log.debug("Saved %d records to '%s'", len(unique), self.sheet_name)
            return True

        _replace_rows(sheet, previous)
        log.error("Restored previous contents of '%s' after a failed save", self.sheet_name)
        return False

    def delete(self, record_id: str) -> bool:
        """Remove a single record by primary key; absent keys are a no-op."""

        records = self.load()
        remaining = [record for record in records if self._codec.key(record) != record_id]
        if len(remaining) == len(records):
            log.debug("Nothing to delete for id '%s' in '%s'", record_id, self.sheet_name)
            return True
        return self.save(remaining)


class CashRegisterStore:
    """Single-document store for the cash register, keyed ``"current"``."""

    def __init__(
        self,
        workbook: Workbook,
        destination: Path,
        *,
        retry: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store = CollectionStore(
            workbook,
            Collection.CASH_REGISTER,
            destination,
            retry=retry,
            sleep=sleep,
        )
        self._clock = clock

    def default(self) -> CashRegister:
        return CashRegister(
            register_id=CASH_REGISTER_ID,
            amount=Decimal("0"),
            last_modified=self._clock().isoformat(),
        )

    def load(self) -> CashRegister:
        """Return the current register, or a zero-balance default when absent."""

        for record in self._store.load():
            if record.register_id == CASH_REGISTER_ID:
                return record
        return self.default()

    def save(self, register: CashRegister) -> bool:
        stamped = replace(
            register,
            register_id=CASH_REGISTER_ID,
            last_modified=self._clock().isoformat(),
        )
        return self._store.save([stamped])

    def reset(self) -> bool:
        return self.save(self.default())
