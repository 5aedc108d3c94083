"""Business logic layer for the back-office workbook.

This module hosts the sale lifecycle manager and the supporting catalog,
staff, client, expense, credit and cash register operations. Lifecycle
transitions come in two flavours:

* pure functions (:func:`create_sale`, :func:`cancel_sale`,
  :func:`delete_sale`, :func:`delete_all_sales`) that take collection
  snapshots and return new ones without performing I/O;
* ``record_*`` orchestrators that load the collections through the runtime
  context, call the pure function and persist the result. When a write fails
  the collections already written are restored and :class:`PersistenceError`
  is raised, so callers never observe a partially saved sale.

Records are frozen dataclasses, so the snapshots handed to a pure function are
never mutated in place.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    Collection,
    CreditStatus,
    DiscountStatus,
    ExpenseStatus,
    PaymentMethod,
    SaleStatus,
    StockPolicy,
)
from .data_manager import (
    CashRegister,
    ClientRow,
    CreditPayment,
    CreditRow,
    ExpenseRow,
    LineItem,
    ProductRow,
    PurchaseRecord,
    SaleRow,
    SnapshotLine,
    StaffDiscount,
    StaffRow,
    StaffSaleRecord,
)
from .exceptions import (
    AuthorizationError,
    BusinessRuleViolation,
    InvalidStateError,
    InventoryError,
    MissingReferenceError,
    PersistenceError,
    ValidationError,
)
from .filters import filter_sales_by_range
from .inventory import apply_deltas, restore_deltas, sale_deltas
from .metrics import FinancialMetricsSnapshot, compute_metrics


ZERO = Decimal("0")

Authorizer = Callable[[str], bool]


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, List[Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class SaleDraft:
    """User intent for a new sale, as submitted by the point of sale."""

    client_name: str
    products: Tuple[LineItem, ...]
    payment_method: Union[PaymentMethod, str]
    discount: Decimal = ZERO
    client_code: Optional[str] = None
    staff_id: Optional[str] = None
    staff_commission: Optional[Decimal] = None
    staff_discount: Optional[StaffDiscount] = None
    reference: Optional[str] = None


@dataclass(frozen=True)
class CoreSucceeded:
    """Every cascade of the operation was persisted."""


@dataclass(frozen=True)
class CascadeFailed:
    """The core operation was saved but a best-effort cascade was not."""

    detail: str


CascadeResult = Union[CoreSucceeded, CascadeFailed]


@dataclass(frozen=True)
class SaleCreation:
    """Collections produced by :func:`create_sale`."""

    sale: SaleRow
    sales: List[SaleRow]
    products: List[ProductRow]
    staff: List[StaffRow]
    clients: List[ClientRow]


@dataclass(frozen=True)
class SaleCancellation:
    """Collections produced by :func:`cancel_sale`."""

    sale: SaleRow
    sales: List[SaleRow]
    products: List[ProductRow]
    staff: List[StaffRow]


@dataclass(frozen=True)
class SaleOutcome:
    """Result of :func:`record_sale`: the saved sale and the cascade status."""

    sale: SaleRow
    cascade: CascadeResult


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cached collections after a successful write."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def open_store(context: RuntimeContext, collection: Collection) -> data_manager.CollectionStore:
    """Build the storage collaborator for ``collection``."""

    return data_manager.CollectionStore(
        context.workbook,
        collection,
        context.settings.data_file,
        retry=context.settings.retry,
    )


def open_cash_register(context: RuntimeContext) -> data_manager.CashRegisterStore:
    return data_manager.CashRegisterStore(
        context.workbook,
        context.settings.data_file,
        retry=context.settings.retry,
    )


def _ensure_collection(context: RuntimeContext, collection: Collection) -> List[Any]:
    """Load a collection on first access and serve it from cache afterwards."""

    bucket = context._cache.get(collection.value)
    if bucket is None:
        bucket = open_store(context, collection).load()
        context._cache[collection.value] = bucket
        log.debug("Populated '%s' cache with %d entries", collection.value, len(bucket))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upwards from the current
            working directory.

    Returns:
        RuntimeContext: Context ready for orchestration functions.

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
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to operate on a workbook declared with a different schema.

    Raises:
        RuntimeError: If the configured schema version does not match
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


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk and return a context with an empty cache."""
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def list_sales(context: RuntimeContext) -> List[SaleRow]:
    return list(_ensure_collection(context, Collection.SALES))


def list_products(context: RuntimeContext) -> List[ProductRow]:
    return list(_ensure_collection(context, Collection.PRODUCTS))


def list_staff(context: RuntimeContext) -> List[StaffRow]:
    return list(_ensure_collection(context, Collection.STAFF))


def list_clients(context: RuntimeContext) -> List[ClientRow]:
    return list(_ensure_collection(context, Collection.CLIENTS))


def list_expenses(context: RuntimeContext) -> List[ExpenseRow]:
    return list(_ensure_collection(context, Collection.EXPENSES))


def list_credits(context: RuntimeContext) -> List[CreditRow]:
    return list(_ensure_collection(context, Collection.CREDITS))


def get_product(context: RuntimeContext, product_id: str) -> ProductRow:
    """Resolve a product by id.

    Raises:
        MissingReferenceError: If the catalog has no such product.
    """
    for product in list_products(context):
        if product.product_id == product_id:
            return product
    log.warning("Product lookup failed for id '%s'", product_id)
    raise MissingReferenceError(f"Unknown product id: {product_id}")


def _find_sale(sales: Sequence[SaleRow], sale_id: str) -> SaleRow:
    for sale in sales:
        if sale.sale_id == sale_id:
            return sale
    log.warning("Sale lookup failed for id '%s'", sale_id)
    raise MissingReferenceError(f"Unknown sale id: {sale_id}")


def _find_credit(credits: Sequence[CreditRow], credit_id: str) -> CreditRow:
    for credit in credits:
        if credit.credit_id == credit_id:
            return credit
    log.warning("Credit lookup failed for id '%s'", credit_id)
    raise MissingReferenceError(f"Unknown credit id: {credit_id}")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def require_positive_quantity(quantity: Decimal) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValidationError: If ``quantity`` is zero or negative.
    """
    if quantity <= ZERO:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is zero or positive.

    Raises:
        ValidationError: If ``amount`` is less than zero.
    """
    if amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError("Amount must be zero or positive")


def require_text(value: Optional[str], label: str) -> str:
    if value is None or not str(value).strip():
        log.error("Required field '%s' is blank", label)
        raise ValidationError(f"{label} is required")
    return str(value).strip()


def validate_sale_draft(draft: SaleDraft) -> PaymentMethod:
    """Check that a draft is complete and internally consistent.

    Returns:
        PaymentMethod: The normalised payment method.

    Raises:
        ValidationError: On a blank client name, an empty basket, non-positive
            quantities, negative prices, a discount larger than the subtotal or
            an unknown payment method.
    """
    require_text(draft.client_name, "Client name")
    if not draft.products:
        log.error("Sale draft for '%s' has no line items", draft.client_name)
        raise ValidationError("A sale needs at least one product")
    for item in draft.products:
        require_positive_quantity(item.quantity)
        require_nonnegative_money(item.final_price)
        require_nonnegative_money(item.original_price)
    require_nonnegative_money(draft.discount)
    if draft.staff_commission is not None:
        require_nonnegative_money(draft.staff_commission)
    if draft.discount > calculate_subtotal(draft.products):
        raise ValidationError("Discount cannot exceed the sale subtotal")
    try:
        return PaymentMethod(draft.payment_method)
    except ValueError as exc:
        log.error("Unsupported payment method provided: %s", draft.payment_method)
        raise ValidationError(f"Unsupported payment method: {draft.payment_method}") from exc


def calculate_subtotal(items: Sequence[LineItem]) -> Decimal:
    return sum((item.final_price * item.quantity for item in items), ZERO)


def build_line_item(product: ProductRow, quantity: Decimal, final_price: Optional[Decimal] = None) -> LineItem:
    """Turn a catalog product into a sale line.

    The original price carries the product's cost so that the cost of sales
    can be derived from the line items alone. The final price defaults to the
    catalog base price.
    """
    return LineItem(
        product_id=product.product_id,
        name=product.name,
        code=product.code,
        category=product.category,
        quantity=quantity,
        original_price=product.cost_price,
        final_price=product.base_price if final_price is None else final_price,
    )


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------


def generate_record_id(*, prefix: str = "S", when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier using UTC timestamps.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}``.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def _unique_id(prefix: str, when: datetime, existing: Sequence[str]) -> str:
    candidate = generate_record_id(prefix=prefix, when=when)
    taken = set(existing)
    suffix = 1
    unique = candidate
    while unique in taken:
        unique = f"{candidate}-{suffix}"
        suffix += 1
    return unique


def next_invoice_number(sales: Sequence[SaleRow]) -> int:
    """Highest invoice number in use plus one; cancelled sales still count."""

    return max((sale.invoice_number for sale in sales), default=0) + 1


# ---------------------------------------------------------------------------
# Cascades
# ---------------------------------------------------------------------------


def snapshot_lines(items: Sequence[LineItem]) -> Tuple[SnapshotLine, ...]:
    return tuple(
        SnapshotLine(product_id=item.product_id, name=item.name, quantity=item.quantity, price=item.final_price)
        for item in items
    )


def append_commission_entry(staff: Sequence[StaffRow], sale: SaleRow) -> List[StaffRow]:
    """Add the unpaid commission record of ``sale`` to its staff member."""

    entry = StaffSaleRecord(
        sale_id=sale.sale_id,
        date=sale.date,
        total=sale.total,
        commission=sale.staff_commission,
        commission_paid=False,
        products=snapshot_lines(sale.products),
    )
    return [
        replace(member, sales=member.sales + (entry,)) if member.staff_id == sale.staff_id else member
        for member in staff
    ]


def remove_commission_entry(staff: Sequence[StaffRow], staff_id: str, sale_id: str) -> List[StaffRow]:
    """Drop the ledger record of a cancelled sale.

    The record is removed rather than flagged: commission payouts treat a
    missing record as a sale that never happened.
    """
    return [
        replace(member, sales=tuple(entry for entry in member.sales if entry.sale_id != sale_id))
        if member.staff_id == staff_id
        else member
        for member in staff
    ]


def append_purchase_history(clients: Sequence[ClientRow], sale: SaleRow) -> List[ClientRow]:
    """Record ``sale`` in the purchase history of the client with its code."""

    purchase = PurchaseRecord(
        sale_id=sale.sale_id,
        date=sale.date,
        total=sale.total,
        products=snapshot_lines(sale.products),
    )
    return [
        replace(client, purchases=client.purchases + (purchase,)) if client.code == sale.client_code else client
        for client in clients
    ]


def mark_sale_cancelled(sale: SaleRow, reason: str) -> SaleRow:
    """Flag ``sale`` as cancelled, cascading to an active staff discount.

    Unlike the commission ledger, the sale itself is kept and only its status
    changes.
    """
    staff_discount = sale.staff_discount
    if staff_discount is not None and staff_discount.status == DiscountStatus.ACTIVE.value:
        staff_discount = replace(
            staff_discount,
            status=DiscountStatus.CANCELLED.value,
            cancellation_reason=reason,
        )
    return replace(
        sale,
        status=SaleStatus.CANCELLED.value,
        cancellation_reason=reason,
        staff_discount=staff_discount,
    )


# ---------------------------------------------------------------------------
# Sale lifecycle (pure)
# ---------------------------------------------------------------------------


def create_sale(
    draft: SaleDraft,
    sales: Sequence[SaleRow],
    products: Sequence[ProductRow],
    staff: Sequence[StaffRow],
    clients: Sequence[ClientRow],
    *,
    stock_policy: StockPolicy = StockPolicy.REJECT,
    when: Optional[datetime] = None,
) -> SaleCreation:
    """Build a new active sale and its cascades from collection snapshots.

    The invoice number is ``max(existing) + 1`` over every sale, cancelled
    ones included. Stock is depleted through the inventory adjuster, the
    client purchase history is extended when ``client_code`` matches a
    client, and a commission record is appended when ``staff_id`` matches a
    staff member. The commission is the draft's explicit amount, or the staff
    member's rate applied to the sale total.

    Args:
        draft (SaleDraft): Sale submitted by the point of sale.
        sales (Sequence[SaleRow]): Current sales.
        products (Sequence[ProductRow]): Current catalog.
        staff (Sequence[StaffRow]): Current staff with their ledgers.
        clients (Sequence[ClientRow]): Current clients with their histories.
        stock_policy (StockPolicy): Floor behaviour for oversold products.
        when (datetime | None): Creation timestamp; defaults to now (UTC).

    Returns:
        SaleCreation: The new sale and the updated collections.

    Raises:
        ValidationError: If the draft is incomplete or inconsistent.
        InventoryError: If stock would go negative under ``REJECT``.
    """
    payment_method = validate_sale_draft(draft)
    timestamp = _resolve_timestamp(when)

    updated_products = apply_deltas(products, sale_deltas(draft.products), policy=stock_policy)

    subtotal = calculate_subtotal(draft.products)
    total = subtotal - draft.discount

    staff_member = None
    if draft.staff_id:
        staff_member = next((member for member in staff if member.staff_id == draft.staff_id), None)
        if staff_member is None:
            log.warning("Sale references unknown staff id '%s'; no commission recorded", draft.staff_id)

    if draft.staff_commission is not None:
        commission = draft.staff_commission
    elif staff_member is not None:
        commission = total * staff_member.commission_rate
    else:
        commission = ZERO

    sale = SaleRow(
        sale_id=_unique_id("S", timestamp, [existing.sale_id for existing in sales]),
        invoice_number=next_invoice_number(sales),
        date=timestamp.isoformat(),
        status=SaleStatus.ACTIVE.value,
        client_name=draft.client_name.strip(),
        client_code=draft.client_code or None,
        staff_id=draft.staff_id or None,
        staff_commission=commission,
        staff_discount=draft.staff_discount,
        products=tuple(draft.products),
        subtotal=subtotal,
        discount=draft.discount,
        total=total,
        payment_method=payment_method.value,
        reference=draft.reference or None,
    )

    updated_staff = append_commission_entry(staff, sale) if staff_member is not None else list(staff)

    updated_clients = list(clients)
    if sale.client_code:
        if any(client.code == sale.client_code for client in clients):
            updated_clients = append_purchase_history(clients, sale)
        else:
            log.info("No client with code '%s'; purchase history not updated", sale.client_code)

    return SaleCreation(
        sale=sale,
        sales=[*sales, sale],
        products=updated_products,
        staff=updated_staff,
        clients=updated_clients,
    )


def cancel_sale(
    sale_id: str,
    reason: str,
    sales: Sequence[SaleRow],
    products: Sequence[ProductRow],
    staff: Sequence[StaffRow],
) -> SaleCancellation:
    """Cancel an active sale, restoring stock and dropping its commission.

    Client purchase history is left untouched.

    Raises:
        ValidationError: If ``reason`` is blank.
        MissingReferenceError: If no sale has ``sale_id``.
        InvalidStateError: If the sale is not active.
    """
    reason = require_text(reason, "Cancellation reason")
    target = _find_sale(sales, sale_id)
    if target.status != SaleStatus.ACTIVE.value:
        log.error("Cannot cancel sale '%s' in status '%s'", sale_id, target.status)
        raise InvalidStateError(f"Sale {sale_id} is not active (status: {target.status})")

    updated_products = apply_deltas(products, restore_deltas(target.products), policy=StockPolicy.ALLOW)
    cancelled = mark_sale_cancelled(target, reason)
    updated_sales = [cancelled if sale.sale_id == sale_id else sale for sale in sales]
    updated_staff = (
        remove_commission_entry(staff, target.staff_id, sale_id) if target.staff_id else list(staff)
    )

    return SaleCancellation(
        sale=cancelled,
        sales=updated_sales,
        products=updated_products,
        staff=updated_staff,
    )


def make_password_authorizer(expected: str) -> Authorizer:
    """Return a callable validating the administrator credential."""

    def authorize(candidate: str) -> bool:
        return hmac.compare_digest(str(candidate).encode("utf-8"), expected.encode("utf-8"))

    return authorize


def _require_authorization(authorize: Authorizer, password: str, action: str) -> None:
    if not authorize(password):
        log.warning("Rejected %s: incorrect administrator password", action)
        raise AuthorizationError("Incorrect administrator password")


def delete_sale(
    sale_id: str,
    password: str,
    sales: Sequence[SaleRow],
    *,
    authorize: Authorizer,
    require_cancelled: bool = False,
) -> List[SaleRow]:
    """Permanently remove one sale; no stock, staff or client cascades.

    Args:
        sale_id (str): Sale to remove.
        password (str): Administrator credential.
        sales (Sequence[SaleRow]): Current sales.
        authorize (Authorizer): Credential check.
        require_cancelled (bool): When ``True`` an active sale must be
            cancelled before it can be deleted.

    Returns:
        list[SaleRow]: Sales without ``sale_id``.

    Raises:
        AuthorizationError: If the credential is wrong; checked first.
        MissingReferenceError: If no sale has ``sale_id``.
        InvalidStateError: If ``require_cancelled`` and the sale is active.
    """
    _require_authorization(authorize, password, f"deletion of sale '{sale_id}'")
    target = _find_sale(sales, sale_id)
    if require_cancelled and target.status != SaleStatus.CANCELLED.value:
        log.error("Refusing to delete sale '%s' before it is cancelled", sale_id)
        raise InvalidStateError(f"Sale {sale_id} must be cancelled before it can be deleted")
    return [sale for sale in sales if sale.sale_id != sale_id]


def delete_all_sales(password: str, sales: Sequence[SaleRow], *, authorize: Authorizer) -> List[SaleRow]:
    """Clear every sale. Destructive and irreversible; no cascades.

    Raises:
        AuthorizationError: If the credential is wrong.
    """
    _require_authorization(authorize, password, f"deletion of all {len(sales)} sales")
    return []


# ---------------------------------------------------------------------------
# Sale lifecycle (persisting)
# ---------------------------------------------------------------------------


def _persist_all(context: RuntimeContext, steps: Sequence[Tuple[Collection, List[Any], List[Any]]]) -> None:
    """Save each ``(collection, records, previous)`` step in order.

    On the first failure the collections already written are saved back to
    their ``previous`` contents and :class:`PersistenceError` is raised. The
    cache is only invalidated once every step succeeded.
    """
    written: List[Tuple[Collection, List[Any]]] = []
    for collection, records, previous in steps:
        if open_store(context, collection).save(records):
            written.append((collection, previous))
            continue

        for done_collection, done_previous in reversed(written):
            if not open_store(context, done_collection).save(done_previous):
                log.error(
                    "Compensating write for '%s' failed; workbook may be inconsistent",
                    done_collection.value,
                )
        log.error("Could not save '%s'; rolled back %d collection(s)", collection.value, len(written))
        raise PersistenceError(f"Could not save {collection.value}; changes were rolled back")

    _invalidate_cache(context, *(collection.value for collection, _, _ in steps))


def record_sale(context: RuntimeContext, draft: SaleDraft, *, when: Optional[datetime] = None) -> SaleOutcome:
    """Create a sale and persist it together with its cascades.

    Sales, products and staff are saved as one unit: if any of them fails the
    others are restored and :class:`PersistenceError` is raised. The client
    purchase history is saved afterwards on a best-effort basis; its failure
    is reported as :class:`CascadeFailed` in the outcome instead of undoing
    the sale.

    Raises:
        ValidationError: If the draft is invalid.
        InventoryError: If stock is insufficient under the configured policy.
        PersistenceError: If the sale could not be saved.
    """
    sales = list_sales(context)
    products = list_products(context)
    staff = list_staff(context)
    clients = list_clients(context)

    creation = create_sale(
        draft,
        sales,
        products,
        staff,
        clients,
        stock_policy=context.settings.stock_policy,
        when=when,
    )

    steps: List[Tuple[Collection, List[Any], List[Any]]] = [
        (Collection.SALES, creation.sales, sales),
        (Collection.PRODUCTS, creation.products, products),
    ]
    if creation.staff != staff:
        steps.append((Collection.STAFF, creation.staff, staff))
    _persist_all(context, steps)

    cascade: CascadeResult = CoreSucceeded()
    if creation.clients != clients:
        if open_store(context, Collection.CLIENTS).save(creation.clients):
            _invalidate_cache(context, Collection.CLIENTS.value)
        else:
            detail = f"Purchase history for client '{creation.sale.client_code}' was not saved"
            log.warning("%s (sale '%s')", detail, creation.sale.sale_id)
            cascade = CascadeFailed(detail)

    log.info(
        "Recorded sale '%s' invoice #%d for '%s' (total=%s, method=%s)",
        creation.sale.sale_id,
        creation.sale.invoice_number,
        creation.sale.client_name,
        creation.sale.total,
        creation.sale.payment_method,
    )
    return SaleOutcome(sale=creation.sale, cascade=cascade)


def record_cancellation(context: RuntimeContext, sale_id: str, reason: str) -> SaleRow:
    """Cancel a sale and persist the sale, catalog and staff changes.

    Raises:
        ValidationError: If ``reason`` is blank.
        InvalidStateError: If the sale is absent or not active.
        PersistenceError: If the changes could not be saved.
    """
    sales = list_sales(context)
    products = list_products(context)
    staff = list_staff(context)

    cancellation = cancel_sale(sale_id, reason, sales, products, staff)

    steps: List[Tuple[Collection, List[Any], List[Any]]] = [
        (Collection.SALES, cancellation.sales, sales),
        (Collection.PRODUCTS, cancellation.products, products),
    ]
    if cancellation.staff != staff:
        steps.append((Collection.STAFF, cancellation.staff, staff))
    _persist_all(context, steps)

    log.info("Cancelled sale '%s': %s", sale_id, cancellation.sale.cancellation_reason)
    return cancellation.sale


def record_deletion(context: RuntimeContext, sale_id: str, password: str) -> List[SaleRow]:
    """Delete one sale after checking the administrator password.

    Raises:
        AuthorizationError: If the password is wrong.
        InvalidStateError: If the sale is absent, or active while the
            ``DeleteRequiresCancellation`` policy is enabled.
        PersistenceError: If the sales could not be saved.
    """
    sales = list_sales(context)
    updated = delete_sale(
        sale_id,
        password,
        sales,
        authorize=make_password_authorizer(context.settings.admin_password),
        require_cancelled=context.settings.delete_requires_cancellation,
    )
    _persist_all(context, [(Collection.SALES, updated, sales)])
    log.info("Deleted sale '%s'", sale_id)
    return updated


def record_delete_all(context: RuntimeContext, password: str) -> List[SaleRow]:
    """Clear the sales collection after checking the administrator password."""
    sales = list_sales(context)
    updated = delete_all_sales(
        password,
        sales,
        authorize=make_password_authorizer(context.settings.admin_password),
    )
    _persist_all(context, [(Collection.SALES, updated, sales)])
    log.warning("Deleted all %d sales", len(sales))
    return updated


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def calculate_financial_report(context: RuntimeContext, start_date: str, end_date: str) -> FinancialMetricsSnapshot:
    """Filter the active sales of the range and aggregate the metrics."""

    filtered = filter_sales_by_range(list_sales(context), start_date, end_date)
    return compute_metrics(
        filtered,
        list_products(context),
        list_expenses(context),
        list_credits(context),
        start_date,
        end_date,
    )


def calculate_pending_commissions(context: RuntimeContext) -> Dict[str, Decimal]:
    """Unpaid commission per staff id."""

    return {
        member.staff_id: sum(
            (entry.commission for entry in member.sales if not entry.commission_paid),
            ZERO,
        )
        for member in list_staff(context)
    }


# ---------------------------------------------------------------------------
# Catalog, staff and clients
# ---------------------------------------------------------------------------


def _save_collection(context: RuntimeContext, collection: Collection, records: List[Any]) -> None:
    if not open_store(context, collection).save(records):
        raise PersistenceError(f"Could not save {collection.value}")
    _invalidate_cache(context, collection.value)


def add_product(
    context: RuntimeContext,
    *,
    product_id: str,
    name: str,
    cost_price: Decimal,
    base_price: Decimal,
    quantity: Decimal = ZERO,
    code: str = "",
    category: str = "",
) -> ProductRow:
    """Register a new catalog product.

    Raises:
        BusinessRuleViolation: If ``product_id`` is already in use.
        ValidationError: On blank names, negative stock or negative prices.
    """
    product_id = require_text(product_id, "Product id")
    products = list_products(context)
    if any(product.product_id == product_id for product in products):
        raise BusinessRuleViolation(f"Product '{product_id}' already exists")
    require_nonnegative_money(quantity)
    require_nonnegative_money(cost_price)
    require_nonnegative_money(base_price)

    product = ProductRow(
        product_id=product_id,
        name=require_text(name, "Product name"),
        code=code,
        category=category,
        quantity=quantity,
        cost_price=cost_price,
        base_price=base_price,
    )
    _save_collection(context, Collection.PRODUCTS, [*products, product])
    log.info("Added product '%s' (%s)", product.product_id, product.name)
    return product


def add_staff(context: RuntimeContext, *, staff_id: str, name: str, commission_rate: Decimal = ZERO) -> StaffRow:
    """Register a staff member with an empty commission ledger."""
    staff_id = require_text(staff_id, "Staff id")
    staff = list_staff(context)
    if any(member.staff_id == staff_id for member in staff):
        raise BusinessRuleViolation(f"Staff member '{staff_id}' already exists")
    if not ZERO <= commission_rate <= Decimal("1"):
        raise ValidationError("Commission rate must be between 0 and 1")

    member = StaffRow(staff_id=staff_id, name=require_text(name, "Staff name"), commission_rate=commission_rate)
    _save_collection(context, Collection.STAFF, [*staff, member])
    log.info("Added staff member '%s' (%s)", member.staff_id, member.name)
    return member


def add_client(context: RuntimeContext, *, client_id: str, code: str, name: str) -> ClientRow:
    """Register a client; the business code must be unique."""
    client_id = require_text(client_id, "Client id")
    code = require_text(code, "Client code")
    clients = list_clients(context)
    if any(client.client_id == client_id for client in clients):
        raise BusinessRuleViolation(f"Client '{client_id}' already exists")
    if any(client.code == code for client in clients):
        raise BusinessRuleViolation(f"Client code '{code}' is already in use")

    client = ClientRow(client_id=client_id, code=code, name=require_text(name, "Client name"))
    _save_collection(context, Collection.CLIENTS, [*clients, client])
    log.info("Added client '%s' with code '%s'", client.client_id, client.code)
    return client


def pay_commissions(context: RuntimeContext, staff_id: str) -> Decimal:
    """Mark every unpaid commission of a staff member as paid.

    Returns:
        Decimal: The amount settled by this call.
    """
    staff = list_staff(context)
    member = next((entry for entry in staff if entry.staff_id == staff_id), None)
    if member is None:
        raise MissingReferenceError(f"Unknown staff id: {staff_id}")

    settled = sum((entry.commission for entry in member.sales if not entry.commission_paid), ZERO)
    paid_member = replace(
        member,
        sales=tuple(replace(entry, commission_paid=True) for entry in member.sales),
    )
    _save_collection(
        context,
        Collection.STAFF,
        [paid_member if entry.staff_id == staff_id else entry for entry in staff],
    )
    log.info("Paid %s in commissions to '%s'", settled, staff_id)
    return settled


# ---------------------------------------------------------------------------
# Expenses and credits
# ---------------------------------------------------------------------------


def add_expense(
    context: RuntimeContext,
    *,
    amount: Decimal,
    description: str,
    when: Optional[datetime] = None,
) -> ExpenseRow:
    """Record an active expense dated ``when`` (now by default)."""
    require_nonnegative_money(amount)
    timestamp = _resolve_timestamp(when)
    expenses = list_expenses(context)
    expense = ExpenseRow(
        expense_id=_unique_id("E", timestamp, [entry.expense_id for entry in expenses]),
        date=timestamp.isoformat(),
        description=require_text(description, "Expense description"),
        amount=amount,
        status=ExpenseStatus.ACTIVE.value,
    )
    _save_collection(context, Collection.EXPENSES, [*expenses, expense])
    log.info("Recorded expense '%s' (%s)", expense.expense_id, expense.amount)
    return expense


def cancel_expense(context: RuntimeContext, expense_id: str) -> ExpenseRow:
    expenses = list_expenses(context)
    target = next((entry for entry in expenses if entry.expense_id == expense_id), None)
    if target is None:
        raise MissingReferenceError(f"Unknown expense id: {expense_id}")
    if target.status != ExpenseStatus.ACTIVE.value:
        raise InvalidStateError(f"Expense {expense_id} is already cancelled")

    cancelled = replace(target, status=ExpenseStatus.CANCELLED.value)
    _save_collection(
        context,
        Collection.EXPENSES,
        [cancelled if entry.expense_id == expense_id else entry for entry in expenses],
    )
    log.info("Cancelled expense '%s'", expense_id)
    return cancelled


def add_credit(
    context: RuntimeContext,
    *,
    client_name: str,
    original_price: Decimal,
    final_price: Decimal,
    when: Optional[datetime] = None,
) -> CreditRow:
    """Open an installment account.

    A credit must have a positive final price, otherwise its payment ratio
    (and therefore its realised profit) is undefined.
    """
    require_nonnegative_money(original_price)
    if final_price <= ZERO:
        log.error("Credit final price must be positive: %s", final_price)
        raise ValidationError("Credit final price must be greater than zero")
    timestamp = _resolve_timestamp(when)
    credits = list_credits(context)
    credit = CreditRow(
        credit_id=_unique_id("C", timestamp, [entry.credit_id for entry in credits]),
        created_at=timestamp.isoformat(),
        client_name=require_text(client_name, "Client name"),
        status=CreditStatus.ACTIVE.value,
        original_price=original_price,
        final_price=final_price,
    )
    _save_collection(context, Collection.CREDITS, [*credits, credit])
    log.info("Opened credit '%s' for '%s' (%s)", credit.credit_id, credit.client_name, credit.final_price)
    return credit


def record_credit_payment(
    context: RuntimeContext,
    credit_id: str,
    amount: Decimal,
    *,
    note: Optional[str] = None,
    when: Optional[datetime] = None,
) -> CreditRow:
    """Append an installment; the credit becomes ``paid`` once fully covered.

    Raises:
        MissingReferenceError: If the credit does not exist.
        InvalidStateError: If the credit is cancelled or already paid.
        ValidationError: If ``amount`` is not positive.
    """
    credits = list_credits(context)
    target = _find_credit(credits, credit_id)
    if target.status != CreditStatus.ACTIVE.value:
        log.error("Cannot add a payment to credit '%s' in status '%s'", credit_id, target.status)
        raise InvalidStateError(f"Credit {credit_id} is not active (status: {target.status})")
    if amount <= ZERO:
        raise ValidationError("Payment amount must be greater than zero")

    payment = CreditPayment(amount=amount, date=_resolve_timestamp(when).isoformat(), note=note)
    payments = target.payments + (payment,)
    total_paid = sum((entry.amount for entry in payments), ZERO)
    status = CreditStatus.PAID.value if total_paid >= target.final_price else target.status
    updated = replace(target, payments=payments, status=status)

    _save_collection(
        context,
        Collection.CREDITS,
        [updated if entry.credit_id == credit_id else entry for entry in credits],
    )
    log.info("Recorded payment of %s on credit '%s' (paid %s of %s)", amount, credit_id, total_paid, target.final_price)
    return updated


def cancel_credit(context: RuntimeContext, credit_id: str) -> CreditRow:
    credits = list_credits(context)
    target = _find_credit(credits, credit_id)
    if target.status == CreditStatus.CANCELLED.value:
        raise InvalidStateError(f"Credit {credit_id} is already cancelled")

    cancelled = replace(target, status=CreditStatus.CANCELLED.value)
    _save_collection(
        context,
        Collection.CREDITS,
        [cancelled if entry.credit_id == credit_id else entry for entry in credits],
    )
    log.info("Cancelled credit '%s'", credit_id)
    return cancelled


# ---------------------------------------------------------------------------
# Cash register
# ---------------------------------------------------------------------------


def load_cash_register(context: RuntimeContext) -> CashRegister:
    return open_cash_register(context).load()


def set_cash_register(context: RuntimeContext, amount: Decimal) -> CashRegister:
    """Overwrite the cash register balance."""
    require_nonnegative_money(amount)
    store = open_cash_register(context)
    if not store.save(replace(store.load(), amount=amount)):
        raise PersistenceError("Could not save the cash register")
    log.info("Cash register set to %s", amount)
    return store.load()


def reset_cash_register(context: RuntimeContext) -> CashRegister:
    store = open_cash_register(context)
    if not store.reset():
        raise PersistenceError("Could not reset the cash register")
    log.info("Cash register reset")
    return store.load()


__all__ = [
    "AuthorizationError",
    "BusinessRuleViolation",
    "InvalidStateError",
    "InventoryError",
    "MissingReferenceError",
    "PersistenceError",
    "ValidationError",
]
