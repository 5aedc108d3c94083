"""Unit tests verifying the business logic layer with in-memory stores."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from conftest import ADMIN_PASSWORD, make_credit, make_line, make_product, make_sale
from pos_backoffice import constants, core_logic, data_manager
from pos_backoffice.constants import Collection, SaleStatus


MOMENT = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)


class FakeStore:
    """In-memory stand-in for :class:`data_manager.CollectionStore`."""

    def __init__(self, records=(), *, fail=False):
        self.records = list(records)
        self.fail = fail
        self.saves = []
        self.loads = 0

    def load(self):
        self.loads += 1
        return list(self.records)

    def save(self, records):
        self.saves.append(list(records))
        if self.fail:
            return False
        self.records = list(records)
        return True


def _staff(staff_id="ST1", rate="0.1", sales=()):
    return data_manager.StaffRow(staff_id=staff_id, name="Ana", commission_rate=Decimal(rate), sales=sales)


def _client(code="CL-1"):
    return data_manager.ClientRow(client_id="CLIENT-1", code=code, name="Jane")


def _draft(**overrides):
    fields = {
        "client_name": "Jane",
        "products": (make_line("P1", quantity="2", original_price="60", final_price="100"),),
        "payment_method": constants.PaymentMethod.CASH,
    }
    fields.update(overrides)
    return core_logic.SaleDraft(**fields)


def _allow_all(_password):
    return True


@pytest.fixture
def stores(monkeypatch):
    """Replace the storage collaborators with in-memory fakes."""

    table = {collection: FakeStore() for collection in Collection}
    monkeypatch.setattr(core_logic, "open_store", lambda context, collection: table[collection])
    return table


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "backoffice.xlsx",
        business_name="Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        admin_password=ADMIN_PASSWORD,
    )
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_settings = replace(context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, workbook=context.workbook)
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_list_products_reuses_cache_between_calls(stores, context):
    """Collections are loaded once per context."""

    stores[Collection.PRODUCTS].records = [make_product("P-cache")]

    first = core_logic.list_products(context)
    second = core_logic.list_products(context)

    assert [row.product_id for row in first] == ["P-cache"]
    assert first == second
    assert stores[Collection.PRODUCTS].loads == 1


def test_get_product_raises_for_unknown_id(stores, context):
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.get_product(context, "missing")


def test_generate_record_id_uses_timestamp(set_fixed_datetime):
    set_fixed_datetime(datetime(2024, 3, 10, 12, 30, 45, 123456, tzinfo=UTC))

    assert core_logic.generate_record_id(prefix="S") == "S20240310123045123456"


# ---------------------------------------------------------------------------
# create_sale
# ---------------------------------------------------------------------------


def test_create_sale_builds_active_sale_with_totals():
    sales = [make_sale("S-old", invoice_number=4)]
    products = [make_product("P1", quantity="10")]

    creation = core_logic.create_sale(
        _draft(discount=Decimal("20"), reference="R-1"), sales, products, [], [], when=MOMENT)

    sale = creation.sale
    assert sale.status == SaleStatus.ACTIVE.value
    assert sale.invoice_number == 5
    assert sale.subtotal == Decimal("200")
    assert sale.total == Decimal("180")
    assert sale.date == MOMENT.isoformat()
    assert sale.payment_method == "cash"
    assert creation.sales[-1] is sale
    assert creation.products[0].quantity == Decimal("8")
    assert products[0].quantity == Decimal("10")


def test_invoice_numbers_count_cancelled_sales():
    """A cancelled sale keeps its invoice number reserved."""

    sales = [
        make_sale("S1", invoice_number=1),
        make_sale("S2", invoice_number=7, status=SaleStatus.CANCELLED.value),
    ]

    creation = core_logic.create_sale(_draft(), sales, [make_product("P1")], [], [], when=MOMENT)

    assert creation.sale.invoice_number == 8


def test_invoice_numbers_strictly_increase_across_sales():
    sales = []
    products = [make_product("P1", quantity="100")]
    invoices = []
    for _ in range(3):
        creation = core_logic.create_sale(_draft(), sales, products, [], [], when=MOMENT)
        sales, products = creation.sales, creation.products
        invoices.append(creation.sale.invoice_number)

    assert invoices == [1, 2, 3]
    assert len({sale.sale_id for sale in sales}) == 3


def test_create_sale_records_commission_at_staff_rate():
    staff = [_staff(rate="0.1"), _staff("ST2")]

    creation = core_logic.create_sale(
        _draft(staff_id="ST1"), [], [make_product("P1")], staff, [], when=MOMENT)

    assert creation.sale.staff_commission == Decimal("20.0")
    ledger = creation.staff[0].sales
    assert len(ledger) == 1
    assert ledger[0].sale_id == creation.sale.sale_id
    assert ledger[0].commission_paid is False
    assert ledger[0].products[0].price == Decimal("100")
    assert creation.staff[1].sales == ()


def test_explicit_commission_overrides_rate():
    creation = core_logic.create_sale(
        _draft(staff_id="ST1", staff_commission=Decimal("7")), [], [make_product("P1")], [_staff()], [],
        when=MOMENT)

    assert creation.sale.staff_commission == Decimal("7")
    assert creation.staff[0].sales[0].commission == Decimal("7")


def test_unknown_staff_does_not_block_sale(caplog):
    staff = [_staff()]

    creation = core_logic.create_sale(
        _draft(staff_id="ghost"), [], [make_product("P1")], staff, [], when=MOMENT)

    assert creation.sale.staff_commission == Decimal("0")
    assert creation.staff == staff
    assert "unknown staff id" in caplog.text


def test_create_sale_appends_client_purchase_history():
    clients = [_client("CL-1"), _client("CL-2")]

    creation = core_logic.create_sale(
        _draft(client_code="CL-1"), [], [make_product("P1")], [], clients, when=MOMENT)

    purchases = creation.clients[0].purchases
    assert len(purchases) == 1
    assert purchases[0].sale_id == creation.sale.sale_id
    assert purchases[0].total == creation.sale.total
    assert purchases[0].products[0].quantity == Decimal("2")
    assert creation.clients[1].purchases == ()


def test_unknown_client_code_leaves_clients_untouched():
    clients = [_client("CL-1")]

    creation = core_logic.create_sale(
        _draft(client_code="nope"), [], [make_product("P1")], [], clients, when=MOMENT)

    assert creation.clients == clients


def test_create_sale_rejects_oversell_without_side_effects():
    products = [make_product("P1", quantity="1")]

    with pytest.raises(core_logic.InventoryError):
        core_logic.create_sale(_draft(), [], products, [], [], when=MOMENT)

    assert products[0].quantity == Decimal("1")


def test_create_sale_clamps_when_policy_allows():
    creation = core_logic.create_sale(
        _draft(), [], [make_product("P1", quantity="1")], [], [],
        stock_policy=constants.StockPolicy.CLAMP, when=MOMENT)

    assert creation.products[0].quantity == Decimal("0")


@pytest.mark.parametrize(
    "overrides",
    [
        {"client_name": "   "},
        {"products": ()},
        {"products": (make_line(quantity="0"),)},
        {"products": (make_line(final_price="-1"),)},
        {"discount": Decimal("1000")},
        {"discount": Decimal("-1")},
        {"payment_method": "barter"},
    ],
)
def test_create_sale_rejects_invalid_drafts(overrides):
    with pytest.raises(core_logic.ValidationError):
        core_logic.create_sale(_draft(**overrides), [], [make_product("P1")], [], [], when=MOMENT)


def test_create_sale_generates_unique_ids_for_same_instant():
    first = core_logic.create_sale(_draft(), [], [make_product("P1")], [], [], when=MOMENT)
    second = core_logic.create_sale(_draft(), first.sales, first.products, [], [], when=MOMENT)

    assert first.sale.sale_id != second.sale.sale_id
    assert second.sale.sale_id.startswith(first.sale.sale_id)


def test_build_line_item_uses_cost_as_original_price():
    product = make_product("P1", cost_price="60", base_price="100")

    default_price = core_logic.build_line_item(product, Decimal("2"))
    custom_price = core_logic.build_line_item(product, Decimal("1"), Decimal("90"))

    assert default_price.original_price == Decimal("60")
    assert default_price.final_price == Decimal("100")
    assert custom_price.final_price == Decimal("90")


# ---------------------------------------------------------------------------
# cancel_sale
# ---------------------------------------------------------------------------


def _sold_state(**draft_overrides):
    discount = data_manager.StaffDiscount(
        amount=Decimal("5"), reason="staff purchase", status=constants.DiscountStatus.ACTIVE.value)
    creation = core_logic.create_sale(
        _draft(staff_id="ST1", staff_discount=discount, client_code="CL-1", **draft_overrides),
        [],
        [make_product("P1", quantity="10")],
        [_staff()],
        [_client()],
        when=MOMENT,
    )
    return creation


def test_cancel_sale_cascades_to_staff_ledger_and_discount():
    """The ledger entry disappears and the staff discount shares the sale's reason."""

    creation = _sold_state()

    cancellation = core_logic.cancel_sale(
        creation.sale.sale_id, "customer returned", creation.sales, creation.products, creation.staff)

    assert cancellation.sale.status == SaleStatus.CANCELLED.value
    assert cancellation.sale.cancellation_reason == "customer returned"
    assert cancellation.sale.staff_discount.status == constants.DiscountStatus.CANCELLED.value
    assert cancellation.sale.staff_discount.cancellation_reason == "customer returned"
    assert all(entry.sale_id != creation.sale.sale_id for entry in cancellation.staff[0].sales)


def test_cancel_sale_restores_inventory_and_keeps_the_sale():
    creation = _sold_state()

    cancellation = core_logic.cancel_sale(
        creation.sale.sale_id, "damaged", creation.sales, creation.products, creation.staff)

    assert cancellation.products[0].quantity == Decimal("10")
    assert [sale.sale_id for sale in cancellation.sales] == [creation.sale.sale_id]
    assert creation.sales[0].status == SaleStatus.ACTIVE.value


def test_cancel_sale_twice_is_rejected():
    creation = _sold_state()
    cancellation = core_logic.cancel_sale(
        creation.sale.sale_id, "first", creation.sales, creation.products, creation.staff)

    with pytest.raises(core_logic.InvalidStateError):
        core_logic.cancel_sale(
            creation.sale.sale_id, "second", cancellation.sales, cancellation.products, cancellation.staff)


def test_cancel_sale_requires_reason_and_known_id():
    creation = _sold_state()

    with pytest.raises(core_logic.ValidationError):
        core_logic.cancel_sale(creation.sale.sale_id, " ", creation.sales, creation.products, creation.staff)
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.cancel_sale("missing", "why", creation.sales, creation.products, creation.staff)


def test_mark_sale_cancelled_leaves_inactive_discount_alone():
    discount = data_manager.StaffDiscount(
        amount=Decimal("5"), reason="r", status=constants.DiscountStatus.CANCELLED.value,
        cancellation_reason="earlier")
    sale = make_sale(staff_discount=discount)

    cancelled = core_logic.mark_sale_cancelled(sale, "now")

    assert cancelled.staff_discount == discount


def test_remove_commission_entry_only_touches_matching_sale():
    entries = tuple(
        data_manager.StaffSaleRecord(
            sale_id=sale_id, date="2024-03-10", total=Decimal("1"), commission=Decimal("0.1"),
            commission_paid=False, products=())
        for sale_id in ("S1", "S2")
    )
    staff = [_staff(sales=entries), _staff("ST2", sales=entries)]

    result = core_logic.remove_commission_entry(staff, "ST1", "S1")

    assert [entry.sale_id for entry in result[0].sales] == ["S2"]
    assert result[1] == staff[1]


# ---------------------------------------------------------------------------
# delete_sale / delete_all_sales
# ---------------------------------------------------------------------------


def test_password_authorizer_compares_exactly():
    authorize = core_logic.make_password_authorizer("pw")

    assert authorize("pw") is True
    assert authorize("PW") is False
    assert authorize("") is False


def test_delete_sale_checks_password_first():
    sales = [make_sale("S1")]

    with pytest.raises(core_logic.AuthorizationError):
        core_logic.delete_sale("missing", "bad", sales, authorize=lambda _: False)

    assert sales == [make_sale("S1")]


def test_delete_sale_removes_without_cascades():
    sales = [make_sale("S1"), make_sale("S2", invoice_number=2)]

    remaining = core_logic.delete_sale("S1", "pw", sales, authorize=_allow_all)

    assert [sale.sale_id for sale in remaining] == ["S2"]
    assert len(sales) == 2


def test_delete_sale_policy_requires_prior_cancellation():
    active = make_sale("S1")
    cancelled = make_sale("S2", status=SaleStatus.CANCELLED.value)

    with pytest.raises(core_logic.InvalidStateError):
        core_logic.delete_sale("S1", "pw", [active, cancelled], authorize=_allow_all, require_cancelled=True)

    remaining = core_logic.delete_sale(
        "S2", "pw", [active, cancelled], authorize=_allow_all, require_cancelled=True)
    assert remaining == [active]


def test_delete_sale_unknown_id():
    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.delete_sale("missing", "pw", [make_sale()], authorize=_allow_all)


def test_delete_all_sales():
    sales = [make_sale("S1"), make_sale("S2")]

    assert core_logic.delete_all_sales("pw", sales, authorize=_allow_all) == []
    with pytest.raises(core_logic.AuthorizationError):
        core_logic.delete_all_sales("pw", sales, authorize=lambda _: False)


# ---------------------------------------------------------------------------
# Persisting orchestrators
# ---------------------------------------------------------------------------


def test_record_sale_persists_every_cascade(stores, context):
    stores[Collection.PRODUCTS].records = [make_product("P1", quantity="10")]
    stores[Collection.STAFF].records = [_staff()]
    stores[Collection.CLIENTS].records = [_client()]

    outcome = core_logic.record_sale(context, _draft(staff_id="ST1", client_code="CL-1"), when=MOMENT)

    assert isinstance(outcome.cascade, core_logic.CoreSucceeded)
    assert stores[Collection.SALES].records == [outcome.sale]
    assert stores[Collection.PRODUCTS].records[0].quantity == Decimal("8")
    assert len(stores[Collection.STAFF].records[0].sales) == 1
    assert len(stores[Collection.CLIENTS].records[0].purchases) == 1
    assert core_logic.list_sales(context) == [outcome.sale]


def test_record_sale_skips_unchanged_collections(stores, context):
    stores[Collection.PRODUCTS].records = [make_product("P1")]

    core_logic.record_sale(context, _draft(), when=MOMENT)

    assert stores[Collection.STAFF].saves == []
    assert stores[Collection.CLIENTS].saves == []


def test_record_sale_rolls_back_when_a_core_write_fails(stores, context):
    """A failed catalog write restores the sales collection and the cache."""

    existing = make_sale("S-old")
    stores[Collection.SALES].records = [existing]
    stores[Collection.PRODUCTS].records = [make_product("P1", quantity="10")]
    stores[Collection.PRODUCTS].fail = True
    before = core_logic.list_sales(context)

    with pytest.raises(core_logic.PersistenceError):
        core_logic.record_sale(context, _draft(), when=MOMENT)

    assert stores[Collection.SALES].records == [existing]
    assert len(stores[Collection.SALES].saves) == 2
    assert core_logic.list_sales(context) == before
    assert core_logic.list_products(context)[0].quantity == Decimal("10")


def test_record_sale_reports_client_history_failure(stores, context, caplog):
    """The sale stands when only the purchase history could not be saved."""

    stores[Collection.PRODUCTS].records = [make_product("P1")]
    stores[Collection.CLIENTS].records = [_client()]
    stores[Collection.CLIENTS].fail = True

    outcome = core_logic.record_sale(context, _draft(client_code="CL-1"), when=MOMENT)

    assert isinstance(outcome.cascade, core_logic.CascadeFailed)
    assert "CL-1" in outcome.cascade.detail
    assert stores[Collection.SALES].records == [outcome.sale]


def test_record_cancellation_persists_sale_stock_and_ledger(stores, context):
    stores[Collection.PRODUCTS].records = [make_product("P1", quantity="10")]
    stores[Collection.STAFF].records = [_staff()]
    outcome = core_logic.record_sale(context, _draft(staff_id="ST1"), when=MOMENT)

    cancelled = core_logic.record_cancellation(context, outcome.sale.sale_id, "returned")

    assert cancelled.status == SaleStatus.CANCELLED.value
    assert stores[Collection.SALES].records == [cancelled]
    assert stores[Collection.PRODUCTS].records[0].quantity == Decimal("10")
    assert stores[Collection.STAFF].records[0].sales == ()


def test_record_delete_all_with_wrong_password_writes_nothing(stores, context):
    sales = [make_sale("S1"), make_sale("S2")]
    stores[Collection.SALES].records = list(sales)

    with pytest.raises(core_logic.AuthorizationError):
        core_logic.record_delete_all(context, "wrong")

    assert stores[Collection.SALES].saves == []
    assert stores[Collection.SALES].records == sales


def test_record_deletion_honours_cancellation_policy(stores, settings, workbook):
    strict = core_logic.RuntimeContext(
        settings=replace(settings, delete_requires_cancellation=True), workbook=workbook)
    stores[Collection.SALES].records = [make_sale("S1")]

    with pytest.raises(core_logic.InvalidStateError):
        core_logic.record_deletion(strict, "S1", ADMIN_PASSWORD)

    assert stores[Collection.SALES].saves == []


def test_record_deletion_removes_sale(stores, context):
    stores[Collection.SALES].records = [make_sale("S1"), make_sale("S2")]

    core_logic.record_deletion(context, "S1", ADMIN_PASSWORD)

    assert [sale.sale_id for sale in stores[Collection.SALES].records] == ["S2"]


# ---------------------------------------------------------------------------
# Supporting operations
# ---------------------------------------------------------------------------


def test_add_product_rejects_duplicates(stores, context):
    stores[Collection.PRODUCTS].records = [make_product("P1")]

    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.add_product(
            context, product_id="P1", name="Dup", cost_price=Decimal("1"), base_price=Decimal("2"))


def test_add_client_requires_unique_code(stores, context):
    stores[Collection.CLIENTS].records = [_client("CL-1")]

    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.add_client(context, client_id="CLIENT-2", code="CL-1", name="Other")


def test_add_credit_rejects_non_positive_final_price(stores, context):
    with pytest.raises(core_logic.ValidationError):
        core_logic.add_credit(
            context, client_name="Jane", original_price=Decimal("0"), final_price=Decimal("0"))

    assert stores[Collection.CREDITS].saves == []


def test_credit_payment_marks_credit_paid_when_covered(stores, context):
    stores[Collection.CREDITS].records = [make_credit("C1", final_price="50")]

    partial = core_logic.record_credit_payment(context, "C1", Decimal("20"), when=MOMENT)
    settled = core_logic.record_credit_payment(context, "C1", Decimal("30"), note="final", when=MOMENT)

    assert partial.status == constants.CreditStatus.ACTIVE.value
    assert settled.status == constants.CreditStatus.PAID.value
    assert [payment.amount for payment in settled.payments] == [Decimal("20"), Decimal("30")]
    assert stores[Collection.CREDITS].records == [settled]


def test_credit_payment_rejected_on_cancelled_credit(stores, context):
    stores[Collection.CREDITS].records = [make_credit("C1", status=constants.CreditStatus.CANCELLED.value)]

    with pytest.raises(core_logic.InvalidStateError):
        core_logic.record_credit_payment(context, "C1", Decimal("10"))


def test_cancel_expense_twice_is_rejected(stores, context):
    expense = core_logic.add_expense(context, amount=Decimal("12"), description="Rent", when=MOMENT)
    core_logic.cancel_expense(context, expense.expense_id)

    with pytest.raises(core_logic.InvalidStateError):
        core_logic.cancel_expense(context, expense.expense_id)


def test_pay_commissions_settles_unpaid_entries(stores, context):
    entries = (
        data_manager.StaffSaleRecord("S1", "2024-03-10", Decimal("100"), Decimal("10"), False, ()),
        data_manager.StaffSaleRecord("S2", "2024-03-10", Decimal("50"), Decimal("5"), True, ()),
    )
    stores[Collection.STAFF].records = [_staff(sales=entries)]

    assert core_logic.calculate_pending_commissions(context) == {"ST1": Decimal("10")}
    settled = core_logic.pay_commissions(context, "ST1")

    assert settled == Decimal("10")
    assert all(entry.commission_paid for entry in stores[Collection.STAFF].records[0].sales)
    assert core_logic.calculate_pending_commissions(context) == {"ST1": Decimal("0")}


def test_supporting_writes_raise_on_storage_failure(stores, context):
    stores[Collection.STAFF].fail = True

    with pytest.raises(core_logic.PersistenceError):
        core_logic.add_staff(context, staff_id="ST9", name="New")
