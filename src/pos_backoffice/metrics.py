"""Financial aggregation over a date-filtered set of transactions.

:func:`compute_metrics` is a pure function: it reads snapshots of sales,
products, expenses and credits and returns an immutable
:class:`FinancialMetricsSnapshot`. It never raises; malformed inputs degrade
to zero contributions and a logged diagnostic.

Identities that hold for every snapshot::

    net_profit   = total_sales - cost_of_sales - total_expenses
    total_profit = net_profit + credit_profit
    cash_balance = total_sales - total_expenses
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Dict, Iterable, Sequence

from . import log
from .constants import PaymentMethod
from .data_manager import CreditRow, ExpenseRow, ProductRow, SaleRow
from .filters import filter_credits_by_range, filter_expenses_by_range


ZERO = Decimal("0")


@dataclass(frozen=True)
class FinancialMetricsSnapshot:
    """Derived, never persisted aggregate of the financial figures."""

    inventory_cost: Decimal = ZERO
    total_sales: Decimal = ZERO
    total_expenses: Decimal = ZERO
    cost_of_sales: Decimal = ZERO
    net_profit: Decimal = ZERO
    cash_balance: Decimal = ZERO
    total_profit: Decimal = ZERO
    cash_payments: Decimal = ZERO
    card_payments: Decimal = ZERO
    transfer_payments: Decimal = ZERO
    credit_total: Decimal = ZERO
    credit_paid: Decimal = ZERO
    credit_pending: Decimal = ZERO
    credit_profit: Decimal = ZERO

    def as_dict(self) -> Dict[str, Decimal]:
        return asdict(self)


@dataclass(frozen=True)
class CreditSummary:
    """Totals produced by :func:`amortize_credits`."""

    total: Decimal = ZERO
    paid: Decimal = ZERO
    pending: Decimal = ZERO
    profit: Decimal = ZERO


def credit_payment_ratio(credit: CreditRow) -> Decimal:
    """Share of the credit's final price that has been paid.

    A credit with a zero final price has no meaningful ratio; it is treated as
    unpaid (ratio ``0``) so the realised profit is zero. Overpayment is not
    capped.
    """

    total_paid = sum((payment.amount for payment in credit.payments), ZERO)
    if credit.final_price == ZERO:
        log.warning("Credit '%s' has a zero final price; treating it as unpaid", credit.credit_id)
        return ZERO
    return total_paid / credit.final_price


def amortize_credits(credits: Iterable[CreditRow]) -> CreditSummary:
    """Prorate the profit of partially paid credits.

    Each credit contributes ``(final_price - original_price) * ratio`` of
    realised profit, where ``ratio`` is :func:`credit_payment_ratio`. Callers
    are responsible for selecting the in-range, non-cancelled credits.
    """

    total = paid = pending = profit = ZERO
    for credit in credits:
        total_paid = sum((payment.amount for payment in credit.payments), ZERO)
        potential_profit = credit.final_price - credit.original_price
        total += credit.final_price
        paid += total_paid
        pending += credit.final_price - total_paid
        profit += potential_profit * credit_payment_ratio(credit)
    return CreditSummary(total=total, paid=paid, pending=pending, profit=profit)


def calculate_inventory_cost(products: Iterable[ProductRow]) -> Decimal:
    """Value of current stock at cost; not restricted to any date range."""

    return sum((product.cost_price * product.quantity for product in products), ZERO)


def calculate_cost_of_sales(sales: Iterable[SaleRow]) -> Decimal:
    return sum(
        (item.original_price * item.quantity for sale in sales for item in sale.products),
        ZERO,
    )


def payment_breakdown(sales: Iterable[SaleRow]) -> Dict[PaymentMethod, Decimal]:
    """Partition sale totals by payment method.

    Sales paid with a method outside :class:`PaymentMethod` are left out of
    every bucket.
    """

    buckets = {method: ZERO for method in PaymentMethod}
    for sale in sales:
        try:
            method = PaymentMethod(sale.payment_method)
        except ValueError:
            log.debug("Sale '%s' uses unrecognised payment method %r", sale.sale_id, sale.payment_method)
            continue
        buckets[method] += sale.total
    return buckets


def compute_metrics(
    filtered_sales: Sequence[SaleRow],
    products: Iterable[ProductRow],
    expenses: Iterable[ExpenseRow],
    credits: Iterable[CreditRow],
    start_date: object,
    end_date: object,
) -> FinancialMetricsSnapshot:
    """Aggregate the financial figures for a date range.

    Args:
        filtered_sales (Sequence[SaleRow]): Sales already selected by
            :func:`~pos_backoffice.filters.filter_sales_by_range`.
        products (Iterable[ProductRow]): Current catalog, used for the
            inventory valuation.
        expenses (Iterable[ExpenseRow]): Every expense; active ones inside the
            range are summed.
        credits (Iterable[CreditRow]): Every credit; non-cancelled ones opened
            inside the range are amortised.
        start_date (object): First day of the range (``YYYY-MM-DD``).
        end_date (object): Last day of the range, inclusive.

    Returns:
        FinancialMetricsSnapshot: Immutable snapshot. When ``filtered_sales``
            is empty every field except ``inventory_cost`` is zero.
    """

    inventory_cost = calculate_inventory_cost(products)

    if not filtered_sales:
        return FinancialMetricsSnapshot(inventory_cost=inventory_cost)

    credit_summary = amortize_credits(filter_credits_by_range(credits, start_date, end_date))

    total_sales = sum((sale.total for sale in filtered_sales), ZERO)
    cost_of_sales = calculate_cost_of_sales(filtered_sales)
    total_expenses = sum(
        (expense.amount for expense in filter_expenses_by_range(expenses, start_date, end_date)),
        ZERO,
    )
    buckets = payment_breakdown(filtered_sales)

    net_profit = total_sales - cost_of_sales - total_expenses
    snapshot = FinancialMetricsSnapshot(
        inventory_cost=inventory_cost,
        total_sales=total_sales,
        total_expenses=total_expenses,
        cost_of_sales=cost_of_sales,
        net_profit=net_profit,
        cash_balance=total_sales - total_expenses,
        total_profit=net_profit + credit_summary.profit,
        cash_payments=buckets[PaymentMethod.CASH],
        card_payments=buckets[PaymentMethod.CARD],
        transfer_payments=buckets[PaymentMethod.TRANSFER],
        credit_total=credit_summary.total,
        credit_paid=credit_summary.paid,
        credit_pending=credit_summary.pending,
        credit_profit=credit_summary.profit,
    )
    log.debug(
        "Computed metrics for %s..%s: sales=%s net=%s credit_profit=%s",
        start_date,
        end_date,
        total_sales,
        net_profit,
        credit_summary.profit,
    )
    return snapshot
