"""Date-range selection over sales, expenses and credits.

Ranges are calendar days (``YYYY-MM-DD``). The start boundary is inclusive
from midnight and the end boundary is inclusive up to ``23:59:59.999``. Both
boundaries and every record timestamp are compared in UTC; naive timestamps
are taken to already be UTC.

Filtering never raises. A malformed boundary yields an empty result and a
warning, and a record with an unreadable timestamp is skipped.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time
from operator import attrgetter
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

from . import log
from .constants import CreditStatus, ExpenseStatus, SaleStatus
from .data_manager import CreditRow, ExpenseRow, SaleRow


T = TypeVar("T")

END_OF_DAY = time(23, 59, 59, 999000)


def parse_day(value: object) -> Optional[date]:
    """Parse a ``YYYY-MM-DD`` boundary, returning ``None`` when invalid.

    Full ISO timestamps are accepted and reduced to their UTC calendar day.
    """

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    moment = parse_timestamp(text)
    return moment.date() if moment is not None else None


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse an ISO-8601 record timestamp into an aware UTC datetime."""

    if isinstance(value, datetime):
        moment = value
    else:
        if not value:
            return None
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            moment = datetime.fromisoformat(text)
        except ValueError:
            return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def day_bounds(start_date: object, end_date: object) -> Optional[Tuple[datetime, datetime]]:
    """Resolve the inclusive UTC bounds of a day range, or ``None`` if invalid."""

    start_day = parse_day(start_date)
    end_day = parse_day(end_date)
    if start_day is None or end_day is None:
        log.warning("Invalid date range: start=%r end=%r", start_date, end_date)
        return None
    return (
        datetime.combine(start_day, time.min, tzinfo=UTC),
        datetime.combine(end_day, END_OF_DAY, tzinfo=UTC),
    )


def filter_by_range(
    records: Iterable[T],
    start_date: object,
    end_date: object,
    *,
    timestamp: Callable[[T], object],
    predicate: Optional[Callable[[T], bool]] = None,
) -> List[T]:
    """Return the records whose timestamp falls inside the day range.

    Args:
        records (Iterable[T]): Records to select from; order is preserved.
        start_date (object): First day of the range (``YYYY-MM-DD``).
        end_date (object): Last day of the range, inclusive to end-of-day.
        timestamp (Callable[[T], object]): Accessor returning the record's
            ISO timestamp.
        predicate (Callable[[T], bool] | None): Additional condition a record
            must satisfy, e.g. an active status.

    Returns:
        list[T]: Matching records. Empty when either boundary is malformed.
    """

    bounds = day_bounds(start_date, end_date)
    if bounds is None:
        return []
    start, end = bounds

    selected: List[T] = []
    for record in records:
        moment = parse_timestamp(timestamp(record))
        if moment is None:
            log.warning("Skipping record with invalid timestamp: %r", timestamp(record))
            continue
        if start <= moment <= end and (predicate is None or predicate(record)):
            selected.append(record)
    return selected


def filter_sales_by_range(sales: Iterable[SaleRow], start_date: object, end_date: object) -> List[SaleRow]:
    """Active sales dated inside the range."""

    return filter_by_range(
        sales,
        start_date,
        end_date,
        timestamp=attrgetter("date"),
        predicate=lambda sale: sale.status == SaleStatus.ACTIVE.value,
    )


def filter_expenses_by_range(expenses: Iterable[ExpenseRow], start_date: object, end_date: object) -> List[ExpenseRow]:
    """Active expenses dated inside the range."""

    return filter_by_range(
        expenses,
        start_date,
        end_date,
        timestamp=attrgetter("date"),
        predicate=lambda expense: expense.status == ExpenseStatus.ACTIVE.value,
    )


def filter_credits_by_range(credits: Iterable[CreditRow], start_date: object, end_date: object) -> List[CreditRow]:
    """Credits opened inside the range that have not been cancelled."""

    return filter_by_range(
        credits,
        start_date,
        end_date,
        timestamp=attrgetter("created_at"),
        predicate=lambda credit: credit.status != CreditStatus.CANCELLED.value,
    )
