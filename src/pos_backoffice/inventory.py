"""Signed quantity adjustments over the product catalog."""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Iterable, List, Sequence

from . import log
from .constants import StockPolicy
from .data_manager import LineItem, ProductRow
from .exceptions import InventoryError


ZERO = Decimal("0")


@dataclass(frozen=True)
class QuantityDelta:
    """Signed stock change for one product."""

    product_id: str
    delta: Decimal


def sale_deltas(items: Iterable[LineItem]) -> List[QuantityDelta]:
    """Stock depletion caused by selling ``items``."""

    return [QuantityDelta(item.product_id, -item.quantity) for item in items]


def restore_deltas(items: Iterable[LineItem]) -> List[QuantityDelta]:
    """Stock restored when the sale of ``items`` is cancelled."""

    return [QuantityDelta(item.product_id, item.quantity) for item in items]


def apply_deltas(
    products: Sequence[ProductRow],
    deltas: Iterable[QuantityDelta],
    *,
    policy: StockPolicy | str = StockPolicy.REJECT,
) -> List[ProductRow]:
    """Return a new catalog with ``deltas`` applied.

    Deltas referencing an unknown product are skipped. Several deltas for the
    same product accumulate before the floor policy is evaluated. Under
    ``StockPolicy.REJECT`` the whole adjustment is refused when any product
    would end below zero, and the input catalog is never modified.

    Args:
        products (Sequence[ProductRow]): Current catalog.
        deltas (Iterable[QuantityDelta]): Signed changes to apply.
        policy (StockPolicy | str): Floor behaviour for negative results. Plain
            policy names such as ``"clamp"`` are accepted.

    Returns:
        list[ProductRow]: Catalog in the original order with new quantities.

    Raises:
        InventoryError: When ``policy`` is ``REJECT`` and stock would go
            negative.
        ValueError: When ``policy`` names no known policy.
    """

    policy = StockPolicy(policy)
    known = {product.product_id for product in products}
    pending: Dict[str, Decimal] = {}
    for change in deltas:
        if change.product_id not in known:
            log.debug("Skipping stock change for unknown product '%s'", change.product_id)
            continue
        pending[change.product_id] = pending.get(change.product_id, ZERO) + change.delta

    updated: List[ProductRow] = []
    for product in products:
        if product.product_id not in pending:
            updated.append(product)
            continue
        quantity = product.quantity + pending[product.product_id]
        if quantity < ZERO:
            if policy is StockPolicy.REJECT:
                log.warning(
                    "Rejected stock change for '%s': %s on hand, %s requested",
                    product.product_id,
                    product.quantity,
                    -pending[product.product_id],
                )
                raise InventoryError(
                    f"Insufficient stock for '{product.name or product.product_id}': "
                    f"{product.quantity} available"
                )
            if policy is StockPolicy.CLAMP:
                log.warning("Stock for '%s' clamped at zero (would be %s)", product.product_id, quantity)
                quantity = ZERO
            else:
                log.warning("Stock for '%s' is now negative: %s", product.product_id, quantity)
        updated.append(replace(product, quantity=quantity))
    return updated
