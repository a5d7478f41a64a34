from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Protocol

from orderdesk.domain.orders.aggregates import OrderStatus


class _HasQuantities(Protocol):
    ordered_quantity: Decimal
    remaining_quantity: Decimal


def resolve_status(lines: Iterable[_HasQuantities]) -> OrderStatus:
    """Derive order status from line quantities alone.

    Works on domain lines and ORM rows alike. An order without lines has
    nothing left to dispatch and reads as COMPLETED.
    """
    all_remaining = True
    all_done = True
    for line in lines:
        remaining = Decimal(line.remaining_quantity)
        if remaining != 0:
            all_done = False
        if remaining != Decimal(line.ordered_quantity):
            all_remaining = False

    if all_done:
        return OrderStatus.COMPLETED
    if all_remaining:
        return OrderStatus.PENDING
    return OrderStatus.PARTIALLY_DISPATCHED
