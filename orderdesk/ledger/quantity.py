from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from orderdesk.dispatch.errors import ConflictError, LineError, NotFoundError, ValidationError
from orderdesk.ledger.canonical import decimal_text
from orderdesk.persistence.models import OrderLineModel, OrderModel

logger = logging.getLogger(__name__)

# Matches the scale of order_lines.remaining_quantity.
QUANTITY_SCALE = 3


@dataclass(frozen=True)
class Deduction:
    line_id: str
    quantity: Decimal


def merge_deductions(deductions: Iterable[Deduction]) -> dict[str, Decimal]:
    """Sum requested quantities per line, keeping first-seen line order."""
    merged: dict[str, Decimal] = {}
    for item in deductions:
        merged[item.line_id] = merged.get(item.line_id, Decimal("0")) + Decimal(item.quantity)
    return merged


class QuantityLedger:
    """Remaining quantity per order line.

    The ledger validates and applies deductions but never records dispatches;
    that is the coordinator's job, inside the same transaction.
    """

    def __init__(self, session: Session):
        self.session = session

    def order_row(self, order_id: str) -> OrderModel:
        order = self.session.get(OrderModel, order_id, populate_existing=True)
        if order is None:
            raise NotFoundError(f"order not found: {order_id}")
        return order

    def line_rows(self, order_id: str) -> list[OrderLineModel]:
        stmt = (
            select(OrderLineModel)
            .where(OrderLineModel.order_id == order_id)
            .order_by(OrderLineModel.position.asc())
            .execution_options(populate_existing=True)
        )
        return list(self.session.scalars(stmt).all())

    def current_version(self, order_id: str) -> int:
        return self.order_row(order_id).version

    def get_remaining(self, order_id: str) -> dict[str, Decimal]:
        self.order_row(order_id)
        return {line.line_id: Decimal(line.remaining_quantity) for line in self.line_rows(order_id)}

    def check_deductions(self, order_id: str, deductions: Iterable[Deduction]) -> list[LineError]:
        """Return one error per offending line; an empty list means all pass."""
        rows = {line.line_id: line for line in self.line_rows(order_id)}
        errors: list[LineError] = []
        requested: dict[str, Decimal] = {}
        for item in deductions:
            quantity = Decimal(item.quantity)
            line = rows.get(item.line_id)
            if line is None:
                errors.append(LineError(line_id=item.line_id, reason=f"line does not belong to order {order_id}"))
                continue
            if quantity <= 0:
                errors.append(
                    LineError(line_id=line.line_id, product_ref=line.product_ref, reason="quantity must be > 0")
                )
                continue
            if quantity.normalize().as_tuple().exponent < -QUANTITY_SCALE:
                errors.append(
                    LineError(
                        line_id=line.line_id,
                        product_ref=line.product_ref,
                        reason=f"quantity {quantity} has more than {QUANTITY_SCALE} decimal places",
                    )
                )
                continue
            requested[line.line_id] = requested.get(line.line_id, Decimal("0")) + quantity

        for line_id, quantity in requested.items():
            line = rows[line_id]
            remaining = Decimal(line.remaining_quantity)
            if quantity > remaining:
                errors.append(
                    LineError(
                        line_id=line_id,
                        product_ref=line.product_ref,
                        reason=f"requested {decimal_text(quantity)} exceeds remaining {decimal_text(remaining)}",
                    )
                )
        return errors

    def apply_deductions(
        self,
        order_id: str,
        deductions: list[Deduction],
        expected_version: int | None = None,
    ) -> dict[str, Decimal]:
        """Deduct every requested quantity, or nothing at all.

        Returns the new remaining quantity of each touched line. Raises
        ``ConflictError`` when any line does not fit the current remaining
        quantity or when the order changed underneath ``expected_version``.
        """
        order = self.order_row(order_id)
        if not deductions:
            raise ValidationError("at least one dispatch line is required")

        errors = self.check_deductions(order_id, deductions)
        if errors:
            raise ConflictError(f"deductions no longer fit order {order_id}", line_errors=errors)

        version = order.version if expected_version is None else expected_version
        bumped = self.session.execute(
            update(OrderModel)
            .where(OrderModel.order_id == order_id)
            .where(OrderModel.version == version)
            .values(version=version + 1)
            .execution_options(synchronize_session=False)
        )
        if bumped.rowcount != 1:
            logger.warning("ledger version conflict: order_id=%s expected_version=%s", order_id, version)
            raise ConflictError(f"order {order_id} was modified concurrently; re-read remaining quantities")

        rows = {line.line_id: line for line in self.line_rows(order_id)}
        updated: dict[str, Decimal] = {}
        for line_id, quantity in merge_deductions(deductions).items():
            line = rows[line_id]
            new_remaining = Decimal(line.remaining_quantity) - quantity
            line.remaining_quantity = new_remaining
            updated[line_id] = new_remaining
        set_committed_value(order, "version", version + 1)
        self.session.flush()
        logger.debug("ledger deductions applied: order_id=%s lines=%s", order_id, len(updated))
        return updated
