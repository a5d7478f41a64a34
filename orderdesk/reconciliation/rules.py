from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from sqlalchemy.orm import Session

from orderdesk.domain.orders.commands import get_order_row, list_order_lines
from orderdesk.ledger.records import DispatchRecordStore
from orderdesk.persistence.models import OrderLineModel


@dataclass
class ReconciliationResult:
    rule: str
    passed: bool
    detail: str


def check_remaining_within_bounds(lines: Iterable[OrderLineModel]) -> ReconciliationResult:
    for line in lines:
        remaining = Decimal(line.remaining_quantity)
        ordered = Decimal(line.ordered_quantity)
        if remaining < 0 or remaining > ordered:
            return ReconciliationResult(
                rule="remaining_within_bounds",
                passed=False,
                detail=f"line={line.line_id} remaining={remaining} ordered={ordered}",
            )
    return ReconciliationResult(rule="remaining_within_bounds", passed=True, detail="ok")


def check_conservation(
    lines: Iterable[OrderLineModel],
    dispatched_totals: dict[str, Decimal],
) -> ReconciliationResult:
    line_list = list(lines)
    known = {line.line_id for line in line_list}
    for line in line_list:
        deducted = Decimal(line.ordered_quantity) - Decimal(line.remaining_quantity)
        recorded = dispatched_totals.get(line.line_id, Decimal("0"))
        if deducted != recorded:
            return ReconciliationResult(
                rule="conservation",
                passed=False,
                detail=f"line={line.line_id} deducted={deducted} recorded={recorded}",
            )
    orphans = sorted(set(dispatched_totals) - known)
    if orphans:
        return ReconciliationResult(
            rule="conservation",
            passed=False,
            detail=f"records reference unknown lines: {', '.join(orphans)}",
        )
    return ReconciliationResult(rule="conservation", passed=True, detail="ok")


def check_record_chain(store: DispatchRecordStore, order_id: str) -> ReconciliationResult:
    passed = store.verify_chain(order_id)
    return ReconciliationResult(
        rule="record_chain",
        passed=passed,
        detail="ok" if passed else f"dispatch history of order {order_id} fails hash verification",
    )


def run_order_reconciliation(session: Session, order_id: str) -> list[ReconciliationResult]:
    get_order_row(session, order_id)
    lines = list_order_lines(session, order_id)
    store = DispatchRecordStore(session)
    return [
        check_remaining_within_bounds(lines),
        check_conservation(lines, store.dispatched_totals(order_id)),
        check_record_chain(store, order_id),
    ]
