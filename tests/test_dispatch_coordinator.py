from __future__ import annotations

from decimal import Decimal

import pytest
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.exc import OperationalError

from orderdesk.dispatch.coordinator import DispatchCoordinator
from orderdesk.dispatch.errors import ConflictError, NotFoundError, StorageError, ValidationError
from orderdesk.dispatch.locks import OrderLockRegistry
from orderdesk.dispatch.models import Committed, DispatchLineRequest, DispatchMetadata, Rejected
from orderdesk.domain.orders.aggregates import OrderStatus, UnitType
from orderdesk.domain.orders.commands import load_order
from orderdesk.ledger.quantity import QuantityLedger
from orderdesk.ledger.records import DispatchRecordStore
from orderdesk.reconciliation.rules import run_order_reconciliation


class BrokenRecordStore(DispatchRecordStore):
    def append(self, *args, **kwargs):  # pragma: no cover - always raises
        raise OperationalError("INSERT INTO dispatch_batches", {}, Exception("disk I/O error"))


def _line(product_ref: str, quantity: str, unit_type: UnitType | None = None) -> DispatchLineRequest:
    return DispatchLineRequest(product_ref=product_ref, quantity=Decimal(quantity), unit_type=unit_type)


def _remaining_by_product(session, order_id: str) -> dict[str, Decimal]:
    return {
        row.product_ref: Decimal(row.remaining_quantity) for row in QuantityLedger(session).line_rows(order_id)
    }


def test_dispatch_commits_deduction_and_record_together(session, make_order):
    order = make_order({"paver": 10, "kerb": 5})

    batch = DispatchCoordinator(session).submit_dispatch(
        order.order_id,
        [_line("paver", "6"), _line("kerb", "5")],
        metadata=DispatchMetadata(vehicle_no="KA-01-1234"),
    )

    assert batch.sequence_no == 1
    assert batch.invoice_no == f"DISP-{order.order_no}-1"
    assert batch.metadata["vehicle_no"] == "KA-01-1234"
    assert _remaining_by_product(session, order.order_id) == {"paver": Decimal("4"), "kerb": Decimal("0")}

    history = DispatchRecordStore(session).list_by_order(order.order_id)
    assert [item.batch_id for item in history] == [batch.batch_id]
    assert {line.product_ref: line.quantity for line in history[0].lines} == {
        "paver": Decimal("6"),
        "kerb": Decimal("5"),
    }
    assert load_order(session, order.order_id).status == OrderStatus.PARTIALLY_DISPATCHED


def test_one_invalid_line_rejects_the_whole_batch(session, make_order):
    order = make_order({"paver": 10, "kerb": 5})

    with pytest.raises(ValidationError) as excinfo:
        DispatchCoordinator(session).submit_dispatch(order.order_id, [_line("paver", "3"), _line("kerb", "6")])

    assert [item.product_ref for item in excinfo.value.line_errors] == ["kerb"]
    assert "exceeds remaining 5" in excinfo.value.line_errors[0].reason
    assert _remaining_by_product(session, order.order_id) == {"paver": Decimal("10"), "kerb": Decimal("5")}
    assert DispatchRecordStore(session).list_by_order(order.order_id) == []


def test_conservation_over_several_batches(session, make_order):
    order = make_order({"paver": 10})
    coordinator = DispatchCoordinator(session)
    for quantity in ("2.5", "3", "4.5"):
        coordinator.submit_dispatch(order.order_id, [_line("paver", quantity)])

    assert _remaining_by_product(session, order.order_id) == {"paver": Decimal("0")}
    totals = DispatchRecordStore(session).dispatched_totals(order.order_id)
    assert sum(totals.values()) == Decimal("10")
    assert load_order(session, order.order_id).status == OrderStatus.COMPLETED

    with pytest.raises(ValidationError):
        coordinator.submit_dispatch(order.order_id, [_line("paver", "0.001")])


def test_try_submit_reports_rejection_as_value(session, make_order):
    order = make_order({"paver": 10})

    outcome = DispatchCoordinator(session).try_submit_dispatch(order.order_id, [_line("paver", "11")])

    assert isinstance(outcome, Rejected)
    assert outcome.kind == "rejected"
    assert outcome.lines[0].product_ref == "paver"

    outcome = DispatchCoordinator(session).try_submit_dispatch(order.order_id, [_line("paver", "1")])
    assert isinstance(outcome, Committed)
    assert outcome.kind == "committed"
    assert outcome.replayed is False


def test_unknown_product_and_unit_mismatch_are_line_errors(session, make_order):
    order = make_order({"paver": 10}, unit_type=UnitType.SQUARE_FEET)

    with pytest.raises(ValidationError) as excinfo:
        DispatchCoordinator(session).submit_dispatch(
            order.order_id,
            [_line("paver", "1", UnitType.NOS), _line("granite", "1")],
        )

    reasons = {item.product_ref: item.reason for item in excinfo.value.line_errors}
    assert "does not match" in reasons["paver"]
    assert "not part of order" in reasons["granite"]
    assert _remaining_by_product(session, order.order_id) == {"paver": Decimal("10")}


def test_non_positive_quantity_is_rejected(session, make_order):
    order = make_order({"paver": 10})
    with pytest.raises(ValidationError):
        DispatchCoordinator(session).submit_dispatch(order.order_id, [_line("paver", "-1")])
    with pytest.raises(ValidationError):
        DispatchCoordinator(session).submit_dispatch(order.order_id, [])


def test_unknown_order_is_not_found(session):
    with pytest.raises(NotFoundError):
        DispatchCoordinator(session).submit_dispatch("missing-order", [_line("paver", "1")])


def test_idempotency_key_replays_instead_of_double_deducting(session, make_order):
    order = make_order({"paver": 10})
    coordinator = DispatchCoordinator(session)

    first = coordinator.try_submit_dispatch(order.order_id, [_line("paver", "6")], idempotency_key="dispatch-1")
    second = coordinator.try_submit_dispatch(order.order_id, [_line("paver", "6")], idempotency_key="dispatch-1")

    assert isinstance(first, Committed) and isinstance(second, Committed)
    assert second.replayed is True
    assert second.batch.batch_id == first.batch.batch_id
    assert _remaining_by_product(session, order.order_id) == {"paver": Decimal("4")}

    with pytest.raises(ConflictError):
        coordinator.submit_dispatch(order.order_id, [_line("paver", "2")], idempotency_key="dispatch-1")
    assert _remaining_by_product(session, order.order_id) == {"paver": Decimal("4")}


def test_storage_failure_rolls_back_the_deduction(session, make_order):
    order = make_order({"paver": 10})
    coordinator = DispatchCoordinator(session, record_store=BrokenRecordStore(session))

    with pytest.raises(StorageError):
        coordinator.submit_dispatch(order.order_id, [_line("paver", "6")])

    assert _remaining_by_product(session, order.order_id) == {"paver": Decimal("10")}
    assert QuantityLedger(session).current_version(order.order_id) == 0
    assert DispatchRecordStore(session).list_by_order(order.order_id) == []


def test_busy_order_times_out_as_conflict(session, make_order):
    order = make_order({"paver": 10})
    locks = OrderLockRegistry(timeout_seconds=0.05)
    coordinator = DispatchCoordinator(session, locks=locks)

    with locks.hold(order.order_id):
        with pytest.raises(ConflictError):
            coordinator.submit_dispatch(order.order_id, [_line("paver", "1")])

    assert locks.active_orders() == []
    assert _remaining_by_product(session, order.order_id) == {"paver": Decimal("10")}


def test_dispatch_quantity_is_limited_to_three_decimal_places():
    with pytest.raises(SchemaValidationError):
        DispatchLineRequest(product_ref="paver", quantity=Decimal("0.0004"))

    assert DispatchLineRequest(product_ref="paver", quantity=Decimal("0.001")).quantity == Decimal("0.001")


def test_fine_grained_quantity_never_creates_an_unmatched_record(session, make_order):
    order = make_order({"paver": 10})
    request = DispatchLineRequest.model_construct(
        line_id=None, product_ref="paver", quantity=Decimal("0.0004"), unit_type=None
    )

    with pytest.raises(ValidationError) as excinfo:
        DispatchCoordinator(session).submit_dispatch(order.order_id, [request])

    assert "decimal places" in excinfo.value.line_errors[0].reason
    assert DispatchRecordStore(session).list_by_order(order.order_id) == []
    results = {item.rule: item.passed for item in run_order_reconciliation(session, order.order_id)}
    assert results["conservation"] is True


def test_busy_order_is_rejected_as_conflict_value(session, make_order):
    order = make_order({"paver": 10})
    locks = OrderLockRegistry(timeout_seconds=0.05)

    with locks.hold(order.order_id):
        outcome = DispatchCoordinator(session, locks=locks).try_submit_dispatch(order.order_id, [_line("paver", "1")])

    assert isinstance(outcome, Rejected)
    assert outcome.error_code == "conflict"
    assert outcome.lines == []
    assert "busy" in outcome.reason


def test_reused_idempotency_key_is_rejected_as_conflict_value(session, make_order):
    order = make_order({"paver": 10})
    coordinator = DispatchCoordinator(session)
    coordinator.submit_dispatch(order.order_id, [_line("paver", "1")], idempotency_key="truck-2")

    outcome = coordinator.try_submit_dispatch(order.order_id, [_line("paver", "2")], idempotency_key="truck-2")

    assert isinstance(outcome, Rejected)
    assert outcome.error_code == "conflict"

    outcome = coordinator.try_submit_dispatch(order.order_id, [_line("paver", "20")])
    assert isinstance(outcome, Rejected)
    assert outcome.error_code == "validation_error"
