from __future__ import annotations

from decimal import Decimal

import pytest

from orderdesk.dispatch.coordinator import DispatchCoordinator
from orderdesk.dispatch.errors import NotFoundError
from orderdesk.dispatch.models import DispatchLineRequest
from orderdesk.persistence.models import OrderLineModel
from orderdesk.reconciliation.rules import run_order_reconciliation


def _results(session, order_id: str) -> dict[str, bool]:
    return {item.rule: item.passed for item in run_order_reconciliation(session, order_id)}


def test_clean_order_passes_every_rule(session, make_order):
    order = make_order({"paver": 10, "kerb": 4})
    DispatchCoordinator(session).submit_dispatch(
        order.order_id,
        [
            DispatchLineRequest(product_ref="paver", quantity=Decimal("6")),
            DispatchLineRequest(product_ref="kerb", quantity=Decimal("4")),
        ],
    )

    assert _results(session, order.order_id) == {
        "remaining_within_bounds": True,
        "conservation": True,
        "record_chain": True,
    }


def test_deduction_without_record_breaks_conservation(session, make_order):
    order = make_order({"paver": 10})
    line = session.query(OrderLineModel).filter_by(order_id=order.order_id).one()
    line.remaining_quantity = Decimal("7")
    session.commit()

    results = _results(session, order.order_id)
    assert results["conservation"] is False
    assert results["remaining_within_bounds"] is True


def test_unknown_order_is_not_found(session):
    with pytest.raises(NotFoundError):
        run_order_reconciliation(session, "missing-order")
