from __future__ import annotations

from decimal import Decimal

import pytest

from orderdesk.dispatch.coordinator import DispatchCoordinator
from orderdesk.dispatch.errors import NotFoundError
from orderdesk.dispatch.models import DispatchLineRequest
from orderdesk.ledger.quantity import QuantityLedger
from orderdesk.ledger.records import GENESIS_HASH, DispatchRecordStore
from orderdesk.persistence.models import DispatchBatchModel


def _dispatch(session, order_id: str, quantity: str, **kwargs):
    return DispatchCoordinator(session).submit_dispatch(
        order_id,
        [DispatchLineRequest(product_ref="paver", quantity=Decimal(quantity))],
        **kwargs,
    )


def test_get_by_id_is_a_pure_read(session, make_order):
    order = make_order({"paver": 10})
    batch = _dispatch(session, order.order_id, "6", metadata={"vehicle_no": "KA-01", "weight": 1.5})
    store = DispatchRecordStore(session)
    version = QuantityLedger(session).current_version(order.order_id)

    first = store.get_by_id(batch.batch_id)
    second = store.get_by_id(batch.batch_id)

    assert first == second
    assert first.model_dump() == batch.model_dump()
    assert first.metadata["weight"] == "1.5"
    assert QuantityLedger(session).current_version(order.order_id) == version
    assert len(store.list_by_order(order.order_id)) == 1


def test_missing_batch_is_not_found(session):
    with pytest.raises(NotFoundError):
        DispatchRecordStore(session).get_by_id("missing-batch")


def test_history_is_chained_in_sequence(session, make_order):
    order = make_order({"paver": 10})
    first = _dispatch(session, order.order_id, "2")
    second = _dispatch(session, order.order_id, "3")

    history = DispatchRecordStore(session).list_by_order(order.order_id)
    assert [item.sequence_no for item in history] == [1, 2]
    assert first.prev_hash == GENESIS_HASH
    assert second.prev_hash == first.record_hash
    assert DispatchRecordStore(session).verify_chain(order.order_id) is True


def test_tampered_record_fails_verification(session, make_order):
    order = make_order({"paver": 10})
    batch = _dispatch(session, order.order_id, "2")

    row = session.get(DispatchBatchModel, batch.batch_id)
    row.lines = [dict(row.lines[0], quantity="1")]
    session.commit()

    assert DispatchRecordStore(session).verify_chain(order.order_id) is False


def test_idempotency_lookup(session, make_order):
    order = make_order({"paver": 10})
    batch = _dispatch(session, order.order_id, "1", idempotency_key="truck-7")
    store = DispatchRecordStore(session)

    assert store.find_by_idempotency_key(order.order_id, "truck-7").batch_id == batch.batch_id
    assert store.find_by_idempotency_key(order.order_id, "truck-8") is None
