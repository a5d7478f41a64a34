from __future__ import annotations

from decimal import Decimal

from orderdesk.dispatch.coordinator import DispatchCoordinator
from orderdesk.dispatch.models import DispatchLineRequest, DispatchMetadata, Party
from orderdesk.domain.orders.aggregates import UnitType
from orderdesk.domain.orders.commands import OrderCreateRequest, OrderLineRequest, load_order, place_order
from orderdesk.invoices.archive import InvoiceArchive, LocalInvoiceArchive, get_archived_invoice
from orderdesk.invoices.render import build_invoice
from orderdesk.invoices.service import issue_invoice, load_invoice_pdf, regenerate_invoice
from orderdesk.ledger.quantity import QuantityLedger


class BrokenArchive(InvoiceArchive):
    backend = "broken"

    def put_pdf(self, object_key: str, data: bytes):  # pragma: no cover - always raises
        raise RuntimeError("archive unavailable")


def _priced_order(session):
    order = place_order(
        session,
        OrderCreateRequest(
            client_ref="CLIENT-9",
            gst_rate=Decimal("18"),
            lines=[
                OrderLineRequest(
                    product_ref="paver",
                    product_name="Paver <Grey>",
                    quantity=Decimal("10"),
                    unit_type=UnitType.SQUARE_FEET,
                    unit_rate_cents=1000,
                    discount_pct=Decimal("10"),
                )
            ],
        ),
    )
    session.commit()
    return order


def _dispatch(session, order_id: str):
    return DispatchCoordinator(session).submit_dispatch(
        order_id,
        [DispatchLineRequest(product_ref="paver", quantity=Decimal("6"))],
        metadata=DispatchMetadata(vehicle_no="KA-01-9999", consignee=Party(name="Site & Co")),
    )


def test_invoice_amounts_follow_rate_discount_and_gst(session):
    order = _priced_order(session)
    batch = _dispatch(session, order.order_id)

    document = build_invoice(load_order(session, order.order_id), batch)

    assert document.invoice_no == batch.invoice_no
    assert document.lines[0].amount_cents == 5400
    assert document.taxable_cents == 5400
    assert document.gst_cents == 972
    assert document.total_cents == 6372


def test_issue_invoice_archives_pdf(session, tmp_path):
    order = _priced_order(session)
    batch = _dispatch(session, order.order_id)
    archive = LocalInvoiceArchive(tmp_path / "archive")

    pdf, archived = issue_invoice(session, batch, archive=archive)

    assert pdf.startswith(b"%PDF")
    assert archived is not None
    assert archive.get_pdf(archived.object_key) == pdf
    record = get_archived_invoice(session, batch.batch_id)
    assert record.pdf_hash == archived.pdf_hash


def test_archive_failure_keeps_the_dispatch(session):
    order = _priced_order(session)
    batch = _dispatch(session, order.order_id)

    pdf, archived = issue_invoice(session, batch, archive=BrokenArchive())

    assert pdf.startswith(b"%PDF")
    assert archived is None
    assert get_archived_invoice(session, batch.batch_id) is None
    assert list(QuantityLedger(session).get_remaining(order.order_id).values()) == [Decimal("4")]


def test_regeneration_is_deterministic_and_side_effect_free(session):
    order = _priced_order(session)
    batch = _dispatch(session, order.order_id)
    version = QuantityLedger(session).current_version(order.order_id)

    _, first = regenerate_invoice(session, batch.batch_id)
    _, second = regenerate_invoice(session, batch.batch_id)

    assert first == second
    assert QuantityLedger(session).current_version(order.order_id) == version


def test_intact_archived_invoice_is_served_as_stored(session, tmp_path):
    order = _priced_order(session)
    batch = _dispatch(session, order.order_id)
    archive = LocalInvoiceArchive(tmp_path / "archive")
    pdf, archived = issue_invoice(session, batch, archive=archive)

    loaded_batch, loaded, source = load_invoice_pdf(session, batch.batch_id, archive=archive)

    assert source == "archive"
    assert loaded == pdf
    assert loaded_batch.batch_id == batch.batch_id


def test_tampered_or_missing_archive_falls_back_to_rendering(session, tmp_path):
    order = _priced_order(session)
    batch = _dispatch(session, order.order_id)
    archive = LocalInvoiceArchive(tmp_path / "archive")
    _, archived = issue_invoice(session, batch, archive=archive)
    (archive.root / archived.object_key).write_bytes(b"not the invoice")

    _, loaded, source = load_invoice_pdf(session, batch.batch_id, archive=archive)
    assert source == "rendered"
    assert loaded == regenerate_invoice(session, batch.batch_id)[1]

    unarchived = _dispatch(session, _priced_order(session).order_id)
    _, loaded, source = load_invoice_pdf(session, unarchived.batch_id, archive=archive)
    assert source == "rendered"
    assert loaded.startswith(b"%PDF")
