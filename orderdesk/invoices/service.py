from __future__ import annotations

import logging
from hashlib import sha256

from sqlalchemy.orm import Session

from orderdesk.dispatch.models import DispatchBatch
from orderdesk.domain.orders.commands import load_order
from orderdesk.invoices.archive import (
    ArchivedInvoice,
    InvoiceArchive,
    build_invoice_archive,
    get_archived_invoice,
    invoice_object_key,
    record_archived_invoice,
)
from orderdesk.invoices.render import build_invoice, render_invoice_pdf
from orderdesk.ledger.records import DispatchRecordStore

logger = logging.getLogger(__name__)


def render_batch_pdf(session: Session, batch: DispatchBatch) -> bytes:
    order = load_order(session, batch.order_id)
    return render_invoice_pdf(build_invoice(order, batch))


def issue_invoice(
    session: Session,
    batch: DispatchBatch,
    archive: InvoiceArchive | None = None,
) -> tuple[bytes, ArchivedInvoice | None]:
    """Render and archive the invoice of an already committed batch.

    Runs after the dispatch transaction, outside the allocation lock. An
    archive failure is logged and leaves the dispatch untouched; the PDF can
    always be regenerated from the record.
    """
    pdf = render_batch_pdf(session, batch)
    archive = archive or build_invoice_archive()
    try:
        archived = archive.put_pdf(invoice_object_key(batch.order_id, batch.invoice_no), pdf)
        record_archived_invoice(session, batch.batch_id, archived)
        session.commit()
    except Exception as exc:
        session.rollback()
        logger.warning(
            "invoice archive failed: batch_id=%s backend=%s error=%s",
            batch.batch_id,
            archive.backend,
            exc,
        )
        return pdf, None
    logger.info(
        "invoice archived: batch_id=%s object_key=%s backend=%s",
        batch.batch_id,
        archived.object_key,
        archived.backend,
    )
    return pdf, archived


def regenerate_invoice(session: Session, batch_id: str) -> tuple[DispatchBatch, bytes]:
    batch = DispatchRecordStore(session).get_by_id(batch_id)
    return batch, render_batch_pdf(session, batch)


def load_invoice_pdf(
    session: Session,
    batch_id: str,
    archive: InvoiceArchive | None = None,
) -> tuple[DispatchBatch, bytes, str]:
    """Return the archived invoice when it is intact, else a fresh rendering.

    The third element says which: ``"archive"`` or ``"rendered"``.
    """
    batch = DispatchRecordStore(session).get_by_id(batch_id)
    record = get_archived_invoice(session, batch_id)
    if record is not None:
        archive = archive or build_invoice_archive()
        if archive.backend == record.backend:
            try:
                pdf = archive.get_pdf(record.object_key)
            except Exception as exc:
                logger.warning("invoice archive read failed: batch_id=%s error=%s", batch_id, exc)
                pdf = None
            if pdf is not None and sha256(pdf).hexdigest() == record.pdf_hash:
                return batch, pdf, "archive"
            if pdf is not None:
                logger.warning("archived invoice does not match its hash: batch_id=%s", batch_id)
    return batch, render_batch_pdf(session, batch), "rendered"
