from __future__ import annotations

import io
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from orderdesk.core.config import get_settings
from orderdesk.dispatch.models import DispatchBatch
from orderdesk.domain.orders.aggregates import OrderAggregate, line_amount_cents, unit_label
from orderdesk.ledger.canonical import decimal_text


@dataclass(frozen=True)
class InvoiceLine:
    product_ref: str
    product_name: str
    quantity: Decimal
    unit_type: str
    unit_rate_cents: int
    discount_pct: Decimal
    amount_cents: int


@dataclass(frozen=True)
class InvoiceDocument:
    invoice_no: str
    order_no: int
    client_ref: str
    issued_at: datetime
    lines: list[InvoiceLine]
    metadata: dict = field(default_factory=dict)
    gst_enabled: bool = False
    gst_rate: Decimal = Decimal("0")

    @property
    def taxable_cents(self) -> int:
        return sum(line.amount_cents for line in self.lines)

    @property
    def gst_cents(self) -> int:
        if not self.gst_enabled:
            return 0
        tax = Decimal(self.taxable_cents) * self.gst_rate / Decimal("100")
        return int(tax.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @property
    def total_cents(self) -> int:
        return self.taxable_cents + self.gst_cents


def build_invoice(order: OrderAggregate, batch: DispatchBatch) -> InvoiceDocument:
    """Price a committed batch against its order's rates and discounts."""
    lines = []
    for committed in batch.lines:
        order_line = order.line(committed.line_id)
        rate = order_line.unit_rate_cents if order_line else 0
        discount = order_line.discount_pct if order_line else Decimal("0")
        lines.append(
            InvoiceLine(
                product_ref=committed.product_ref,
                product_name=committed.product_name or committed.product_ref,
                quantity=committed.quantity,
                unit_type=committed.unit_type,
                unit_rate_cents=rate,
                discount_pct=discount,
                amount_cents=line_amount_cents(committed.quantity, rate, discount),
            )
        )
    return InvoiceDocument(
        invoice_no=batch.invoice_no,
        order_no=batch.order_no,
        client_ref=order.client_ref,
        issued_at=batch.created_at,
        lines=lines,
        metadata=dict(batch.metadata),
        gst_enabled=batch.gst_enabled,
        gst_rate=batch.gst_rate,
    )


def _money(cents: int) -> str:
    return f"{Decimal(cents) / Decimal(100):,.2f}"


def _party_block(title: str, party: dict) -> str:
    parts = [f"<b>{title}</b>", escape(party.get("name") or "-")]
    for key in ("address", "contact", "state", "gstin"):
        if party.get(key):
            parts.append(escape(str(party[key])))
    return "<br/>".join(parts)


def render_invoice_pdf(document: InvoiceDocument) -> bytes:
    settings = get_settings()
    styles = getSampleStyleSheet()
    buffer = io.BytesIO()
    pdf = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=15 * mm,
        rightMargin=15 * mm,
        topMargin=15 * mm,
        bottomMargin=15 * mm,
        title=f"Tax Invoice {document.invoice_no}",
        # Fixed timestamps and ids: a regenerated invoice is byte-identical.
        invariant=1,
    )

    meta = document.metadata
    story = [
        Paragraph(escape(settings.seller_name), styles["Title"]),
        Paragraph("Tax Invoice" if document.gst_enabled else "Dispatch Invoice", styles["Heading2"]),
        Paragraph(
            f"Invoice No: {document.invoice_no} &nbsp; Order No: {document.order_no} &nbsp; "
            f"Date: {document.issued_at.date().isoformat()}",
            styles["Normal"],
        ),
    ]
    seller_lines = [settings.seller_address, settings.seller_state]
    if settings.seller_gstin:
        seller_lines.append(f"GSTIN: {settings.seller_gstin}")
    for text in seller_lines:
        if text:
            story.append(Paragraph(escape(text), styles["Normal"]))
    story.append(
        Paragraph(
            f"Dispatch: {escape(str(meta.get('dispatch_type') or '-'))} &nbsp; "
            f"Vehicle: {escape(str(meta.get('vehicle_no') or '-'))}",
            styles["Normal"],
        )
    )
    story.append(Spacer(1, 4 * mm))
    story.append(
        Table(
            [
                [
                    Paragraph(_party_block("Consignee", meta.get("consignee") or {}), styles["Normal"]),
                    Paragraph(_party_block("Buyer", meta.get("buyer") or {}), styles["Normal"]),
                ]
            ],
            colWidths=[90 * mm, 90 * mm],
        )
    )
    story.append(Spacer(1, 6 * mm))

    rows = [["#", "Description", "Qty", "Unit", "Rate", "Disc %", "Amount"]]
    for index, line in enumerate(document.lines, start=1):
        rows.append(
            [
                str(index),
                line.product_name,
                decimal_text(line.quantity),
                unit_label(line.unit_type),
                _money(line.unit_rate_cents),
                decimal_text(line.discount_pct),
                _money(line.amount_cents),
            ]
        )
    rows.append(["", "", "", "", "", "Taxable", _money(document.taxable_cents)])
    if document.gst_enabled:
        rows.append(["", "", "", "", "", f"GST {decimal_text(document.gst_rate)}%", _money(document.gst_cents)])
    rows.append(["", "", "", "", "", "Total", _money(document.total_cents)])

    table = Table(rows, repeatRows=1, colWidths=[8 * mm, 62 * mm, 20 * mm, 16 * mm, 24 * mm, 20 * mm, 30 * mm])
    table.setStyle(
        TableStyle(
            [
                ("GRID", (0, 0), (-1, len(document.lines)), 0.5, colors.grey),
                ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
                ("ALIGN", (2, 1), (-1, -1), "RIGHT"),
                ("FONTNAME", (5, len(document.lines) + 1), (-1, -1), "Helvetica-Bold"),
            ]
        )
    )
    story.append(table)
    if meta.get("notes"):
        story.append(Spacer(1, 4 * mm))
        story.append(Paragraph(escape(str(meta["notes"])), styles["Italic"]))

    pdf.build(story)
    return buffer.getvalue()
