from __future__ import annotations

import math
from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from orderdesk.api.utils import batch_to_dict, iso_utc, order_to_dict
from orderdesk.dispatch.coordinator import DispatchCoordinator
from orderdesk.dispatch.errors import ConflictError, ValidationError
from orderdesk.dispatch.models import Committed, DispatchLineRequest, DispatchMetadata, Party
from orderdesk.domain.orders.aggregates import UnitType
from orderdesk.domain.orders.commands import get_order_by_no, get_order_row, load_order
from orderdesk.invoices.archive import get_archived_invoice
from orderdesk.invoices.service import issue_invoice, load_invoice_pdf
from orderdesk.ledger.records import DispatchRecordStore
from orderdesk.persistence.pg import get_session

router = APIRouter(tags=["sub-orders"])


class SubOrderItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_ref: str = Field(alias="productId", min_length=1)
    quantity: Decimal = Field(max_digits=18, decimal_places=3)
    unit_type: UnitType | None = Field(default=None, alias="unitType")
    # Informational only; the server always re-reads remaining quantities.
    remaining_quantity: Decimal | None = Field(default=None, alias="remainingQuantity")

    def to_line_request(self) -> DispatchLineRequest:
        return DispatchLineRequest(product_ref=self.product_ref, quantity=self.quantity, unit_type=self.unit_type)


class AtomicSubOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_no: int = Field(alias="orderNo")
    order_id: str | None = Field(default=None, alias="orderId")
    client_ref: str = Field(alias="clientId", min_length=1)
    sub_orders: list[SubOrderItem] = Field(default_factory=list, alias="subOrders")
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey", max_length=128)


class DispatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId")
    lines: list[SubOrderItem] = Field(default_factory=list)
    dispatch_type: str = Field(default="By Road", alias="dispatchType")
    vehicle_no: str = Field(default="", alias="vehicleNo")
    address: str = ""
    dispatch_date: date | None = Field(default=None, alias="dispatchDate")
    consignee: Party = Field(default_factory=Party)
    buyer: Party = Field(default_factory=Party)
    notes: str = ""
    gst_enabled: bool | None = Field(default=None, alias="gstEnabled")
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey", max_length=128)

    def to_metadata(self) -> DispatchMetadata:
        return DispatchMetadata(
            dispatch_type=self.dispatch_type,
            vehicle_no=self.vehicle_no,
            address=self.address,
            dispatch_date=self.dispatch_date,
            consignee=self.consignee,
            buyer=self.buyer,
            notes=self.notes,
        )


@router.post("/sub-order/atomic", status_code=201)
def create_sub_orders_atomic(request: AtomicSubOrderRequest, session: Session = Depends(get_session)):
    order = get_order_by_no(session, request.order_no)
    if request.order_id and request.order_id != order.order_id:
        raise ValidationError("Order ID does not match the order number")
    if order.client_ref != request.client_ref:
        raise ValidationError("Order number is not associated with this client")
    if not request.sub_orders:
        raise ValidationError("At least one sub-order is required")

    outcome = DispatchCoordinator(session).try_submit_dispatch(
        order.order_id,
        [item.to_line_request() for item in request.sub_orders],
        idempotency_key=request.idempotency_key,
    )

    if isinstance(outcome, Committed):
        return {
            "message": "Sub-orders created successfully",
            "committed": True,
            "replayed": outcome.replayed,
            "batchId": outcome.batch.batch_id,
            "invoiceNo": outcome.batch.invoice_no,
            "results": [
                {"productId": item.product_ref, "success": True, "message": "dispatched"}
                for item in request.sub_orders
            ],
        }

    reasons = {item.product_ref: item.reason for item in outcome.lines if item.product_ref}
    # Without per-line errors the whole request failed for one reason (busy order, reused key).
    fallback = "not committed: another line in this request was rejected" if outcome.lines else outcome.reason
    results = [
        {"productId": item.product_ref, "success": False, "message": reasons.get(item.product_ref) or fallback}
        for item in request.sub_orders
    ]
    return JSONResponse(
        status_code=409 if outcome.error_code == ConflictError.error_code else 400,
        content={"message": outcome.reason, "error": outcome.error_code, "committed": False, "results": results},
    )


@router.post("/sub-order/dispatch")
def dispatch_with_invoice(request: DispatchRequest, session: Session = Depends(get_session)):
    get_order_row(session, request.order_id)
    if not request.lines:
        raise ValidationError("At least one dispatch line is required")

    batch = DispatchCoordinator(session).submit_dispatch(
        request.order_id,
        [item.to_line_request() for item in request.lines],
        metadata=request.to_metadata(),
        gst_enabled=request.gst_enabled,
        idempotency_key=request.idempotency_key,
    )
    pdf, _ = issue_invoice(session, batch)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="{batch.invoice_no}.pdf"',
            "X-Dispatch-Id": batch.batch_id,
            "X-Invoice-No": batch.invoice_no,
        },
    )


@router.get("/sub-order/invoices/{order_id}")
def list_dispatch_history(order_id: str, session: Session = Depends(get_session)):
    order = load_order(session, order_id)
    dispatches = []
    for batch in DispatchRecordStore(session).list_by_order(order_id):
        item = batch_to_dict(batch)
        archived = get_archived_invoice(session, batch.batch_id)
        item["invoice"] = (
            {
                "objectKey": archived.object_key,
                "pdfHash": archived.pdf_hash,
                "backend": archived.backend,
                "storedAt": iso_utc(archived.stored_at),
            }
            if archived
            else None
        )
        dispatches.append(item)
    return {
        "order": order_to_dict(order),
        "count": len(dispatches),
        "dispatches": dispatches,
    }


@router.get("/sub-order/invoices/{dispatch_id}/pdf")
def get_invoice_pdf(dispatch_id: str, session: Session = Depends(get_session)):
    batch, pdf, source = load_invoice_pdf(session, dispatch_id)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'inline; filename="{batch.invoice_no}.pdf"',
            "X-Dispatch-Id": batch.batch_id,
            "X-Invoice-No": batch.invoice_no,
            "X-Invoice-Source": source,
        },
    )


# Registered before /sub-order/{dispatch_id} so "all" is not taken for an id.
@router.get("/sub-order/all")
def list_all_dispatches(
    page: int = Query(default=1),
    limit: int = Query(default=10),
    session: Session = Depends(get_session),
):
    batches, total = DispatchRecordStore(session).list_all(page=page, limit=limit)
    total_pages = math.ceil(total / limit)
    return {
        "subOrders": [batch_to_dict(batch) for batch in batches],
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
            "totalSubOrders": total,
            "hasNextPage": page < total_pages,
            "hasPrevPage": page > 1,
        },
    }


@router.get("/sub-order/{dispatch_id}")
def get_dispatch(dispatch_id: str, session: Session = Depends(get_session)):
    return batch_to_dict(DispatchRecordStore(session).get_by_id(dispatch_id))
