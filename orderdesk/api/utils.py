from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

from orderdesk.dispatch.models import DispatchBatch
from orderdesk.domain.orders.aggregates import OrderAggregate


def quantity_json(value: Decimal) -> int | float:
    value = Decimal(value)
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def cents_to_amount(cents: int) -> float:
    return float(Decimal(cents) / Decimal(100))


def iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def iso_date(value: date | None) -> str | None:
    return value.isoformat() if value else None


def order_to_dict(order: OrderAggregate) -> dict:
    return {
        "orderId": order.order_id,
        "orderNo": order.order_no,
        "clientId": order.client_ref,
        "date": iso_utc(order.created_at),
        "dueDate": iso_date(order.due_date),
        "gstRate": quantity_json(order.gst_rate),
        "status": order.status.value,
        "quantity": quantity_json(order.total_ordered),
        "remainingQuantity": quantity_json(order.total_remaining),
        "totalAmount": cents_to_amount(order.total_amount_cents),
        "totalAmountCents": order.total_amount_cents,
        "products": [
            {
                "lineId": line.line_id,
                "productId": line.product_ref,
                "productName": line.product_name,
                "unitType": line.unit_type,
                "quantity": quantity_json(line.ordered_quantity),
                "remainingQuantity": quantity_json(line.remaining_quantity),
                "dispatchedQuantity": quantity_json(line.dispatched_quantity),
                "rateCents": line.unit_rate_cents,
                "discount": quantity_json(line.discount_pct),
                "cashRateCents": line.cash_rate_cents,
                "amountCents": line.amount_cents,
            }
            for line in order.lines
        ],
    }


def batch_to_dict(batch: DispatchBatch) -> dict:
    return {
        "dispatchId": batch.batch_id,
        "orderId": batch.order_id,
        "orderNo": batch.order_no,
        "sequenceNo": batch.sequence_no,
        "invoiceNo": batch.invoice_no,
        "date": iso_utc(batch.created_at),
        "gstEnabled": batch.gst_enabled,
        "gstRate": quantity_json(batch.gst_rate),
        "idempotencyKey": batch.idempotency_key,
        "metadata": batch.metadata,
        "recordHash": batch.record_hash,
        "lines": [
            {
                "lineId": line.line_id,
                "productId": line.product_ref,
                "productName": line.product_name,
                "quantity": quantity_json(line.quantity),
                "unitType": line.unit_type,
            }
            for line in batch.lines
        ],
    }
