from __future__ import annotations

import logging
import math
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from orderdesk.core.config import get_settings
from orderdesk.dispatch.errors import NotFoundError, ValidationError
from orderdesk.domain.orders.aggregates import OrderAggregate, OrderLine, UnitType, line_amount_cents
from orderdesk.persistence.models import OrderCounterModel, OrderLineModel, OrderModel

logger = logging.getLogger(__name__)

ORDER_COUNTER_ID = 1


class OrderLineRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_ref: str = Field(alias="productId", min_length=1, max_length=128)
    product_name: str = Field(default="", alias="productName")
    quantity: Decimal = Field(gt=0, max_digits=18, decimal_places=3)
    unit_type: UnitType = Field(alias="unitType")
    unit_rate_cents: int = Field(alias="rateCents", ge=0, description="int paise/cents per unit")
    discount_pct: Decimal = Field(default=Decimal("0"), alias="discount", ge=0, le=100)
    cash_rate_cents: int | None = Field(default=None, alias="cashRateCents", ge=0)


class OrderCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_ref: str = Field(alias="clientId", min_length=1, max_length=128)
    lines: list[OrderLineRequest] = Field(alias="products", min_length=1)
    due_date: date | None = Field(default=None, alias="dueDate")
    gst_rate: Decimal | None = Field(default=None, alias="gstRate", ge=0, le=100)

    @field_validator("due_date")
    @classmethod
    def _not_in_past(cls, value: date | None) -> date | None:
        if value is not None and value < datetime.now(timezone.utc).date():
            raise ValueError("due date cannot be in the past")
        return value

    @model_validator(mode="after")
    def _unique_products(self) -> "OrderCreateRequest":
        seen: set[str] = set()
        for line in self.lines:
            if line.product_ref in seen:
                raise ValueError(f"duplicate product in order: {line.product_ref}")
            seen.add(line.product_ref)
        return self


def _next_order_no(session: Session) -> int:
    counter = session.scalar(
        select(OrderCounterModel).where(OrderCounterModel.id == ORDER_COUNTER_ID).with_for_update()
    )
    if counter is None:
        counter = OrderCounterModel(id=ORDER_COUNTER_ID, last_order_no=0)
        session.add(counter)
    counter.last_order_no += 1
    session.flush()
    return counter.last_order_no


def place_order(session: Session, request: OrderCreateRequest) -> OrderModel:
    gst_rate = request.gst_rate if request.gst_rate is not None else get_settings().default_gst_rate
    order = OrderModel(
        order_id=str(uuid.uuid4()),
        order_no=_next_order_no(session),
        client_ref=request.client_ref,
        created_at=datetime.now(timezone.utc),
        due_date=request.due_date,
        gst_rate=gst_rate,
        total_amount_cents=0,
        version=0,
    )
    session.add(order)

    total = 0
    for position, item in enumerate(request.lines):
        amount = line_amount_cents(item.quantity, item.unit_rate_cents, item.discount_pct)
        total += amount
        session.add(
            OrderLineModel(
                line_id=str(uuid.uuid4()),
                order_id=order.order_id,
                position=position,
                product_ref=item.product_ref,
                product_name=item.product_name or item.product_ref,
                unit_type=item.unit_type.value,
                ordered_quantity=item.quantity,
                remaining_quantity=item.quantity,
                unit_rate_cents=item.unit_rate_cents,
                discount_pct=item.discount_pct,
                cash_rate_cents=item.cash_rate_cents,
                amount_cents=amount,
            )
        )
    order.total_amount_cents = total
    session.flush()
    logger.info(
        "order placed: order_id=%s order_no=%s lines=%s total_cents=%s",
        order.order_id,
        order.order_no,
        len(request.lines),
        total,
    )
    return order


def get_order_row(session: Session, order_id: str) -> OrderModel:
    order = session.get(OrderModel, order_id)
    if order is None:
        raise NotFoundError(f"order not found: {order_id}")
    return order


def get_order_by_no(session: Session, order_no: int) -> OrderModel:
    order = session.scalar(select(OrderModel).where(OrderModel.order_no == order_no))
    if order is None:
        raise NotFoundError(f"order not found: order_no={order_no}")
    return order


def list_order_lines(session: Session, order_id: str) -> list[OrderLineModel]:
    stmt = (
        select(OrderLineModel)
        .where(OrderLineModel.order_id == order_id)
        .order_by(OrderLineModel.position.asc())
    )
    return list(session.scalars(stmt).all())


def to_aggregate(order: OrderModel, lines: list[OrderLineModel]) -> OrderAggregate:
    return OrderAggregate(
        order_id=order.order_id,
        order_no=order.order_no,
        client_ref=order.client_ref,
        created_at=order.created_at,
        due_date=order.due_date,
        gst_rate=Decimal(order.gst_rate),
        version=order.version,
        lines=[
            OrderLine(
                line_id=row.line_id,
                product_ref=row.product_ref,
                product_name=row.product_name,
                ordered_quantity=Decimal(row.ordered_quantity),
                remaining_quantity=Decimal(row.remaining_quantity),
                unit_type=row.unit_type,
                unit_rate_cents=row.unit_rate_cents,
                discount_pct=Decimal(row.discount_pct),
                cash_rate_cents=row.cash_rate_cents,
            )
            for row in lines
        ],
    )


def load_order(session: Session, order_id: str) -> OrderAggregate:
    order = get_order_row(session, order_id)
    return to_aggregate(order, list_order_lines(session, order_id))


def list_orders(session: Session, page: int = 1, limit: int = 10) -> tuple[list[OrderAggregate], dict]:
    if page < 1:
        raise ValidationError("page number must be greater than 0")
    if limit < 1 or limit > 100:
        raise ValidationError("limit must be between 1 and 100")

    total = int(session.scalar(select(func.count()).select_from(OrderModel)) or 0)
    rows = list(
        session.scalars(
            select(OrderModel)
            .order_by(OrderModel.created_at.desc(), OrderModel.order_no.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
    )
    orders = [to_aggregate(row, list_order_lines(session, row.order_id)) for row in rows]
    total_pages = math.ceil(total / limit) if total else 0
    pagination = {
        "current_page": page,
        "total_pages": total_pages,
        "total_orders": total,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }
    return orders, pagination
