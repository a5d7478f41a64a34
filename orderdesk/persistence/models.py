from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import JSON

QUANTITY = Numeric(18, 3)
PERCENT = Numeric(5, 2)


def _json_type():
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


class Base(DeclarativeBase):
    pass


class OrderCounterModel(Base):
    __tablename__ = "order_counters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_order_no: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class OrderModel(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("gst_rate >= 0", name="ck_orders_gst_rate_non_negative"),
    )

    order_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_no: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    client_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    gst_rate: Mapped[Decimal] = mapped_column(PERCENT, nullable=False, default=Decimal("0"))
    total_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    # Bumped by every ledger mutation; compare-and-set guards cross-process writers.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class OrderLineModel(Base):
    __tablename__ = "order_lines"
    __table_args__ = (
        UniqueConstraint("order_id", "product_ref", name="uq_order_lines_order_product"),
        CheckConstraint("ordered_quantity > 0", name="ck_order_lines_ordered_positive"),
        CheckConstraint("remaining_quantity >= 0", name="ck_order_lines_remaining_non_negative"),
        CheckConstraint(
            "remaining_quantity <= ordered_quantity",
            name="ck_order_lines_remaining_within_ordered",
        ),
    )

    line_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("orders.order_id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    product_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    product_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    unit_type: Mapped[str] = mapped_column(String(16), nullable=False)
    ordered_quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    remaining_quantity: Mapped[Decimal] = mapped_column(QUANTITY, nullable=False)
    unit_rate_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    discount_pct: Mapped[Decimal] = mapped_column(PERCENT, nullable=False, default=Decimal("0"))
    cash_rate_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class DispatchBatchModel(Base):
    __tablename__ = "dispatch_batches"
    __table_args__ = (
        UniqueConstraint("order_id", "sequence_no", name="uq_dispatch_batches_order_seq"),
        UniqueConstraint("order_id", "idempotency_key", name="uq_dispatch_batches_order_idem"),
    )

    batch_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("orders.order_id", ondelete="CASCADE"),
        nullable=False,
    )
    sequence_no: Mapped[int] = mapped_column(Integer, nullable=False)
    invoice_no: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    lines: Mapped[list] = mapped_column(_json_type(), nullable=False, default=list)
    dispatch_metadata: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    gst_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    gst_rate: Mapped[Decimal] = mapped_column(PERCENT, nullable=False, default=Decimal("0"))
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    record_hash: Mapped[str] = mapped_column(String(64), nullable=False)


class InvoiceArchiveModel(Base):
    __tablename__ = "invoice_archives"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("dispatch_batches.batch_id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    object_key: Mapped[str] = mapped_column(String(256), nullable=False)
    pdf_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    backend: Mapped[str] = mapped_column(String(16), nullable=False)
    stored_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


Index("ix_orders_created_at", OrderModel.created_at)
Index("ix_orders_client_ref", OrderModel.client_ref)
Index("ix_order_lines_order_id", OrderLineModel.order_id)
Index("ix_dispatch_batches_order_id", DispatchBatchModel.order_id)
