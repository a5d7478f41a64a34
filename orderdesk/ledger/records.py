from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import desc, func, select
from sqlalchemy.orm import Session

from orderdesk.dispatch.errors import NotFoundError, ValidationError
from orderdesk.dispatch.models import CommittedLine, DispatchBatch
from orderdesk.ledger.canonical import decimal_text, sha256_hex
from orderdesk.persistence.models import DispatchBatchModel, OrderModel

GENESIS_HASH = "0" * 64


def _plain_metadata(value: Any) -> Any:
    # Canonical hashing refuses floats; keep their printed form instead.
    if isinstance(value, dict):
        return {str(k): _plain_metadata(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain_metadata(v) for v in value]
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, Decimal):
        return decimal_text(value)
    return value


def invoice_number(order_no: int, sequence_no: int) -> str:
    return f"DISP-{order_no}-{sequence_no}"


class DispatchRecordStore:
    """Append-only history of committed dispatch batches, chained per order."""

    def __init__(self, session: Session):
        self.session = session

    def _latest_record_hash(self, order_id: str) -> str:
        stmt = (
            select(DispatchBatchModel.record_hash)
            .where(DispatchBatchModel.order_id == order_id)
            .order_by(desc(DispatchBatchModel.sequence_no))
            .limit(1)
        )
        return self.session.scalar(stmt) or GENESIS_HASH

    def _next_sequence_no(self, order_id: str) -> int:
        stmt = select(func.max(DispatchBatchModel.sequence_no)).where(DispatchBatchModel.order_id == order_id)
        return int(self.session.scalar(stmt) or 0) + 1

    def _hash_input(self, row: DispatchBatchModel) -> dict:
        return {
            "batch_id": row.batch_id,
            "order_id": row.order_id,
            "sequence_no": row.sequence_no,
            "invoice_no": row.invoice_no,
            "created_at": row.created_at,
            "lines": row.lines,
            "metadata": row.dispatch_metadata,
            "gst_enabled": row.gst_enabled,
            "gst_rate": Decimal(row.gst_rate),
            "idempotency_key": row.idempotency_key,
            "prev_hash": row.prev_hash,
        }

    def _to_batch(self, row: DispatchBatchModel, order_no: int) -> DispatchBatch:
        return DispatchBatch(
            batch_id=row.batch_id,
            order_id=row.order_id,
            order_no=order_no,
            sequence_no=row.sequence_no,
            invoice_no=row.invoice_no,
            created_at=row.created_at,
            lines=[
                CommittedLine(
                    line_id=item["line_id"],
                    product_ref=item["product_ref"],
                    product_name=item.get("product_name", ""),
                    quantity=Decimal(item["quantity"]),
                    unit_type=item["unit_type"],
                )
                for item in row.lines
            ],
            metadata=dict(row.dispatch_metadata or {}),
            gst_enabled=row.gst_enabled,
            gst_rate=Decimal(row.gst_rate),
            idempotency_key=row.idempotency_key,
            prev_hash=row.prev_hash,
            record_hash=row.record_hash,
        )

    def _order_no(self, order_id: str) -> int:
        order_no = self.session.scalar(select(OrderModel.order_no).where(OrderModel.order_id == order_id))
        if order_no is None:
            raise NotFoundError(f"order not found: {order_id}")
        return int(order_no)

    def append(
        self,
        order_id: str,
        lines: list[CommittedLine],
        metadata: dict[str, Any],
        gst_enabled: bool,
        gst_rate: Decimal,
        idempotency_key: str | None = None,
        created_at: datetime | None = None,
    ) -> DispatchBatch:
        """Persist a committed batch.

        Must run inside the coordinator's transaction, after the ledger
        deduction and before commit, so both land or neither does.
        """
        order_no = self._order_no(order_id)
        sequence_no = self._next_sequence_no(order_id)
        row = DispatchBatchModel(
            batch_id=str(uuid.uuid4()),
            order_id=order_id,
            sequence_no=sequence_no,
            invoice_no=invoice_number(order_no, sequence_no),
            created_at=(created_at or datetime.now(timezone.utc)).astimezone(timezone.utc),
            lines=[
                {
                    "line_id": line.line_id,
                    "product_ref": line.product_ref,
                    "product_name": line.product_name,
                    "quantity": decimal_text(line.quantity),
                    "unit_type": line.unit_type,
                }
                for line in lines
            ],
            dispatch_metadata=_plain_metadata(metadata),
            gst_enabled=gst_enabled,
            gst_rate=gst_rate,
            idempotency_key=idempotency_key,
            prev_hash=self._latest_record_hash(order_id),
            record_hash="",
        )
        row.record_hash = sha256_hex(self._hash_input(row))
        self.session.add(row)
        self.session.flush()
        return self._to_batch(row, order_no)

    def list_by_order(self, order_id: str) -> list[DispatchBatch]:
        order_no = self._order_no(order_id)
        stmt = (
            select(DispatchBatchModel)
            .where(DispatchBatchModel.order_id == order_id)
            .order_by(DispatchBatchModel.sequence_no.asc())
        )
        return [self._to_batch(row, order_no) for row in self.session.scalars(stmt).all()]

    def list_all(self, page: int = 1, limit: int = 10) -> tuple[list[DispatchBatch], int]:
        """Newest batches first across every order, plus the total count."""
        if page < 1:
            raise ValidationError("page number must be greater than 0")
        if limit < 1 or limit > 100:
            raise ValidationError("limit must be between 1 and 100")

        total = int(self.session.scalar(select(func.count()).select_from(DispatchBatchModel)) or 0)
        stmt = (
            select(DispatchBatchModel, OrderModel.order_no)
            .join(OrderModel, OrderModel.order_id == DispatchBatchModel.order_id)
            .order_by(desc(DispatchBatchModel.created_at), desc(DispatchBatchModel.sequence_no))
            .offset((page - 1) * limit)
            .limit(limit)
        )
        batches = [self._to_batch(row, int(order_no)) for row, order_no in self.session.execute(stmt).all()]
        return batches, total

    def get_by_id(self, batch_id: str) -> DispatchBatch:
        row = self.session.get(DispatchBatchModel, batch_id)
        if row is None:
            raise NotFoundError(f"dispatch batch not found: {batch_id}")
        return self._to_batch(row, self._order_no(row.order_id))

    def find_by_idempotency_key(self, order_id: str, idempotency_key: str) -> DispatchBatch | None:
        row = self.session.scalar(
            select(DispatchBatchModel)
            .where(DispatchBatchModel.order_id == order_id)
            .where(DispatchBatchModel.idempotency_key == idempotency_key)
        )
        if row is None:
            return None
        return self._to_batch(row, self._order_no(order_id))

    def dispatched_totals(self, order_id: str) -> dict[str, Decimal]:
        totals: dict[str, Decimal] = {}
        for batch in self.list_by_order(order_id):
            for line_id, quantity in batch.quantities_by_line().items():
                totals[line_id] = totals.get(line_id, Decimal("0")) + quantity
        return totals

    def verify_chain(self, order_id: str) -> bool:
        stmt = (
            select(DispatchBatchModel)
            .where(DispatchBatchModel.order_id == order_id)
            .order_by(DispatchBatchModel.sequence_no.asc())
        )
        prev = GENESIS_HASH
        for row in self.session.scalars(stmt).all():
            if row.prev_hash != prev:
                return False
            if sha256_hex(self._hash_input(row)) != row.record_hash:
                return False
            prev = row.record_hash
        return True
