from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from orderdesk.dispatch.errors import ConflictError, FulfillmentError, LineError, StorageError, ValidationError
from orderdesk.dispatch.locks import OrderLockRegistry, get_lock_registry
from orderdesk.dispatch.models import (
    Committed,
    CommittedLine,
    DispatchBatch,
    DispatchLineRequest,
    DispatchMetadata,
    DispatchOutcome,
    Rejected,
)
from orderdesk.ledger.quantity import Deduction, QuantityLedger, merge_deductions
from orderdesk.ledger.records import DispatchRecordStore
from orderdesk.persistence.models import OrderLineModel, OrderModel

logger = logging.getLogger(__name__)


def _same_request(batch: DispatchBatch, deductions: list[Deduction]) -> bool:
    return batch.quantities_by_line() == merge_deductions(deductions)


class DispatchCoordinator:
    """The single write path into the quantity ledger.

    ``submit_dispatch`` runs read-validate-deduct-record under an exclusive
    per-order lock and commits the session before the lock is released, so
    a dispatch either lands completely (ledger deduction plus record) or
    leaves no trace. Rendering and archiving invoices belong after this call.
    """

    def __init__(
        self,
        session: Session,
        locks: OrderLockRegistry | None = None,
        record_store: DispatchRecordStore | None = None,
    ):
        self.session = session
        self.locks = locks or get_lock_registry()
        self.ledger = QuantityLedger(session)
        self.records = record_store or DispatchRecordStore(session)

    def _resolve_lines(
        self,
        order_id: str,
        lines: list[DispatchLineRequest],
    ) -> tuple[list[tuple[DispatchLineRequest, OrderLineModel]], list[LineError]]:
        rows = self.ledger.line_rows(order_id)
        by_id = {row.line_id: row for row in rows}
        by_product = {row.product_ref: row for row in rows}

        resolved: list[tuple[DispatchLineRequest, OrderLineModel]] = []
        errors: list[LineError] = []
        for request in lines:
            row = by_id.get(request.line_id) if request.line_id else by_product.get(request.product_ref or "")
            if row is None:
                errors.append(
                    LineError(
                        line_id=request.line_id,
                        product_ref=request.product_ref,
                        reason=f"product is not part of order {order_id}",
                    )
                )
                continue
            if request.product_ref and request.line_id and request.product_ref != row.product_ref:
                errors.append(
                    LineError(
                        line_id=row.line_id,
                        product_ref=request.product_ref,
                        reason="line_id and product_ref refer to different lines",
                    )
                )
                continue
            if request.unit_type is not None and request.unit_type.value != row.unit_type:
                errors.append(
                    LineError(
                        line_id=row.line_id,
                        product_ref=row.product_ref,
                        reason=f"unit type {request.unit_type.value} does not match order unit {row.unit_type}",
                    )
                )
                continue
            resolved.append((request, row))
        return resolved, errors

    def _commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError("dispatch collided with a concurrent write; re-read and retry") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError("dispatch could not be persisted; nothing was deducted") from exc

    def submit_dispatch(
        self,
        order_id: str,
        lines: list[DispatchLineRequest],
        metadata: DispatchMetadata | dict[str, Any] | None = None,
        gst_enabled: bool | None = None,
        idempotency_key: str | None = None,
    ) -> DispatchBatch:
        return self._submit(order_id, lines, metadata, gst_enabled, idempotency_key).batch

    def try_submit_dispatch(
        self,
        order_id: str,
        lines: list[DispatchLineRequest],
        metadata: DispatchMetadata | dict[str, Any] | None = None,
        gst_enabled: bool | None = None,
        idempotency_key: str | None = None,
    ) -> DispatchOutcome:
        """Same as ``submit_dispatch`` but reports validation failures as a value."""
        try:
            return self._submit(order_id, lines, metadata, gst_enabled, idempotency_key)
        except (ValidationError, ConflictError) as exc:
            return Rejected(reason=str(exc), lines=exc.line_errors, error_code=exc.error_code)

    def _submit(
        self,
        order_id: str,
        lines: list[DispatchLineRequest],
        metadata: DispatchMetadata | dict[str, Any] | None,
        gst_enabled: bool | None,
        idempotency_key: str | None,
    ) -> Committed:
        if not lines:
            raise ValidationError("at least one dispatch line is required")
        if isinstance(metadata, DispatchMetadata):
            metadata_dict = metadata.model_dump(mode="json")
        else:
            metadata_dict = dict(metadata or {})

        with self.locks.hold(order_id):
            # Everything read before the lock may be stale.
            self.session.expire_all()
            try:
                return self._submit_locked(order_id, lines, metadata_dict, gst_enabled, idempotency_key)
            except FulfillmentError:
                self.session.rollback()
                raise
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.exception("dispatch storage failure: order_id=%s", order_id)
                raise StorageError("dispatch could not be persisted; nothing was deducted") from exc

    def _submit_locked(
        self,
        order_id: str,
        lines: list[DispatchLineRequest],
        metadata: dict[str, Any],
        gst_enabled: bool | None,
        idempotency_key: str | None,
    ) -> Committed:
        order: OrderModel = self.ledger.order_row(order_id)
        resolved, errors = self._resolve_lines(order_id, lines)
        deductions = [Deduction(line_id=row.line_id, quantity=Decimal(req.quantity)) for req, row in resolved]

        if idempotency_key and not errors:
            previous = self.records.find_by_idempotency_key(order_id, idempotency_key)
            if previous is not None:
                if not _same_request(previous, deductions):
                    raise ConflictError(
                        f"idempotency key {idempotency_key!r} was already used for a different dispatch"
                    )
                logger.info(
                    "dispatch replayed: order_id=%s batch_id=%s idempotency_key=%s",
                    order_id,
                    previous.batch_id,
                    idempotency_key,
                )
                self.session.rollback()
                return Committed(batch=previous, replayed=True)

        errors.extend(self.ledger.check_deductions(order_id, deductions))
        if errors:
            logger.info(
                "dispatch rejected: order_id=%s offending_lines=%s",
                order_id,
                [item.product_ref or item.line_id for item in errors],
            )
            raise ValidationError(f"dispatch rejected for order {order.order_no}", line_errors=errors)

        expected_version = order.version
        self.ledger.apply_deductions(order_id, deductions, expected_version=expected_version)

        committed_lines = [
            CommittedLine(
                line_id=row.line_id,
                product_ref=row.product_ref,
                product_name=row.product_name,
                quantity=Decimal(req.quantity),
                unit_type=row.unit_type,
            )
            for req, row in resolved
        ]
        gst_rate = Decimal(order.gst_rate)
        batch = self.records.append(
            order_id=order_id,
            lines=committed_lines,
            metadata=metadata,
            gst_enabled=(gst_rate > 0) if gst_enabled is None else gst_enabled,
            gst_rate=gst_rate,
            idempotency_key=idempotency_key,
        )
        self._commit()
        logger.info(
            "dispatch committed: order_id=%s batch_id=%s invoice_no=%s lines=%s total_qty=%s",
            order_id,
            batch.batch_id,
            batch.invoice_no,
            len(batch.lines),
            batch.total_quantity,
        )
        return Committed(batch=batch)
