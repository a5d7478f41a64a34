from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from orderdesk.dispatch.errors import LineError
from orderdesk.domain.orders.aggregates import UnitType


class DispatchLineRequest(BaseModel):
    """One requested line of a dispatch.

    Lines are addressed by ``line_id`` or, as the dashboard does, by
    ``product_ref``. Only the quantity's precision is checked here, to the
    ledger's three decimal places; a zero or negative quantity is reported
    per line by the coordinator rather than failing the whole body.
    """

    line_id: str | None = None
    product_ref: str | None = None
    quantity: Decimal = Field(max_digits=18, decimal_places=3)
    unit_type: UnitType | None = None

    @model_validator(mode="after")
    def _addressed(self) -> "DispatchLineRequest":
        if not self.line_id and not self.product_ref:
            raise ValueError("line_id or product_ref is required")
        return self


class Party(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    address: str = ""
    contact: str = ""
    state: str = ""
    gstin: str = ""


class DispatchMetadata(BaseModel):
    """Logistics details printed on the invoice; opaque to allocation."""

    model_config = ConfigDict(extra="allow")

    dispatch_type: str = "By Road"
    vehicle_no: str = ""
    address: str = ""
    dispatch_date: date | None = None
    consignee: Party = Field(default_factory=Party)
    buyer: Party = Field(default_factory=Party)
    notes: str = ""


class CommittedLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    line_id: str
    product_ref: str
    product_name: str = ""
    quantity: Decimal
    unit_type: str


class DispatchBatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_id: str
    order_id: str
    order_no: int
    sequence_no: int
    invoice_no: str
    created_at: datetime
    lines: list[CommittedLine]
    metadata: dict[str, Any] = Field(default_factory=dict)
    gst_enabled: bool = False
    gst_rate: Decimal = Decimal("0")
    idempotency_key: str | None = None
    prev_hash: str = "0" * 64
    record_hash: str = ""

    @field_validator("created_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def total_quantity(self) -> Decimal:
        return sum((line.quantity for line in self.lines), Decimal("0"))

    def quantities_by_line(self) -> dict[str, Decimal]:
        totals: dict[str, Decimal] = {}
        for line in self.lines:
            totals[line.line_id] = totals.get(line.line_id, Decimal("0")) + line.quantity
        return totals


@dataclass(frozen=True)
class Committed:
    batch: DispatchBatch
    replayed: bool = False
    kind: Literal["committed"] = "committed"


@dataclass(frozen=True)
class Rejected:
    reason: str
    lines: list[LineError] = field(default_factory=list)
    # "validation_error" when the request itself is at fault, "conflict" when a retry may succeed.
    error_code: str = "validation_error"
    kind: Literal["rejected"] = "rejected"


DispatchOutcome = Union[Committed, Rejected]
