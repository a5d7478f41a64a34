from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum


class UnitType(str, Enum):
    SQUARE_FEET = "SQUARE_FEET"
    SQUARE_METER = "SQUARE_METER"
    NOS = "NOS"
    SET = "SET"


UNIT_LABELS: dict[UnitType, str] = {
    UnitType.SQUARE_FEET: "Sq. Ft.",
    UnitType.SQUARE_METER: "Sq. M.",
    UnitType.NOS: "Nos",
    UnitType.SET: "Set",
}


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PARTIALLY_DISPATCHED = "PARTIALLY_DISPATCHED"
    COMPLETED = "COMPLETED"


def unit_label(unit_type: str) -> str:
    try:
        return UNIT_LABELS[UnitType(unit_type)]
    except ValueError:
        return unit_type


def line_amount_cents(quantity: Decimal, unit_rate_cents: int, discount_pct: Decimal = Decimal("0")) -> int:
    gross = Decimal(quantity) * Decimal(unit_rate_cents)
    net = gross * (Decimal("100") - Decimal(discount_pct)) / Decimal("100")
    return int(net.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class OrderLine:
    line_id: str
    product_ref: str
    ordered_quantity: Decimal
    remaining_quantity: Decimal
    unit_type: str = UnitType.NOS.value
    unit_rate_cents: int = 0
    discount_pct: Decimal = Decimal("0")
    cash_rate_cents: int | None = None
    product_name: str = ""

    @property
    def dispatched_quantity(self) -> Decimal:
        return self.ordered_quantity - self.remaining_quantity

    @property
    def amount_cents(self) -> int:
        return line_amount_cents(self.ordered_quantity, self.unit_rate_cents, self.discount_pct)


@dataclass
class OrderAggregate:
    order_id: str
    order_no: int
    client_ref: str
    created_at: datetime
    due_date: date | None = None
    gst_rate: Decimal = Decimal("0")
    lines: list[OrderLine] = field(default_factory=list)
    version: int = 0

    @property
    def total_amount_cents(self) -> int:
        return sum(line.amount_cents for line in self.lines)

    @property
    def total_ordered(self) -> Decimal:
        return sum((line.ordered_quantity for line in self.lines), Decimal("0"))

    @property
    def total_remaining(self) -> Decimal:
        return sum((line.remaining_quantity for line in self.lines), Decimal("0"))

    @property
    def status(self) -> OrderStatus:
        from orderdesk.domain.orders.status import resolve_status

        return resolve_status(self.lines)

    def line(self, line_id: str) -> OrderLine | None:
        for item in self.lines:
            if item.line_id == line_id:
                return item
        return None
