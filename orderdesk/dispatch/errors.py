from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class LineError:
    line_id: str | None
    reason: str
    product_ref: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"line_id": self.line_id, "product_ref": self.product_ref, "reason": self.reason}


class FulfillmentError(Exception):
    """Base for every recoverable allocation failure.

    ``line_errors`` names the offending lines, when there are any, so the
    operator can correct just those quantities.
    """

    error_code = "fulfillment_error"

    def __init__(self, message: str, line_errors: list[LineError] | None = None):
        super().__init__(message)
        self.line_errors = list(line_errors or [])

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.error_code, "detail": str(self)}
        if self.line_errors:
            payload["lines"] = [item.to_dict() for item in self.line_errors]
        return payload


class ValidationError(FulfillmentError):
    error_code = "validation_error"


class ConflictError(FulfillmentError):
    error_code = "conflict"


class NotFoundError(FulfillmentError):
    error_code = "not_found"


class StorageError(FulfillmentError):
    error_code = "storage_error"
