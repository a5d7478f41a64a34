from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from orderdesk.api.routes_orders import router as orders_router
from orderdesk.api.routes_sub_orders import router as sub_orders_router
from orderdesk.core.config import get_settings
from orderdesk.core.logging import configure_logging
from orderdesk.dispatch.errors import ConflictError, FulfillmentError, NotFoundError, StorageError, ValidationError
from orderdesk.persistence.pg import init_db

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title=settings.app_name)

_STATUS_BY_ERROR: dict[type[FulfillmentError], int] = {
    ValidationError: 400,
    NotFoundError: 404,
    ConflictError: 409,
    StorageError: 503,
}


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    logger.info("order desk ready: env=%s invoice_backend=%s", settings.env, settings.invoice_backend)


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR.items() if isinstance(exc, error_type)),
        400,
    )
    if status_code >= 500:
        logger.error("request failed: path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(orders_router)
app.include_router(sub_orders_router)
