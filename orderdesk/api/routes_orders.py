from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from orderdesk.api.utils import order_to_dict
from orderdesk.domain.orders.commands import OrderCreateRequest, list_orders, load_order, place_order
from orderdesk.persistence.pg import get_session
from orderdesk.reconciliation.rules import run_order_reconciliation

router = APIRouter(tags=["orders"])


@router.post("/order", status_code=201)
def create_order(request: OrderCreateRequest, session: Session = Depends(get_session)):
    order = place_order(session, request)
    return {
        "message": "Order created successfully",
        "orderId": order.order_id,
        "orderNo": order.order_no,
    }


# Registered before /order/{order_id} so "all" is not taken for an id.
@router.get("/order/all")
def get_all_orders(
    page: int = Query(default=1),
    limit: int = Query(default=10),
    session: Session = Depends(get_session),
):
    orders, pagination = list_orders(session, page=page, limit=limit)
    return {
        "orders": [order_to_dict(order) for order in orders],
        "pagination": {
            "currentPage": pagination["current_page"],
            "totalPages": pagination["total_pages"],
            "totalOrders": pagination["total_orders"],
            "hasNextPage": pagination["has_next_page"],
            "hasPrevPage": pagination["has_prev_page"],
        },
    }


@router.get("/order/{order_id}")
def get_order(order_id: str, session: Session = Depends(get_session)):
    return order_to_dict(load_order(session, order_id))


@router.get("/order/{order_id}/reconciliation")
def get_order_reconciliation(order_id: str, session: Session = Depends(get_session)):
    results = run_order_reconciliation(session, order_id)
    return {
        "orderId": order_id,
        "passed": all(item.passed for item in results),
        "results": [{"rule": item.rule, "passed": item.passed, "detail": item.detail} for item in results],
    }
