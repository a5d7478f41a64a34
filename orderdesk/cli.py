from __future__ import annotations

import argparse
import json
from pathlib import Path

from orderdesk.api.utils import batch_to_dict, order_to_dict
from orderdesk.core.logging import configure_logging
from orderdesk.dispatch.errors import FulfillmentError
from orderdesk.domain.orders.commands import list_orders, load_order
from orderdesk.invoices.service import regenerate_invoice
from orderdesk.ledger.records import DispatchRecordStore
from orderdesk.persistence.pg import init_db, session_scope
from orderdesk.reconciliation.rules import run_order_reconciliation


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Order Desk CLI")
    parser.add_argument("--log-level", default=None)
    top = parser.add_subparsers(dest="command", required=True)

    top.add_parser("init-db", help="Create database tables")

    order = top.add_parser("order", help="Inspect orders")
    order_sub = order.add_subparsers(dest="order_command", required=True)
    show = order_sub.add_parser("show", help="Show one order with its dispatch history")
    show.add_argument("order_id")
    listing = order_sub.add_parser("list", help="List orders, newest first")
    listing.add_argument("--page", type=int, default=1)
    listing.add_argument("--limit", type=int, default=10)

    reconcile = top.add_parser("reconcile", help="Check ledger/record consistency of an order")
    reconcile.add_argument("order_id")

    invoice = top.add_parser("invoice", help="Regenerate the invoice PDF of a dispatch")
    invoice.add_argument("dispatch_id")
    invoice.add_argument("--out", default=None, help="Output path (default: <invoice_no>.pdf)")

    return parser


def _print(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _show_order(args: argparse.Namespace) -> int:
    with session_scope() as session:
        order = load_order(session, args.order_id)
        history = DispatchRecordStore(session).list_by_order(args.order_id)
        payload = order_to_dict(order)
        payload["dispatches"] = [batch_to_dict(batch) for batch in history]
    _print(payload)
    return 0


def _list_orders(args: argparse.Namespace) -> int:
    with session_scope() as session:
        orders, pagination = list_orders(session, page=args.page, limit=args.limit)
        payload = {"orders": [order_to_dict(order) for order in orders], "pagination": pagination}
    _print(payload)
    return 0


def _reconcile(args: argparse.Namespace) -> int:
    with session_scope() as session:
        results = run_order_reconciliation(session, args.order_id)
    _print(
        {
            "order_id": args.order_id,
            "results": [{"rule": item.rule, "passed": item.passed, "detail": item.detail} for item in results],
        }
    )
    return 0 if all(item.passed for item in results) else 1


def _render_invoice(args: argparse.Namespace) -> int:
    with session_scope() as session:
        batch, pdf = regenerate_invoice(session, args.dispatch_id)
    out = Path(args.out or f"{batch.invoice_no}.pdf")
    out.write_bytes(pdf)
    _print({"dispatch_id": batch.batch_id, "invoice_no": batch.invoice_no, "path": str(out), "bytes": len(pdf)})
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    init_db()

    try:
        if args.command == "init-db":
            _print({"status": "ok"})
            return 0
        if args.command == "order" and args.order_command == "show":
            return _show_order(args)
        if args.command == "order" and args.order_command == "list":
            return _list_orders(args)
        if args.command == "reconcile":
            return _reconcile(args)
        if args.command == "invoice":
            return _render_invoice(args)
    except FulfillmentError as exc:
        _print(exc.to_dict())
        return 2

    parser.error("unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
