"""Orderflow -- service order workflow engine.

Entry point that wires the database, engine, and services together and
either serves the HTTP API or runs a one-off admin command.

Usage::

    python main.py init-db                    # Create tables
    python main.py serve                      # Run the HTTP API
    python main.py list --status disputed     # List orders
    python main.py show SRV-1700000000000-00001
    python main.py resolve <order> --admin <id> --outcome refund --resolution "..."
    python main.py reassign <order> --admin <id> --to <creator> --price 500
    python main.py record-payment <order> --session cs_test_123
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from decimal import Decimal
from pathlib import Path

import uvicorn

# Ensure project root is on sys.path so that ``orderflow.*`` imports resolve.
_PROJECT_ROOT = Path(__file__).resolve().parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from config.settings import Settings
from orderflow.api.routes import create_app
from orderflow.app import build_services
from orderflow.errors import OrderflowError
from orderflow.models.database import Database
from orderflow.models.schemas import OrderFilters, ServiceOrder
from orderflow.notifications.sinks import LoggingNotificationSink
from orderflow.orchestrator.engine import coerce_status
from orderflow.utils.logger import get_logger, setup_logging

log = get_logger(__name__, component="main")


def _print_order_row(order: ServiceOrder) -> None:
    fulfiller = order.assigned_creator_id or order.creator_id
    print(
        f"  {order.order_number:<28} {order.status.value:<19} "
        f"${order.price:>9.2f}  buyer={order.buyer_id}  fulfiller={fulfiller}"
    )


def _print_order(order: ServiceOrder) -> None:
    print(f"\n  {order.order_number}  ({order.id})")
    print("  " + "-" * 50)
    print(f"    Package        : {order.package_name}")
    print(f"    Status         : {order.status.value}")
    print(f"    Buyer          : {order.buyer_id}")
    print(f"    Creator        : {order.creator_id}")
    if order.assigned_creator_id:
        print(f"    Assigned to    : {order.assigned_creator_id}")
    print(f"    Price          : ${order.price:.2f}")
    print(f"    Platform fee   : ${order.platform_fee:.2f}")
    print(f"    Creator payout : ${order.creator_payout:.2f}")
    print(f"    Revisions      : {order.revisions_used}/{order.revisions or 'unlimited'}")
    if order.due_date:
        overdue = "  (overdue)" if order.is_overdue() else ""
        print(f"    Due            : {order.due_date.isoformat()}{overdue}")
    if order.dispute:
        outcome = order.dispute.outcome.value if order.dispute.is_resolved else "open"
        print(f"    Dispute        : {outcome} - {order.dispute.reason}")
    print("\n  Activity:")
    for entry in order.activity_log:
        print(
            f"    {entry.created_at:%Y-%m-%d %H:%M}  {entry.action:<20} "
            f"{entry.performed_by}  {entry.details}"
        )
    print()


async def serve(settings: Settings, *, dry_notify: bool = False) -> None:
    """Run the HTTP API under uvicorn until SIGINT / SIGTERM."""
    app = create_app(settings, sink=LoggingNotificationSink() if dry_notify else None)
    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,
        log_level=settings.log_level.lower(),
    )
    log.info("orderflow.serving", host=settings.api_host, port=settings.api_port)
    await uvicorn.Server(config).serve()


async def main(args: argparse.Namespace) -> int:
    """Bootstrap components and run the requested command."""
    settings = Settings()
    setup_logging(settings.log_level)
    log.info("orderflow.starting", command=args.command)

    if args.command == "serve":
        await serve(settings, dry_notify=args.dry_notify)
        return 0

    async with Database(str(settings.abs_db_path)) as db:
        if args.command == "init-db":
            print(f"  Database ready at {settings.abs_db_path}")
            return 0

        services = build_services(db, settings)

        try:
            if args.command == "list":
                filters = OrderFilters(
                    status=coerce_status(args.status) if args.status else None,
                    unassigned=args.unassigned,
                    overdue=args.overdue,
                )
                orders = await services.engine.list_all(filters)
                print(f"\n  {len(orders)} order(s)\n")
                for order in orders:
                    _print_order_row(order)
                print()
            elif args.command == "show":
                _print_order(await services.engine.load(args.order))
            elif args.command == "resolve":
                order = await services.disputes.resolve(
                    args.order, args.admin, args.resolution, args.outcome
                )
                print(f"  [OK] {order.order_number} -> {order.status.value}")
            elif args.command == "reassign":
                order = await services.assignment.reassign(
                    args.order, args.to, args.admin, args.price
                )
                print(
                    f"  [OK] {order.order_number} assigned to {args.to} "
                    f"({order.status.value}, ${order.price:.2f})"
                )
            elif args.command == "record-payment":
                order = await services.payments.record_payment(args.order, args.session)
                print(f"  [OK] {order.order_number} paid (${order.price:.2f})")
        except OrderflowError as exc:
            print(f"  [ERROR] {exc.code}: {exc.message}")
            return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Orderflow - service order workflow engine",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database schema")

    serve_cmd = sub.add_parser("serve", help="Run the HTTP API")
    serve_cmd.add_argument(
        "--dry-notify",
        action="store_true",
        help="Log notifications instead of storing them",
    )

    list_cmd = sub.add_parser("list", help="List service orders (admin view)")
    list_cmd.add_argument("--status", help="Only orders in this status")
    list_cmd.add_argument("--unassigned", action="store_true", help="Unassigned custom requests")
    list_cmd.add_argument("--overdue", action="store_true", help="Past their due date")

    show_cmd = sub.add_parser("show", help="Show one order with its activity log")
    show_cmd.add_argument("order", help="Order id or order number")

    resolve_cmd = sub.add_parser("resolve", help="Resolve a disputed order")
    resolve_cmd.add_argument("order", help="Order id or order number")
    resolve_cmd.add_argument("--admin", required=True, help="Admin user id")
    resolve_cmd.add_argument(
        "--outcome",
        required=True,
        choices=["refund", "release_payment", "partial_refund", "redo"],
    )
    resolve_cmd.add_argument("--resolution", default="", help="Resolution note")

    reassign_cmd = sub.add_parser("reassign", help="Assign a fulfiller to an order")
    reassign_cmd.add_argument("order", help="Order id or order number")
    reassign_cmd.add_argument("--admin", required=True, help="Admin user id")
    reassign_cmd.add_argument("--to", required=True, help="Creator or admin user id")
    reassign_cmd.add_argument("--price", type=Decimal, default=None, help="Set the order price")

    payment_cmd = sub.add_parser(
        "record-payment", help="Mark an order paid for a confirmed checkout session"
    )
    payment_cmd.add_argument("order", help="Order id or order number")
    payment_cmd.add_argument("--session", required=True, help="Checkout session id")
    return parser


def cli() -> None:
    """Parse CLI arguments and run the event loop."""
    args = build_parser().parse_args()
    sys.exit(asyncio.run(main(args)))


if __name__ == "__main__":
    cli()
