"""
Command-line entry point for the Garment Fulfillment Tracker.

The workflow is driven through the service layer; this CLI exposes the
operations most often run by hand against the configured database.

Usage Examples:
    # Create the database and tables
    fulfillment-tracker init-db

    # Show an order item with its section statuses
    fulfillment-tracker show-item 12

    # Run the inventory check for an order item
    fulfillment-tracker inventory-check 12

    # Assign the next production head (round-robin)
    fulfillment-tracker assign-head 12

    # Dispatch a ready order
    fulfillment-tracker dispatch 4 --courier tcs --tracking TCS-99812 --date 2026-03-14
"""

import argparse
import json
import logging
import sys
from datetime import date

from src.services import (
    dispatch_service,
    inventory_matching_service,
    order_service,
    production_service,
)
from src.services.database import initialize_app_database
from src.services.exceptions import ServiceError
from src.utils.config import get_config


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def init_db() -> int:
    """Create the database file and tables."""
    initialize_app_database()
    print(f"Database ready at {get_config().database_path}")
    return 0


def show_item(order_item_id: int) -> int:
    item = order_service.get_order_item(order_item_id)
    _print_json(item.to_dict())
    return 0


def inventory_check(order_item_id: int) -> int:
    result = inventory_matching_service.run_inventory_check(order_item_id)
    print(f"Order item {result.order_item_id}: {result.item_status.value}")
    for requirement in result.requirements:
        print(
            f"  {requirement.sku:<16} required {requirement.required_qty:>10.3f} "
            f"available {requirement.available_qty:>10.3f} {requirement.status.value}"
        )
    if result.has_shortage:
        print(f"Procurement demands raised for {len(result.shortages)} material(s)")
    return 0


def assign_head(order_item_id: int) -> int:
    item = production_service.assign_production_head(order_item_id)
    print(f"Order item {item.id} assigned to production head {item.production_head_id}")
    return 0


def dispatch(order_id: int, courier: str, tracking: str, dispatch_date: str, notes: str = None) -> int:
    order = dispatch_service.dispatch_order(
        order_id,
        courier,
        tracking,
        date.fromisoformat(dispatch_date) if dispatch_date else None,
        notes=notes,
    )
    print(f"Order {order.order_number} dispatched via {order.dispatch_data['courier']}")
    return 0


def complete(order_id: int) -> int:
    order = dispatch_service.complete_order(order_id)
    print(f"Order {order.order_number} completed")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Garment Fulfillment Tracker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("init-db", help="Create the database and tables")

    show_parser = subparsers.add_parser("show-item", help="Show an order item")
    show_parser.add_argument("order_item_id", type=int)

    check_parser = subparsers.add_parser("inventory-check", help="Run the inventory check")
    check_parser.add_argument("order_item_id", type=int)

    head_parser = subparsers.add_parser("assign-head", help="Assign a production head")
    head_parser.add_argument("order_item_id", type=int)

    dispatch_parser = subparsers.add_parser("dispatch", help="Dispatch a ready order")
    dispatch_parser.add_argument("order_id", type=int)
    dispatch_parser.add_argument("--courier", required=True)
    dispatch_parser.add_argument("--tracking", required=True, help="Tracking number")
    dispatch_parser.add_argument("--date", dest="dispatch_date", help="Dispatch date (YYYY-MM-DD)")
    dispatch_parser.add_argument("--notes")

    complete_parser = subparsers.add_parser("complete-order", help="Complete a dispatched order")
    complete_parser.add_argument("order_id", type=int)

    return parser


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 1

    if args.command == "init-db":
        return init_db()

    initialize_app_database()
    try:
        if args.command == "show-item":
            return show_item(args.order_item_id)
        if args.command == "inventory-check":
            return inventory_check(args.order_item_id)
        if args.command == "assign-head":
            return assign_head(args.order_item_id)
        if args.command == "dispatch":
            return dispatch(args.order_id, args.courier, args.tracking, args.dispatch_date, args.notes)
        if args.command == "complete-order":
            return complete(args.order_id)
    except ServiceError as e:
        _print_json(e.to_dict())
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
