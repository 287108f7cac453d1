# File: carpso/main.py
"""
Main application entry point for the Carpso Engine

Subcommands:
- estimate: price a parking session
- rules: list pricing rules and pass definitions
- demo: walk through reserve -> confirm -> complete -> notify on in-memory stores
"""

from datetime import datetime, timedelta
from typing import List, Optional
import argparse
import json
import sys

from .config import load_config, setup_logging
from .domain.models import UserTier
from .domain.timers import ManualTicker
from .infrastructure.factories import ServiceFactory, CarpsoServices


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="carpso", description="Carpso parking pricing and spot lifecycle engine")
    parser.add_argument("--config", help="Path to a YAML configuration file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    estimate = subparsers.add_parser("estimate", help="Estimate the cost of a parking session")
    estimate.add_argument("--lot", required=True, help="Parking lot id, e.g. lot_A")
    estimate.add_argument("--minutes", type=int, required=True, help="Requested duration in minutes")
    estimate.add_argument("--user", help="User id, enables pass coverage")
    estimate.add_argument("--tier", choices=[tier.value for tier in UserTier], default=UserTier.BASIC.value)
    estimate.add_argument("--at", help="ISO timestamp to price at (default: now)")

    subparsers.add_parser("rules", help="List pricing rules ordered by priority")

    demo = subparsers.add_parser("demo", help="Run the reservation walkthrough on in-memory stores")
    demo.add_argument("--lot", default="lot_A")
    demo.add_argument("--spot", default="A-12")
    return parser


def run_estimate(services: CarpsoServices, args: argparse.Namespace) -> int:
    data = {"lot_id": args.lot, "duration_minutes": args.minutes, "user_tier": args.tier}
    if args.user:
        data["user_id"] = args.user
    if args.at:
        data["at"] = args.at

    result = services.commands.handle({"type": "estimate_cost", "data": data})
    print(json.dumps(result, indent=2))
    return 0 if result["success"] else 1


def run_rules(services: CarpsoServices) -> int:
    result = services.commands.handle({"type": "list_rules", "data": {}})
    for rule in result["data"]:
        scope = rule.get("lot_id") or "global"
        kind = "pass" if rule.get("is_pass") else "rule"
        print(f"{rule['priority']:>4}  {kind:<4}  {scope:<8}  {rule['rule_id']:<28} {rule['description']}")
    return 0


def run_demo(services: CarpsoServices, lot_id: str, spot_id: str) -> int:
    """Two users contend for one spot; the first parks, the second is notified"""
    print("=" * 70)
    print("Carpso reservation walkthrough")
    print("=" * 70)

    start = datetime.now()
    services.queues.join_queue("user_alice", spot_id)
    services.queues.join_queue("user_bob", spot_id)
    head = services.queues.notify_next_in_queue(spot_id)
    print(f"Queue for {spot_id}: {services.queues.get_queue_length(spot_id)} waiting, head {head.user_id}")

    session = services.reservations.open_reservation("user_alice", lot_id, spot_id)
    estimate = services.reservations.refresh_estimate(session)
    print(f"Estimate for {session.duration_minutes} min at {lot_id}: {estimate.cost} ({estimate.applied_rule})")

    ticker = ManualTicker(session.timer)
    ticker.advance(5)
    session.timer.pointer_down()
    session.timer.pointer_up(session.timer.threshold)
    print(f"Reservation {session.session_id}: {session.state.value}, {session.timer.time_left}s left")

    if session.record is None:
        print("Reservation did not open a parking record")
        return 1

    record = services.reservations.complete_parking(session.record.record_id, end_time=start + timedelta(minutes=95))
    print(f"Completed {record.record_id}: {record.duration_minutes} min, {record.cost} via {record.payment_method}")

    head = services.queues.notify_next_in_queue(spot_id)
    print(f"Next in queue for {spot_id}: {head.user_id if head else 'nobody'}")
    if services.notifications is not None:
        print(f"Notifications sent: {[notification.recipient for notification in services.notifications.sent]}")

    print()
    print(services.ledger.convert_to_csv(services.ledger.get_parking_records(user_id="user_alice")))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config)
    logger = setup_logging(config)
    logger.info(f"Starting Carpso ({args.command})")

    factory = ServiceFactory()
    if args.command == "demo":
        services = factory.create_in_memory_services()
    else:
        services = factory.create_from_config(config)

    try:
        if args.command == "estimate":
            return run_estimate(services, args)
        if args.command == "rules":
            return run_rules(services)
        return run_demo(services, args.lot, args.spot)
    finally:
        services.close()


if __name__ == "__main__":
    sys.exit(main())
