#!/usr/bin/env python3
# cli.py
import argparse
import json
import logging
import sys

from pydantic import ValidationError

from scansync.agent import SyncAgent
from scansync.config import SYNC_QUEUE_PATH, configure_logging

log = logging.getLogger(__name__)


def _print(obj):
    print(json.dumps(obj, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="scansync-agent", description="Offline count queue for one device")
    ap.add_argument("--queue", default=SYNC_QUEUE_PATH, help="Queue file")
    ap.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING...")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show queue statistics")
    sub.add_parser("sync", help="Run one sync pass now")

    count = sub.add_parser("count", help="Queue a count")
    count.add_argument("--product", required=True, help="Product UUID")
    count.add_argument("--quantity", required=True, type=int)
    count.add_argument("--expected", type=int, default=None, help="Quantity the counter saw before counting")
    count.add_argument("--verified", action="store_true", help="Apply the count to the product quantity")
    count.add_argument("--location")
    count.add_argument("--notes")

    dl = sub.add_parser("dead-letter", help="List, requeue or discard dead-lettered operations")
    group = dl.add_mutually_exclusive_group()
    group.add_argument("--requeue", metavar="ID")
    group.add_argument("--discard", metavar="ID")
    dl.add_argument("--expected", type=int, default=None, help="New expected quantity when requeuing a count")

    sub.add_parser("clear", help="Drop every pending operation")
    return ap


def main(argv=None, agent=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level.upper() if args.log_level else None)
    agent = agent or SyncAgent(queue_path=args.queue)

    if args.command == "status":
        _print(agent.status())
        return 0

    if args.command == "sync":
        report = agent.sync_now()
        _print(report.model_dump(mode="json"))
        return 0 if report.skipped_reason != "offline" else 2

    if args.command == "count":
        try:
            op_id = agent.record_count(
                args.product,
                args.quantity,
                expected_previous_quantity=args.expected,
                verified=args.verified,
                location=args.location,
                notes=args.notes,
            )
        except ValidationError as e:
            print(f"Invalid count: {e}", file=sys.stderr)
            return 1
        _print({"queued": op_id})
        return 0

    if args.command == "dead-letter":
        if args.requeue:
            payload = None
            if args.expected is not None:
                entry = next((d for d in agent.queue.dead_letters() if d.operation.id == args.requeue), None)
                if entry is not None:
                    payload = dict(entry.operation.payload, expected_previous_quantity=args.expected)
            ok = agent.queue.requeue_dead_letter(args.requeue, payload)
            _print({"requeued": ok})
            return 0 if ok else 1
        if args.discard:
            ok = agent.queue.discard_dead_letter(args.discard)
            _print({"discarded": ok})
            return 0 if ok else 1
        _print([d.model_dump(mode="json") for d in agent.queue.dead_letters()])
        return 0

    if args.command == "clear":
        agent.queue.clear()
        _print({"cleared": True})
        return 0

    return 1


if __name__ == "__main__":
    sys.exit(main())
