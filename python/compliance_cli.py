#!/usr/bin/env python3
"""
Compliance Engine Command Line Interface

Job-runner surface over the compliance service:
- revalidate a stored transaction
- list transactions awaiting an override decision
- process a pending reclassification
- print the compliance notification of a reclassification
- list customers awaiting re-qualification

Usage:
    python compliance_cli.py revalidate <transaction-id>
    python compliance_cli.py pending-overrides
    python compliance_cli.py process-reclassification <reclassification-id>
    python compliance_cli.py notification <reclassification-id>
    python compliance_cli.py requalification
"""

import sys
import json
import uuid
import asyncio
import argparse
import logging
from pathlib import Path

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent))

from compliance.reclassification import impact_to_dict
from compliance.service import ComplianceService
from config_manager import get_config, configure_logging
from database.connection import init_db, close_db

logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def _run(args, config) -> int:
    """Run one command inside a session scope; returns the exit code."""
    db = await init_db()
    try:
        async with db.async_session_scope() as session:
            service = ComplianceService.from_session(session, config)

            if args.command == "revalidate":
                outcome = await service.revalidate_transaction(args.transaction_id)
                _print_json(outcome.to_dict())
                return 0 if outcome.can_proceed else 1

            if args.command == "pending-overrides":
                transactions = await service.get_pending_overrides()
                _print_json([
                    {
                        "transaction_id": str(t.id),
                        "external_id": t.external_id,
                        "customer": str(t.customer_key),
                        "transaction_date": t.transaction_date.isoformat(),
                        "violations": [v.error_code for v in t.violations],
                    }
                    for t in transactions
                ])
                return 0

            if args.command == "process-reclassification":
                result = await service.process_reclassification(args.reclassification_id)
                _print_json(result.to_dict())
                return 0 if result.is_valid else 1

            if args.command == "notification":
                notification, result = await service.generate_compliance_notification(
                    args.reclassification_id
                )
                _print_json(notification.to_dict() if notification else result.to_dict())
                return 0 if notification else 1

            if args.command == "requalification":
                impacts = await service.get_customers_requiring_requalification()
                _print_json([impact_to_dict(i) for i in impacts])
                return 0

            raise ValueError(f"Unknown command: {args.command}")
    finally:
        await close_db()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Controlled substance compliance engine")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    revalidate = subparsers.add_parser("revalidate", help="Revalidate a stored transaction")
    revalidate.add_argument("transaction_id", type=uuid.UUID)

    subparsers.add_parser("pending-overrides", help="List transactions awaiting an override decision")

    process = subparsers.add_parser("process-reclassification", help="Process a pending reclassification")
    process.add_argument("reclassification_id", type=uuid.UUID)

    notification = subparsers.add_parser("notification", help="Print the compliance notification")
    notification.add_argument("reclassification_id", type=uuid.UUID)

    subparsers.add_parser("requalification", help="List customers awaiting re-qualification")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    config = get_config(args.config)
    configure_logging(config)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        return asyncio.run(_run(args, config))
    except Exception as e:
        logger.error(f"Command '{args.command}' failed: {e}")
        raise


if __name__ == "__main__":
    sys.exit(main())
