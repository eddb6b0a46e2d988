#!/usr/bin/env python3
"""Command-line interface for membership reconciliation.

Operators use this CLI to inspect and repair a single member's state
against the billing provider.

Usage:
    python -m membership_sdk.reconciliation.cli validate --email member@example.com
    python -m membership_sdk.reconciliation.cli reconcile --email member@example.com --actor ops@example.com
    python -m membership_sdk.reconciliation.cli cleanup-webhooks --days 30
"""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from ..connectors import BillingGateway, StripeGateway
from ..database import DatabaseManager
from ..errors import MembershipError
from ..webhooks.idempotency import WebhookIdempotencyGuard
from .report import format_result
from .service import ReconciliationService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _emit(output: str, output_file: Optional[str]) -> None:
    if output_file:
        with open(output_file, "w") as f:
            f.write(output)
        logger.info(f"Report written to {output_file}")
    else:
        print(output)


async def validate_async(
    email: str,
    gateway: BillingGateway,
    database_url: Optional[str] = None,
    output_format: str = "text",
    output_file: Optional[str] = None,
) -> int:
    """Print the reconciliation report for an email.

    Returns:
        0 if in sync, 1 if discrepancies were found, 2 on error.
    """
    db = DatabaseManager(database_url)
    await db.initialize()
    try:
        async with db.session() as session:
            service = ReconciliationService(session, gateway)
            report = await service.build_report(email)
            _emit(service.generate_report(report, format=output_format), output_file)
            if report.in_sync:
                return 0
            logger.warning(f"Discrepancies for {report.email}: {[t.value for t in report.discrepancies]}")
            return 1
    except MembershipError as e:
        logger.error(f"Validation failed: {e}")
        return 2
    finally:
        await db.shutdown()


async def reconcile_async(
    email: str,
    gateway: BillingGateway,
    actor_id: Optional[str] = None,
    database_url: Optional[str] = None,
    output_format: str = "text",
    output_file: Optional[str] = None,
) -> int:
    """Execute reconciliation for an email.

    Returns:
        0 on success (including already in sync), 2 on failure.
    """
    db = DatabaseManager(database_url)
    await db.initialize()
    try:
        async with db.session() as session:
            service = ReconciliationService(session, gateway)
            result = await service.reconcile(email, actor_id=actor_id or "cli")
            if output_format == "json":
                output = result.model_dump_json(indent=2)
            else:
                output = format_result(result)
            _emit(output, output_file)
            return 0 if result.success else 2
    finally:
        await db.shutdown()


async def cleanup_webhooks_async(days: int, database_url: Optional[str] = None) -> int:
    db = DatabaseManager(database_url)
    await db.initialize()
    try:
        async with db.session() as session:
            deleted = await WebhookIdempotencyGuard(session).cleanup(older_than_days=days)
            print(f"Deleted {deleted} webhook events older than {days} days")
            return 0
    finally:
        await db.shutdown()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="membership-reconcile",
        description="Membership reconciliation tools for comparing billing and stored records.",
    )
    parser.add_argument(
        "--database-url",
        help="Database URL (default: DATABASE_URL or local SQLite)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    for name, help_text in (
        ("validate", "Show discrepancies for a member without changing anything"),
        ("reconcile", "Apply corrections for a member"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--email", "-e", required=True, help="Member email")
        sub.add_argument(
            "--format", "-f",
            choices=["json", "text"],
            default="text",
            help="Output format (default: text)",
        )
        sub.add_argument("--output", "-o", help="Output file path (default: stdout)")
        if name == "reconcile":
            sub.add_argument("--actor", help="Actor id recorded in the audit log (default: cli)")

    cleanup = subparsers.add_parser("cleanup-webhooks", help="Delete old webhook ledger entries")
    cleanup.add_argument("--days", type=int, default=30, help="Retention in days (default: 30)")

    return parser


def main(args: Optional[list] = None, gateway: Optional[BillingGateway] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).
        gateway: Optional billing gateway; defaults to Stripe.

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == "cleanup-webhooks":
        if parsed_args.days < 0:
            logger.error("--days must be non-negative")
            return 1
        return asyncio.run(cleanup_webhooks_async(parsed_args.days, parsed_args.database_url))

    gateway = gateway or StripeGateway()

    if parsed_args.command == "validate":
        return asyncio.run(validate_async(
            email=parsed_args.email,
            gateway=gateway,
            database_url=parsed_args.database_url,
            output_format=parsed_args.format,
            output_file=parsed_args.output,
        ))

    if parsed_args.command == "reconcile":
        return asyncio.run(reconcile_async(
            email=parsed_args.email,
            gateway=gateway,
            actor_id=parsed_args.actor,
            database_url=parsed_args.database_url,
            output_format=parsed_args.format,
            output_file=parsed_args.output,
        ))

    return 0


if __name__ == "__main__":
    sys.exit(main())
