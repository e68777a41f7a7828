#!/usr/bin/env python3
"""Command-line interface for reconciliation tools.

Usage:
    python -m order_payments.reconciliation.cli sweep-orphans
    python -m order_payments.reconciliation.cli pending --older-than-minutes 60 --output pending.json
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta
from typing import Any, Dict, Optional

from ..config import Settings
from ..container import build_gateways
from ..database import (
    Base,
    create_async_engine,
    get_async_session_factory,
    get_database_url,
    utcnow,
)
from .service import ReconciliationService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _emit(data: Dict[str, Any], output_file: Optional[str]) -> None:
    output = json.dumps(data, indent=2)
    if output_file:
        with open(output_file, "w") as f:
            f.write(output)
        logger.info(f"Report written to {output_file}")
    else:
        print(output)


async def run_command_async(
    command: str,
    older_than_minutes: int = 60,
    limit: int = 100,
    output_file: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> int:
    """Run a reconciliation command.

    Args:
        command: ``sweep-orphans`` or ``pending``.
        older_than_minutes: Age after which a PENDING order is checked.
        limit: Maximum number of records handled.
        output_file: Optional output file path.
        settings: Settings to use instead of the environment.

    Returns:
        Exit code: 0 clean, 1 when anything needs attention.
    """
    settings = settings or Settings.from_env()
    engine = create_async_engine(get_database_url(settings.database_url))
    gateways = build_gateways(settings)

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        service = ReconciliationService(
            get_async_session_factory(engine),
            gateways,
            provider_timeout=settings.provider_timeout_seconds,
        )

        if command == "sweep-orphans":
            result = await service.sweep_orphaned_intents(limit=limit)
            _emit(result.model_dump(mode="json"), output_file)
            return 1 if result.total_unresolved else 0

        cutoff = utcnow() - timedelta(minutes=older_than_minutes)
        report = await service.find_pending_discrepancies(cutoff, limit=limit)
        _emit(report.to_summary_dict(), output_file)
        if report.total_discrepancies:
            logger.warning(f"{report.total_discrepancies} pending orders disagree with their provider")
            return 1
        return 0

    finally:
        for gateway in gateways.values():
            close = getattr(gateway, "close", None)
            if close is not None:
                close()
        await engine.dispose()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="reconciliation",
        description="Reconcile local orders with payment providers.",
    )
    parser.add_argument(
        "--output", "-o",
        help="Output file path (default: stdout)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of records to handle (default: 100)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser(
        "sweep-orphans",
        help="Retry cancellation of orphaned payment intents",
    )

    pending_parser = subparsers.add_parser(
        "pending",
        help="Report stale PENDING orders the provider has already settled",
    )
    pending_parser.add_argument(
        "--older-than-minutes",
        type=int,
        default=60,
        help="Only check orders older than this many minutes (default: 60)",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == "pending" and parsed_args.older_than_minutes < 0:
        logger.error("--older-than-minutes must not be negative")
        return 1

    return asyncio.run(run_command_async(
        parsed_args.command,
        older_than_minutes=getattr(parsed_args, "older_than_minutes", 60),
        limit=parsed_args.limit,
        output_file=parsed_args.output,
    ))


if __name__ == "__main__":
    sys.exit(main())
