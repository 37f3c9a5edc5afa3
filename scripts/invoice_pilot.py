"""Entry point that files Gmail invoice attachments into Google Drive."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import sys

from pydantic import ValidationError

# Ensure project root is on sys.path when running as a script
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from invoice_pilot.app import InvoicePilot, configure_logging
from invoice_pilot.config import Settings
from invoice_pilot.errors import InvoicePilotError
from invoice_pilot.models import AccountRole, RunResult
from invoice_pilot.schedule import parse_date_range


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="invoice-pilot", description="Automated invoice fetcher from Gmail to Google Drive."
    )
    commands = parser.add_subparsers(dest="command", required=True)

    manual = commands.add_parser("manual", help="Fetch invoices immediately")
    manual.add_argument(
        "--date-range",
        help="Custom range as YYYY-MM-DD:YYYY-MM-DD (defaults to the previous month)",
    )

    commands.add_parser("scheduled", help="Run only on the configured FETCH_INVOICES_DAY")

    auth = commands.add_parser("auth", help="Manage authentication tokens")
    auth.add_argument(
        "action",
        choices=["gmail", "drive", "reset"],
        help="Re-authenticate one account, or clear both tokens",
    )
    return parser


def exit_code(result: RunResult | None) -> int:
    if result is not None and result.aborted:
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if getattr(args, "date_range", None):
        try:
            parse_date_range(args.date_range)
        except ValueError as exc:
            parser.error(str(exc))

    try:
        settings = Settings()
    except ValidationError as exc:
        logging.basicConfig(level=logging.ERROR)
        logging.error("Invalid configuration: %s", exc)
        return 1
    configure_logging(settings.effective_log_level)
    pilot = InvoicePilot(settings)

    try:
        if args.command == "manual":
            return exit_code(pilot.run_manual(args.date_range))
        if args.command == "scheduled":
            return exit_code(pilot.run_scheduled())
        if args.action == "reset":
            pilot.reset()
        else:
            pilot.reauthorize(AccountRole(args.action))
            logging.info("%s re-authenticated successfully", AccountRole(args.action).display_name)
    except InvoicePilotError as exc:
        logging.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
