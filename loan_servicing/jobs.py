"""
Periodic job trigger.

An external scheduler (cron, systemd timer) runs one of these once a day:

    loan-servicing-jobs sweep
    loan-servicing-jobs recalculate-inconsistent
    loan-servicing-jobs recalculate-all

Each prints a JSON summary to stdout and exits non-zero when any loan failed.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from datetime import date
from typing import List, Optional

from .config import LoanServicingConfig, get_config
from .logging_config import setup_logging_from_config
from .servicing import LoanServicing


logger = logging.getLogger(__name__)


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Not an ISO date: {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loan-servicing-jobs",
        description="Run loan servicing batch jobs"
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="Overrides LOANSVC_DATABASE_URL",
    )
    subparsers = parser.add_subparsers(dest="job", required=True)

    sweep = subparsers.add_parser("sweep", help="Re-evaluate installment grace and overdue status")
    sweep.add_argument(
        "--today",
        type=_parse_date,
        default=None,
        help="Evaluate as of this date instead of the current date (YYYY-MM-DD)",
    )
    subparsers.add_parser("recalculate-all", help="Rebuild tracking of every loan from its payments")
    subparsers.add_parser(
        "recalculate-inconsistent",
        help="Rebuild tracking only for loans that disagree with a replay",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.database_url:
        config = LoanServicingConfig(database_url=args.database_url)
    else:
        config = get_config()
    setup_logging_from_config(config)

    servicing = LoanServicing.from_config(config)
    stop_event = threading.Event()

    def _request_stop(signum, frame):
        logger.warning("Received signal %s, stopping after the current loan", signum)
        stop_event.set()

    previous = {sig: signal.signal(sig, _request_stop) for sig in (signal.SIGTERM, signal.SIGINT)}

    try:
        if args.job == "sweep":
            result = servicing.run_status_sweep(args.today)
            failed = result.failed
        elif args.job == "recalculate-all":
            result = servicing.recalculate_all(stop_event)
            failed = result.failed
        else:
            result = servicing.recalculate_inconsistent(stop_event)
            failed = result.failed
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        servicing.storage.close()

    print(json.dumps({'job': args.job, **result.to_dict()}, indent=2))
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
