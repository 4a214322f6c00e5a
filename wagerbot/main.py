"""
Main entry point for the wager settlement worker.

Modes:
1. Single tick: run one reconciliation pass and exit
2. Scheduled: run a reconciliation pass every POLL_INTERVAL_SECONDS
3. Operator commands: create a bet, list bets, show history, clear a review flag
"""

import argparse
import logging
import signal
import sys
import time
from typing import Optional

from wagerbot.config import Config
from wagerbot.context import WorkerContext, build_context
from wagerbot.exceptions import ConfigurationError
from wagerbot.intake import create_bet
from wagerbot.models import BetStatus, BetTerms, ProcessOutcome
from wagerbot.reconciler import Reconciler
from wagerbot.scheduler import Scheduler
from wagerbot.storage import Storage
from wagerbot.utils import format_token_amount, parse_token_amount


# Configure logging
def setup_logging() -> None:
    """Configure logging for the application."""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_level = getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO)

    handlers = [logging.StreamHandler(sys.stdout)]

    if Config.LOG_FILE:
        Config.ensure_directories()
        handlers.append(logging.FileHandler(Config.LOG_FILE))

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=handlers
    )


logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Peer-to-peer wager settlement worker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run one reconciliation tick
  python -m wagerbot.main

  # Run continuously (every 30 seconds by default)
  python -m wagerbot.main --schedule

  # Create a bet from parsed terms
  python -m wagerbot.main --create --challenger alice --challenged bob \\
      --amount 10 --deadline-hours 24 --criteria "Team A wins the final"

  # Operator: clear a review flag after reconciling a transfer by hand
  python -m wagerbot.main --clear-review 7
        """
    )
    parser.add_argument("--schedule", action="store_true",
                        help="Run in scheduled mode (continuous reconciliation)")
    parser.add_argument("--interval", type=int, default=None,
                        help="Seconds between ticks (overrides POLL_INTERVAL_SECONDS)")
    parser.add_argument("--status", action="store_true",
                        help="Show bet counts per status and flagged bets, then exit")
    parser.add_argument("--list", metavar="STATUS", choices=[s.value for s in BetStatus],
                        help="List bets in a status")
    parser.add_argument("--history", metavar="BET_ID", type=int,
                        help="Show status history and transfers of a bet")
    parser.add_argument("--clear-review", metavar="BET_ID", type=int,
                        help="Clear an operator-review flag")

    parser.add_argument("--create", action="store_true", help="Create a bet")
    parser.add_argument("--challenger", help="Challenger identity")
    parser.add_argument("--challenged", help="Challenged identity")
    parser.add_argument("--amount", help=f"Stake per participant in {Config.TOKEN_SYMBOL}")
    parser.add_argument("--criteria", help="Resolution criteria")
    parser.add_argument("--deadline-hours", type=float, help="Hours until the bet is resolved")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """
    Main entry point for the settlement worker.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    args = _build_parser().parse_args(argv)

    setup_logging()

    # Ledger-only commands do not need chain or oracle credentials
    if args.status or args.list or args.history is not None or args.clear_review is not None:
        Config.ensure_directories()
        storage = Storage()
        if args.status:
            return _show_status(storage)
        if args.list:
            return _list_bets(storage, BetStatus(args.list))
        if args.history is not None:
            return _show_history(storage, args.history)
        return _clear_review(storage, args.clear_review)

    try:
        context = build_context()
    except ConfigurationError as e:
        logger.error("Configuration validation failed:")
        for error in str(e).split("; "):
            logger.error(f"  - {error}")
        return 1

    if args.create:
        return _run_create(context, args)

    reconciler = Reconciler(context)

    if args.schedule:
        return _run_scheduled_mode(reconciler, args.interval)

    return _run_single_mode(reconciler)


def _run_single_mode(reconciler: Reconciler) -> int:
    """
    Run one tick and exit.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    try:
        summary = reconciler.run_tick()
    except KeyboardInterrupt:
        logger.info("Tick interrupted by user")
        return 130

    if summary.errors:
        return 1
    if summary.count(ProcessOutcome.NEEDS_OPERATOR_REVIEW):
        logger.warning("One or more bets need operator review")
    return 0


def _run_scheduled_mode(reconciler: Reconciler, interval_seconds: Optional[int] = None) -> int:
    """
    Run in scheduled mode with continuous reconciliation.

    Args:
        reconciler: Reconciler to drive
        interval_seconds: Seconds between ticks. If None, uses Config.POLL_INTERVAL_SECONDS

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    logger.info("Starting in scheduled mode")
    scheduler = Scheduler()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        scheduler.stop(wait=True)
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if not scheduler.start(reconciler.run_tick, interval_seconds=interval_seconds):
        logger.error("Failed to start scheduler")
        return 1

    # First tick immediately, through the scheduler's overlap guard
    scheduler.run_tick()

    logger.info("Scheduler is running. Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
        scheduler.stop(wait=True)
        return 0


def _run_create(context: WorkerContext, args: argparse.Namespace) -> int:
    missing = [
        name for name in ("challenger", "challenged", "amount", "criteria", "deadline_hours")
        if getattr(args, name) in (None, "")
    ]
    if missing:
        logger.error(f"--create requires: {', '.join('--' + m.replace('_', '-') for m in missing)}")
        return 1

    try:
        amount = parse_token_amount(args.amount, Config.TOKEN_DECIMALS)
    except ValueError as e:
        logger.error(str(e))
        return 1

    terms = BetTerms(
        challenger=args.challenger,
        challenged=args.challenged,
        amount=amount,
        resolution_criteria=args.criteria,
        deadline_hours=args.deadline_hours,
    )
    creation = create_bet(context, terms)
    if not creation:
        return 1

    print(f"Bet {creation.bet_id} created")
    print(f"  Challenger deposit: {creation.participant1_address.address}")
    print(f"  Challenged deposit: {creation.participant2_address.address}")
    return 0


def _show_status(storage: Storage) -> int:
    print("\nLedger Status:")
    for status in BetStatus:
        print(f"  {status.value}: {len(storage.get_bets_by_status(status))}")

    flags = storage.get_flagged_bets()
    print(f"  Flagged for review: {len(flags)}")
    for flag in flags:
        print(f"    Bet {flag.bet_id} [{flag.stage}] {flag.reason}")
    return 0


def _list_bets(storage: Storage, status: BetStatus) -> int:
    bets = storage.get_bets_by_status(status)
    if not bets:
        print(f"No {status.value} bets")
        return 0

    for bet in bets:
        stake = format_token_amount(bet.amount, Config.TOKEN_DECIMALS, Config.TOKEN_SYMBOL)
        print(
            f"#{bet.id} {bet.challenger} vs {bet.challenged} | {stake} | "
            f"deadline {bet.deadline.strftime('%Y-%m-%d %H:%M UTC')}"
        )
    return 0


def _show_history(storage: Storage, bet_id: int) -> int:
    history = storage.get_bet_status_history(bet_id)
    if history is None:
        print(f"Bet {bet_id} not found")
        return 1

    print(f"\nBet {bet_id} history:")
    for change in history:
        print(f"  {change.timestamp.isoformat()}  {change.status.value}")

    transfers = storage.get_transfers(bet_id)
    if transfers:
        print("Transfers:")
        for record in transfers:
            print(f"  {record.kind}: {record.amount} -> {record.recipient} ({record.tx_hash})")

    flag = storage.get_review_flag(bet_id)
    if flag:
        print(f"Review flag [{flag.stage}]: {flag.reason}")
    return 0


def _clear_review(storage: Storage, bet_id: int) -> int:
    if storage.clear_review_flag(bet_id):
        print(f"Review flag cleared for bet {bet_id}")
        return 0
    print(f"Bet {bet_id} was not flagged")
    return 1


if __name__ == "__main__":
    sys.exit(main())
