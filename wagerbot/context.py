"""
Dependency bundle passed to the state machine, reconciler and intake.

Collaborators are constructed once at startup and handed around explicitly
instead of living in module-level globals.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from wagerbot.chain import SettlementClient
from wagerbot.config import Config
from wagerbot.exceptions import ConfigurationError
from wagerbot.notifier import send_notification
from wagerbot.oracle import OutcomeOracle
from wagerbot.storage import Storage
from wagerbot.transactions import SourcePolicy, TransactionBuilder
from wagerbot.utils import utc_now

# Configure module logger
logger = logging.getLogger(__name__)


@dataclass
class WorkerContext:
    """
    Collaborators used while processing bets.

    Attributes:
        ledger: Bet ledger
        settlement: Address derivation and balance reads
        oracle: Outcome oracle
        transactions: Transfer builder and broadcaster
        source_policy: Source-of-funds policy for payouts and refunds
        notify: Fire-and-forget notification callable returning success
        clock: Returns the current UTC time
        max_concurrency: Upper bound on bets processed at once within a tick
    """
    ledger: Storage
    settlement: SettlementClient
    oracle: OutcomeOracle
    transactions: TransactionBuilder
    source_policy: SourcePolicy = field(default_factory=SourcePolicy)
    notify: Callable[[str], bool] = send_notification
    clock: Callable[[], datetime] = utc_now
    max_concurrency: int = 1


def build_context(ledger: Optional[Storage] = None) -> WorkerContext:
    """
    Build the worker context from Config.

    Args:
        ledger: Existing ledger to reuse. If None, opens Config.DB_PATH

    Returns:
        WorkerContext wired with live collaborators

    Raises:
        ConfigurationError: If configuration is invalid
    """
    is_valid, errors = Config.validate()
    if not is_valid:
        raise ConfigurationError("; ".join(errors))

    Config.ensure_directories()

    settlement = SettlementClient()
    context = WorkerContext(
        ledger=ledger or Storage(),
        settlement=settlement,
        oracle=OutcomeOracle(),
        transactions=TransactionBuilder(settlement),
        source_policy=SourcePolicy(),
        max_concurrency=Config.MAX_CONCURRENT_BETS,
    )
    logger.info(
        f"Worker context ready (signer={Config.NEAR_ACCOUNT_ID}, "
        f"concurrency={context.max_concurrency})"
    )
    return context
