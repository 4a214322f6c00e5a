"""
Reconciliation loop body.

One tick fetches Unfunded bets and applies the funding rule, then fetches Live
bets and applies the resolution rules. Each bet is processed behind its own
error boundary and its own lock, so one failing bet never stops the others
and no two workers ever act on the same bet at once.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from wagerbot.context import WorkerContext
from wagerbot.models import Bet, BetResult, BetStatus, ProcessOutcome, TickSummary
from wagerbot.state_machine import BetStateMachine

# Configure module logger
logger = logging.getLogger(__name__)


class Reconciler:
    """
    Runs reconciliation ticks against the ledger.

    Bets flagged for operator review are skipped until the flag is cleared in
    the ledger. Bets that returned terminal-error are remembered in-process so
    they are not re-attempted by this worker. A review outcome whose flag could
    not be persisted is held the same way.
    """

    def __init__(self, context: WorkerContext, state_machine: Optional[BetStateMachine] = None):
        self.context = context
        self.state_machine = state_machine or BetStateMachine(context)
        self._bet_locks: dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._held_back: set[int] = set()

    def run_tick(self) -> TickSummary:
        """
        Execute one reconciliation pass.

        Returns:
            TickSummary with one BetResult per processed bet
        """
        summary = TickSummary(started_at=self.context.clock())

        self._run_phase(BetStatus.UNFUNDED, self.state_machine.process_unfunded, summary)
        self._run_phase(BetStatus.LIVE, self.state_machine.process_live, summary)

        summary.finished_at = self.context.clock()
        logger.info(
            f"Tick finished in {summary.duration_seconds:.2f}s: "
            f"{summary.count(ProcessOutcome.ADVANCED)} advanced, "
            f"{summary.count(ProcessOutcome.RETRY)} retry, "
            f"{summary.count(ProcessOutcome.NEEDS_OPERATOR_REVIEW)} review, "
            f"{summary.count(ProcessOutcome.TERMINAL_ERROR)} terminal errors, "
            f"{len(summary.skipped)} skipped"
        )
        return summary

    def _run_phase(
        self,
        status: BetStatus,
        handler: Callable[[Bet], BetResult],
        summary: TickSummary,
    ) -> None:
        try:
            bets = self.context.ledger.get_bets_by_status(status)
        except Exception as e:
            message = f"Could not fetch {status.value} bets: {e}"
            logger.error(message, exc_info=True)
            summary.errors.append(message)
            return

        bets = [bet for bet in bets if not self._should_skip(bet, summary)]
        if not bets:
            return

        logger.info(f"Processing {len(bets)} {status.value} bet(s)")

        if self.context.max_concurrency <= 1 or len(bets) == 1:
            results = [self._process_one(bet, handler) for bet in bets]
        else:
            workers = min(self.context.max_concurrency, len(bets))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="bet") as executor:
                results = list(executor.map(lambda bet: self._process_one(bet, handler), bets))

        for result in results:
            if result is None:
                continue
            summary.results.append(result)
            if result.outcome == ProcessOutcome.TERMINAL_ERROR:
                self._held_back.add(result.bet_id)
            elif result.outcome == ProcessOutcome.NEEDS_OPERATOR_REVIEW and not self._flag_persisted(result.bet_id):
                logger.critical(f"Bet {result.bet_id} needs review but has no stored flag; holding until restart")
                self._held_back.add(result.bet_id)

    def _flag_persisted(self, bet_id: int) -> bool:
        try:
            return self.context.ledger.get_review_flag(bet_id) is not None
        except Exception as e:
            logger.error(f"Bet {bet_id} review flag lookup failed: {e}")
            return False

    def _should_skip(self, bet: Bet, summary: TickSummary) -> bool:
        if bet.is_terminal:
            return True

        if bet.id in self._held_back:
            summary.skipped.append(bet.id)
            return True

        try:
            flag = self.context.ledger.get_review_flag(bet.id)
        except Exception as e:
            logger.error(f"Bet {bet.id} review flag lookup failed, skipping this tick: {e}")
            summary.skipped.append(bet.id)
            return True

        if flag:
            logger.debug(f"Bet {bet.id} awaiting operator review ({flag.stage}), skipping")
            summary.skipped.append(bet.id)
            return True

        return False

    def _lock_for(self, bet_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._bet_locks.get(bet_id)
            if lock is None:
                lock = threading.Lock()
                self._bet_locks[bet_id] = lock
            return lock

    def _process_one(self, bet: Bet, handler: Callable[[Bet], BetResult]) -> Optional[BetResult]:
        """Run a handler for one bet behind its lock and error boundary."""
        lock = self._lock_for(bet.id)
        if not lock.acquire(blocking=False):
            logger.warning(f"Bet {bet.id} is already being processed, skipping")
            return None

        result = None
        try:
            result = handler(bet)
            level = logging.INFO if result.outcome == ProcessOutcome.ADVANCED else logging.DEBUG
            logger.log(level, f"Bet {bet.id} [{result.stage}] {result.outcome.value}: {result.detail}")
            return result
        except Exception as e:
            logger.error(f"Bet {bet.id} [{bet.status.value}] processing failed: {e}", exc_info=True)
            return BetResult(bet.id, bet.status.value.lower(), ProcessOutcome.RETRY, str(e))
        finally:
            lock.release()
            if result is not None and result.new_status is not None and result.new_status.is_terminal:
                self._drop_lock(bet.id)

    def _drop_lock(self, bet_id: int) -> None:
        with self._locks_guard:
            self._bet_locks.pop(bet_id, None)
