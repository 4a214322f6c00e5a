"""
Bet state machine.

Owns the transition rules between bet statuses:

    Unfunded -> Live                 both deposits hold a positive balance
    Live     -> Inconclusive         deadline passed, oracle says INCONCLUSIVE, two refunds sent
    Live     -> Resolved             deadline passed, oracle names a winner, payout sent

Every transition follows the same order: gather and validate decision input,
move funds, then commit the new status to the ledger. The ledger status is the
de-duplication boundary, and the transfer log lets an interrupted resolution
resume without sending a transfer twice. Every call returns a BetResult with a
typed ProcessOutcome instead of raising.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from wagerbot.context import WorkerContext
from wagerbot.derivation import operation_key
from wagerbot.exceptions import (
    AddressResolutionError,
    AmbiguousBroadcastError,
    BetNotFoundError,
    InvalidTransitionError,
    TransactionError,
)
from wagerbot.models import (
    Bet,
    BetResult,
    BetStatus,
    Outcome,
    ProcessOutcome,
    TransferRecord,
)
from wagerbot.notifier import (
    format_bet_funded,
    format_bet_refunded,
    format_bet_resolved,
    format_partial_funding,
    format_review_flag,
)
from wagerbot.transactions import TransferRequest

# Configure module logger
logger = logging.getLogger(__name__)


@dataclass
class PlannedTransfer:
    kind: str
    amount: int
    source_owner: str
    source_path: str
    recipient_owner: str
    recipient_path: str


def validate_bet(bet: Bet) -> Optional[str]:
    """
    Check a stored bet for problems that no amount of retrying will fix.

    Returns:
        Description of the problem, or None if the bet is usable
    """
    if bet.amount <= 0:
        return f"non-positive stake {bet.amount}"
    if not bet.participant1_deposit_path or not bet.participant2_deposit_path:
        return "missing deposit derivation path"
    if bet.participant1_deposit_path == bet.participant2_deposit_path:
        return "participants share a deposit derivation path"
    if not bet.challenger or not bet.challenged:
        return "missing participant identity"
    if not bet.resolution_criteria or not bet.resolution_criteria.strip():
        return "empty resolution criteria"
    return None


class BetStateMachine:
    """Drives single bets through their lifecycle using the worker context."""

    def __init__(self, context: WorkerContext):
        self.context = context
        self._partial_reported: set[tuple[int, int]] = set()
        self._partial_lock = threading.Lock()

    def process(self, bet: Bet) -> BetResult:
        """Apply whichever transition rule matches the bet's current status."""
        if bet.status == BetStatus.UNFUNDED:
            return self.process_unfunded(bet)
        if bet.status == BetStatus.LIVE:
            return self.process_live(bet)
        return BetResult(bet.id, "none", ProcessOutcome.UNCHANGED, f"terminal status {bet.status.value}")

    # Unfunded -> Live

    def process_unfunded(self, bet: Bet) -> BetResult:
        """
        Check both deposit addresses and move the bet to Live when both are funded.

        Both balances come from the same observation. An unknown balance is a
        retry, never a funding failure. Partial funding is reported but does
        not change the status.

        Args:
            bet: Bet observed in Unfunded status

        Returns:
            BetResult for the funding stage
        """
        stage = "funding"
        if bet.status != BetStatus.UNFUNDED:
            return BetResult(bet.id, stage, ProcessOutcome.UNCHANGED, f"status is {bet.status.value}")

        problem = validate_bet(bet)
        if problem:
            logger.error(f"Bet {bet.id} [{stage}] cannot be processed: {problem}")
            return BetResult(bet.id, stage, ProcessOutcome.TERMINAL_ERROR, problem)

        try:
            address1 = self.context.settlement.derive_address(*bet.owner_and_path(1))
            address2 = self.context.settlement.derive_address(*bet.owner_and_path(2))
        except AddressResolutionError as e:
            logger.warning(f"Bet {bet.id} [{stage}] address resolution failed: {e}")
            return BetResult(bet.id, stage, ProcessOutcome.RETRY, str(e))

        balance1 = self.context.settlement.get_balance(address1.address)
        balance2 = self.context.settlement.get_balance(address2.address)

        if balance1 is None or balance2 is None:
            logger.info(f"Bet {bet.id} [{stage}] balance unknown this cycle, retrying next tick")
            return BetResult(bet.id, stage, ProcessOutcome.RETRY, "balance unknown")

        funded1 = balance1 > 0
        funded2 = balance2 > 0
        logger.debug(f"Bet {bet.id} [{stage}] balances: {balance1} / {balance2}")

        if funded1 and funded2:
            try:
                changed = self.context.ledger.update_bet_state(
                    bet.id, BetStatus.LIVE, expected_status=BetStatus.UNFUNDED
                )
            except (InvalidTransitionError, BetNotFoundError) as e:
                logger.error(f"Bet {bet.id} [commit] rejected: {e}")
                return BetResult(bet.id, "commit", ProcessOutcome.TERMINAL_ERROR, str(e))
            except Exception as e:
                logger.error(f"Bet {bet.id} [commit] ledger write failed: {e}", exc_info=True)
                return BetResult(bet.id, "commit", ProcessOutcome.RETRY, str(e))

            if not changed:
                return BetResult(bet.id, stage, ProcessOutcome.UNCHANGED, "already advanced elsewhere")

            logger.info(f"Bet {bet.id} is now fully funded and active")
            self._forget_partial(bet.id)
            self._notify(format_bet_funded(bet))
            return BetResult(bet.id, stage, ProcessOutcome.ADVANCED, "both deposits funded", BetStatus.LIVE)

        if funded1 or funded2:
            participant = 1 if funded1 else 2
            logger.info(f"Bet {bet.id} [{stage}] partially funded by participant {participant}")
            if self._mark_partial(bet.id, participant):
                self._notify(format_partial_funding(bet, participant))
            return BetResult(bet.id, stage, ProcessOutcome.UNCHANGED, f"only participant {participant} funded")

        return BetResult(bet.id, stage, ProcessOutcome.UNCHANGED, "awaiting deposits")

    def _mark_partial(self, bet_id: int, participant: int) -> bool:
        with self._partial_lock:
            key = (bet_id, participant)
            if key in self._partial_reported:
                return False
            self._partial_reported.add(key)
            return True

    def _forget_partial(self, bet_id: int) -> None:
        with self._partial_lock:
            self._partial_reported.discard((bet_id, 1))
            self._partial_reported.discard((bet_id, 2))

    # Live -> Inconclusive | Resolved

    def process_live(self, bet: Bet) -> BetResult:
        """
        Resolve a Live bet whose deadline has passed.

        The oracle is never consulted before the deadline. If an earlier
        attempt already broadcast some transfers, their recorded verdict is
        reused and only the missing transfers are sent.

        Args:
            bet: Bet observed in Live status

        Returns:
            BetResult for the resolution, transfer or commit stage
        """
        stage = "resolution"
        if bet.status != BetStatus.LIVE:
            return BetResult(bet.id, stage, ProcessOutcome.UNCHANGED, f"status is {bet.status.value}")

        problem = validate_bet(bet)
        if problem:
            logger.error(f"Bet {bet.id} [{stage}] cannot be processed: {problem}")
            return BetResult(bet.id, stage, ProcessOutcome.TERMINAL_ERROR, problem)

        now = self.context.clock()
        if not bet.deadline_passed(now):
            logger.debug(f"Bet {bet.id} deadline not yet reached ({bet.deadline.isoformat()})")
            return BetResult(bet.id, stage, ProcessOutcome.UNCHANGED, "deadline not reached")

        recorded = {record.kind: record for record in self.context.ledger.get_transfers(bet.id)}

        if recorded:
            outcome = next(iter(recorded.values())).outcome
            logger.info(f"Bet {bet.id} [{stage}] resuming {outcome.value} with {len(recorded)} recorded transfer(s)")
        else:
            logger.info(f"Bet {bet.id} has reached deadline, determining outcome...")
            try:
                outcome = self.context.oracle.determine_outcome(bet.resolution_criteria)
            except Exception as e:
                logger.error(f"Bet {bet.id} [{stage}] oracle query failed: {e}", exc_info=True)
                outcome = None

            if outcome is None:
                return BetResult(bet.id, stage, ProcessOutcome.RETRY, "oracle verdict indeterminate")

        stage = "transfer"
        try:
            plan = self._plan_transfers(bet, outcome)
        except TransactionError as e:
            logger.error(f"Bet {bet.id} [{stage}] cannot plan transfers: {e}")
            return BetResult(bet.id, stage, ProcessOutcome.RETRY, str(e))

        tx_hashes = [recorded[p.kind].tx_hash for p in plan if p.kind in recorded]

        for planned in plan:
            if planned.kind in recorded:
                continue

            key = operation_key(bet.id, planned.kind)
            try:
                request = self._build_request(planned, key)
                tx_hash = self.context.transactions.execute(request)
            except AmbiguousBroadcastError as e:
                logger.error(f"Bet {bet.id} [{stage}] ambiguous broadcast for {key}: {e}")
                self._flag(bet.id, stage, str(e), key)
                return BetResult(bet.id, stage, ProcessOutcome.NEEDS_OPERATOR_REVIEW, str(e), tx_hashes=tx_hashes)
            except (TransactionError, AddressResolutionError) as e:
                logger.warning(f"Bet {bet.id} [{stage}] transfer {key} failed, retrying next tick: {e}")
                return BetResult(bet.id, stage, ProcessOutcome.RETRY, str(e), tx_hashes=tx_hashes)

            record = TransferRecord(
                bet_id=bet.id,
                kind=planned.kind,
                outcome=outcome,
                source_path=planned.source_path,
                recipient=request.recipient,
                amount=planned.amount,
                operation_key=key,
                tx_hash=tx_hash,
                created_at=self.context.clock(),
            )
            try:
                self.context.ledger.record_transfer(record)
            except Exception as e:
                reason = f"transfer {key} broadcast as {tx_hash} but not recorded: {e}"
                logger.critical(f"Bet {bet.id} [{stage}] {reason}", exc_info=True)
                self._flag(bet.id, stage, reason, key)
                return BetResult(bet.id, stage, ProcessOutcome.NEEDS_OPERATOR_REVIEW, reason, tx_hashes=tx_hashes + [tx_hash])

            tx_hashes.append(tx_hash)

        return self._commit_resolution(bet, outcome, tx_hashes)

    def _plan_transfers(self, bet: Bet, outcome: Outcome) -> list[PlannedTransfer]:
        """Amounts and endpoints of every transfer the verdict requires."""
        policy = self.context.source_policy

        if outcome == Outcome.INCONCLUSIVE:
            plan = []
            for participant in (1, 2):
                source_owner, source_path = policy.refund_source(bet, participant)
                recipient_owner, recipient_path = bet.owner_and_path(participant)
                plan.append(PlannedTransfer(
                    kind=f"refund{participant}",
                    amount=bet.amount,
                    source_owner=source_owner,
                    source_path=source_path,
                    recipient_owner=recipient_owner,
                    recipient_path=recipient_path,
                ))
            return plan

        winner = 1 if outcome == Outcome.PARTICIPANT1_WIN else 2
        source_owner, source_path = policy.payout_source(bet)
        recipient_owner, recipient_path = bet.owner_and_path(winner)
        return [PlannedTransfer(
            kind="payout",
            amount=bet.amount * 2,
            source_owner=source_owner,
            source_path=source_path,
            recipient_owner=recipient_owner,
            recipient_path=recipient_path,
        )]

    def _build_request(self, planned: PlannedTransfer, key: str) -> TransferRequest:
        settlement = self.context.settlement
        source = settlement.derive_address(planned.source_owner, planned.source_path)
        recipient = settlement.derive_address(planned.recipient_owner, planned.recipient_path)
        return TransferRequest(
            source_owner=planned.source_owner,
            source_path=planned.source_path,
            source_address=source.address,
            recipient=recipient.address,
            amount=planned.amount,
            operation_key=key,
        )

    def _commit_resolution(self, bet: Bet, outcome: Outcome, tx_hashes: list[str]) -> BetResult:
        stage = "commit"
        target = BetStatus.INCONCLUSIVE if outcome == Outcome.INCONCLUSIVE else BetStatus.RESOLVED

        try:
            changed = self.context.ledger.update_bet_state(bet.id, target, expected_status=BetStatus.LIVE)
        except (InvalidTransitionError, BetNotFoundError) as e:
            reason = f"transfers sent but status commit rejected: {e}"
            logger.critical(f"Bet {bet.id} [{stage}] {reason}")
            self._flag(bet.id, stage, reason)
            return BetResult(bet.id, stage, ProcessOutcome.NEEDS_OPERATOR_REVIEW, reason, tx_hashes=tx_hashes)
        except Exception as e:
            logger.error(f"Bet {bet.id} [{stage}] ledger write failed, will resume next tick: {e}", exc_info=True)
            return BetResult(bet.id, stage, ProcessOutcome.RETRY, str(e), tx_hashes=tx_hashes)

        if not changed:
            return BetResult(bet.id, stage, ProcessOutcome.UNCHANGED, "already advanced elsewhere", tx_hashes=tx_hashes)

        if target == BetStatus.INCONCLUSIVE:
            logger.info(f"Bet {bet.id} is inconclusive, refunds: {', '.join(tx_hashes)}")
            self._notify(format_bet_refunded(bet, tx_hashes))
        else:
            logger.info(f"Bet {bet.id} resolved with {outcome.value}, payout: {tx_hashes[0]}")
            self._notify(format_bet_resolved(bet, outcome, tx_hashes[0]))

        return BetResult(bet.id, stage, ProcessOutcome.ADVANCED, outcome.value, target, tx_hashes)

    # Side channels

    def _flag(self, bet_id: int, stage: str, reason: str, key: Optional[str] = None) -> None:
        try:
            self.context.ledger.flag_for_review(bet_id, stage, reason, key)
        except Exception as e:
            logger.critical(f"Bet {bet_id} [{stage}] could not be flagged for review: {e}", exc_info=True)
        self._notify(format_review_flag(bet_id, stage, reason))

    def _notify(self, message: str) -> None:
        try:
            self.context.notify(message)
        except Exception as e:
            logger.error(f"Notification failed: {e}", exc_info=True)
