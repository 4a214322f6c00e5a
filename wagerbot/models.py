"""
Data models for the wager settlement worker.

This module defines the core dataclasses and enums used throughout the
application for representing bets, their status history, fund movements,
and the results of processing a bet during a reconciliation tick.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


class BetStatus(str, Enum):
    """Lifecycle status of a bet as stored in the ledger."""

    UNFUNDED = "Unfunded"
    LIVE = "Live"
    INCONCLUSIVE = "Inconclusive"
    RESOLVED = "Resolved"

    @property
    def is_terminal(self) -> bool:
        return self in (BetStatus.INCONCLUSIVE, BetStatus.RESOLVED)

    def can_transition_to(self, new_status: "BetStatus") -> bool:
        return new_status in ALLOWED_TRANSITIONS.get(self, ())


ALLOWED_TRANSITIONS: dict[BetStatus, tuple[BetStatus, ...]] = {
    BetStatus.UNFUNDED: (BetStatus.LIVE,),
    BetStatus.LIVE: (BetStatus.INCONCLUSIVE, BetStatus.RESOLVED),
    BetStatus.INCONCLUSIVE: (),
    BetStatus.RESOLVED: (),
}


class Outcome(str, Enum):
    """Verdict tokens recognized from the outcome oracle."""

    PARTICIPANT1_WIN = "PARTICIPANT1_WIN"
    PARTICIPANT2_WIN = "PARTICIPANT2_WIN"
    INCONCLUSIVE = "INCONCLUSIVE"


class ProcessOutcome(str, Enum):
    """
    Typed result of processing a single bet in one tick.

    advanced: the bet moved to its next status
    unchanged: nothing to do yet (not funded, deadline not reached, terminal)
    retry: transient failure, the next tick tries again
    terminal-error: the bet cannot be processed automatically
    needs-operator-review: a transfer may or may not have landed
    """

    ADVANCED = "advanced"
    UNCHANGED = "unchanged"
    RETRY = "retry"
    TERMINAL_ERROR = "terminal-error"
    NEEDS_OPERATOR_REVIEW = "needs-operator-review"


@dataclass
class BetTerms:
    """
    Already-parsed terms of a new bet.

    Attributes:
        challenger: Social identity of the participant who proposed the bet
        challenged: Social identity of the participant being challenged
        amount: Per-participant stake in the token's smallest unit
        resolution_criteria: Free-text criteria handed to the outcome oracle
        deadline_hours: Hours after creation at which the bet is resolved
    """
    challenger: str
    challenged: str
    amount: int
    resolution_criteria: str
    deadline_hours: float


@dataclass
class Bet:
    """
    A wager record as stored in the ledger.

    Participant 1 is the challenger and participant 2 the challenged party.
    Funding flags are not stored here; they are recomputed from on-chain
    balances on every poll.
    """
    id: int
    challenger: str
    challenged: str
    participant1_deposit_path: str
    participant2_deposit_path: str
    amount: int
    resolution_criteria: str
    created_at: datetime
    deadline_hours: float
    status: BetStatus = BetStatus.UNFUNDED
    last_status_change: Optional[datetime] = None

    @property
    def deadline(self) -> datetime:
        return self.created_at + timedelta(hours=self.deadline_hours)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def deadline_passed(self, now: datetime) -> bool:
        return now >= self.deadline

    def owner_and_path(self, participant: int) -> tuple[str, str]:
        """Return (owner identity, deposit path) for participant 1 or 2."""
        if participant == 1:
            return self.challenger, self.participant1_deposit_path
        if participant == 2:
            return self.challenged, self.participant2_deposit_path
        raise ValueError(f"participant must be 1 or 2, got {participant}")


@dataclass
class StatusChange:
    status: BetStatus
    timestamp: datetime


@dataclass
class DepositAddress:
    """Chain address and public key derived for (owner, derivation path)."""
    address: str
    public_key: str


@dataclass
class TransferRecord:
    """
    A fund movement that was accepted by the chain for a bet.

    Attributes:
        bet_id: Bet the transfer belongs to
        kind: "payout", "refund1" or "refund2"
        outcome: Oracle verdict the transfer was executed for
        source_path: Derivation path the funds were drawn from
        recipient: Destination chain address
        amount: Amount in the token's smallest unit
        operation_key: Deterministic per-transition key sent to the signer
        tx_hash: Broadcast transaction hash
        created_at: When the broadcast was accepted
    """
    bet_id: int
    kind: str
    outcome: Outcome
    source_path: str
    recipient: str
    amount: int
    operation_key: str
    tx_hash: str
    created_at: datetime


@dataclass
class ReviewFlag:
    """A bet that needs operator reconciliation before further transfers."""
    bet_id: int
    stage: str
    reason: str
    operation_key: Optional[str]
    created_at: datetime


@dataclass
class BetResult:
    bet_id: int
    stage: str
    outcome: ProcessOutcome
    detail: str = ""
    new_status: Optional[BetStatus] = None
    tx_hashes: list[str] = field(default_factory=list)


@dataclass
class TickSummary:
    """Aggregated results of one reconciliation tick."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: list[BetResult] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def count(self, outcome: ProcessOutcome) -> int:
        return sum(1 for result in self.results if result.outcome == outcome)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()
