"""
Storage module for the bet ledger.

This module provides a repository interface over SQLite for bet records,
their status history, the log of broadcast transfers and operator-review
flags. Status writes are atomic per bet and forward-only; the status column is
the single source of truth for whether a transition already happened.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from wagerbot.config import Config
from wagerbot.exceptions import BetNotFoundError, InvalidTransitionError
from wagerbot.models import (
    Bet,
    BetStatus,
    BetTerms,
    Outcome,
    ReviewFlag,
    StatusChange,
    TransferRecord,
)
from wagerbot.utils import ensure_utc, utc_now

# Configure module logger
logger = logging.getLogger(__name__)


class Storage:
    """
    Repository for ledger operations.

    Provides methods for creating and reading bets, advancing their status,
    recording transfers and managing operator-review flags. Handles table
    creation automatically.
    """

    def __init__(self, db_path: Optional[Path] = None):
        """
        Initialize storage with database path.

        Args:
            db_path: Path to SQLite database file. If None, uses Config.DB_PATH
        """
        self.db_path = Path(db_path or Config.DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_database()

    @contextmanager
    def _get_connection(self):
        """
        Context manager for database connections.

        Ensures proper connection handling and transaction management.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row  # Enable column access by name
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_database(self) -> None:
        """Create database tables if they don't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS bets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    challenger TEXT NOT NULL,
                    challenged TEXT NOT NULL,
                    participant1_deposit_path TEXT NOT NULL UNIQUE,
                    participant2_deposit_path TEXT NOT NULL UNIQUE,
                    amount TEXT NOT NULL,
                    resolution_criteria TEXT NOT NULL,
                    deadline_hours REAL NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    last_status_change TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS status_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    bet_id INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    changed_at TEXT NOT NULL,
                    FOREIGN KEY (bet_id) REFERENCES bets(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transfers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    bet_id INTEGER NOT NULL,
                    kind TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    source_path TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    operation_key TEXT NOT NULL UNIQUE,
                    tx_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (bet_id, kind),
                    FOREIGN KEY (bet_id) REFERENCES bets(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS review_flags (
                    bet_id INTEGER PRIMARY KEY,
                    stage TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    operation_key TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (bet_id) REFERENCES bets(id)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_bets_status
                ON bets(status)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_history_bet_id
                ON status_history(bet_id)
            """)

            logger.info(f"Ledger initialized at {self.db_path}")

    # Bet operations

    def create_bet(
        self,
        terms: BetTerms,
        participant1_deposit_path: str,
        participant2_deposit_path: str,
        created_at: Optional[datetime] = None,
    ) -> int:
        """
        Create a new bet in Unfunded status.

        Args:
            terms: Parsed bet terms
            participant1_deposit_path: Fresh derivation path for the challenger
            participant2_deposit_path: Fresh derivation path for the challenged party
            created_at: Creation time. If None, uses the current UTC time

        Returns:
            ID assigned to the bet

        Raises:
            sqlite3.IntegrityError: If a derivation path was already used
        """
        if participant1_deposit_path == participant2_deposit_path:
            raise ValueError("Participants must have distinct deposit paths")

        now = ensure_utc(created_at or utc_now()).isoformat()

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO bets
                (challenger, challenged, participant1_deposit_path, participant2_deposit_path,
                 amount, resolution_criteria, deadline_hours, status, created_at, last_status_change)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                terms.challenger,
                terms.challenged,
                participant1_deposit_path,
                participant2_deposit_path,
                str(terms.amount),
                terms.resolution_criteria,
                terms.deadline_hours,
                BetStatus.UNFUNDED.value,
                now,
                now,
            ))
            bet_id = cursor.lastrowid

            cursor.execute("""
                INSERT INTO status_history (bet_id, status, changed_at)
                VALUES (?, ?, ?)
            """, (bet_id, BetStatus.UNFUNDED.value, now))

        logger.info(f"New bet created with id {bet_id}")
        return bet_id

    def get_bet(self, bet_id: int) -> Optional[Bet]:
        """
        Retrieve a bet by ID.

        Args:
            bet_id: Bet identifier

        Returns:
            Bet object if found, None otherwise
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM bets WHERE id = ?", (bet_id,))
            row = cursor.fetchone()
            return self._row_to_bet(row) if row else None

    def get_all_bets(self) -> list[Bet]:
        """Retrieve every bet, oldest first."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM bets ORDER BY id")
            return [self._row_to_bet(row) for row in cursor.fetchall()]

    def get_bets_by_status(self, status: BetStatus) -> list[Bet]:
        """
        Retrieve all bets in a status, oldest first.

        Args:
            status: Status to filter by

        Returns:
            List of Bet objects
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM bets WHERE status = ? ORDER BY id",
                (BetStatus(status).value,),
            )
            return [self._row_to_bet(row) for row in cursor.fetchall()]

    def get_bets_by_status_age(
        self,
        status: BetStatus,
        min_age: timedelta,
        now: Optional[datetime] = None,
    ) -> list[Bet]:
        """
        Retrieve bets that have been in a status for at least min_age.

        Args:
            status: Status to filter by
            min_age: Minimum time since the last status change
            now: Reference time. If None, uses the current UTC time

        Returns:
            List of Bet objects
        """
        reference = ensure_utc(now or utc_now())
        return [
            bet for bet in self.get_bets_by_status(status)
            if reference - bet.last_status_change >= min_age
        ]

    def update_bet_state(
        self,
        bet_id: int,
        new_status: BetStatus,
        expected_status: Optional[BetStatus] = None,
    ) -> bool:
        """
        Atomically advance a bet's status.

        The write only happens if the bet is still in expected_status (when
        given), so two writers racing on the same bet cannot both win.
        Writing the current status again is a no-op.

        Args:
            bet_id: Bet identifier
            new_status: Status to move to
            expected_status: Status the bet must currently be in

        Returns:
            True if the status changed, False if it was already new_status or
            no longer in expected_status

        Raises:
            BetNotFoundError: If the bet does not exist
            InvalidTransitionError: If the move is backward or skips a state
        """
        new_status = BetStatus(new_status)
        now = utc_now().isoformat()

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.cursor()
            cursor.execute("SELECT status FROM bets WHERE id = ?", (bet_id,))
            row = cursor.fetchone()
            if not row:
                raise BetNotFoundError(f"Bet {bet_id} not found")

            current = BetStatus(row["status"])
            if current == new_status:
                return False

            if expected_status is not None and current != BetStatus(expected_status):
                logger.warning(
                    f"Bet {bet_id} is {current.value}, expected {BetStatus(expected_status).value}; "
                    f"not moving to {new_status.value}"
                )
                return False

            if not current.can_transition_to(new_status):
                raise InvalidTransitionError(
                    f"Bet {bet_id} cannot move from {current.value} to {new_status.value}"
                )

            cursor.execute("""
                UPDATE bets SET status = ?, last_status_change = ?
                WHERE id = ? AND status = ?
            """, (new_status.value, now, bet_id, current.value))

            if cursor.rowcount != 1:
                return False

            cursor.execute("""
                INSERT INTO status_history (bet_id, status, changed_at)
                VALUES (?, ?, ?)
            """, (bet_id, new_status.value, now))

        logger.info(f"Bet {bet_id} updated to status {new_status.value}")
        return True

    def get_bet_status_history(self, bet_id: int) -> Optional[list[StatusChange]]:
        """
        Retrieve the complete status change history of a bet.

        Args:
            bet_id: Bet identifier

        Returns:
            List of StatusChange entries in order, or None if the bet does not exist
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT 1 FROM bets WHERE id = ?", (bet_id,))
            if not cursor.fetchone():
                return None

            cursor.execute("""
                SELECT status, changed_at FROM status_history
                WHERE bet_id = ? ORDER BY id
            """, (bet_id,))
            return [
                StatusChange(
                    status=BetStatus(row["status"]),
                    timestamp=ensure_utc(datetime.fromisoformat(row["changed_at"])),
                )
                for row in cursor.fetchall()
            ]

    def _row_to_bet(self, row: sqlite3.Row) -> Bet:
        """Convert database row to Bet object."""
        return Bet(
            id=row["id"],
            challenger=row["challenger"],
            challenged=row["challenged"],
            participant1_deposit_path=row["participant1_deposit_path"],
            participant2_deposit_path=row["participant2_deposit_path"],
            amount=int(row["amount"]),
            resolution_criteria=row["resolution_criteria"],
            created_at=ensure_utc(datetime.fromisoformat(row["created_at"])),
            deadline_hours=row["deadline_hours"],
            status=BetStatus(row["status"]),
            last_status_change=ensure_utc(datetime.fromisoformat(row["last_status_change"])),
        )

    # Transfer log

    def record_transfer(self, record: TransferRecord) -> None:
        """
        Record a transfer that the chain accepted.

        Args:
            record: Transfer to record

        Raises:
            sqlite3.IntegrityError: If this (bet, kind) was already recorded
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO transfers
                (bet_id, kind, outcome, source_path, recipient, amount,
                 operation_key, tx_hash, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.bet_id,
                record.kind,
                Outcome(record.outcome).value,
                record.source_path,
                record.recipient,
                str(record.amount),
                record.operation_key,
                record.tx_hash,
                ensure_utc(record.created_at).isoformat(),
            ))

        logger.debug(f"Recorded transfer {record.operation_key}: {record.tx_hash}")

    def get_transfers(self, bet_id: int) -> list[TransferRecord]:
        """Retrieve all recorded transfers of a bet, in broadcast order."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM transfers WHERE bet_id = ? ORDER BY id",
                (bet_id,),
            )
            return [
                TransferRecord(
                    bet_id=row["bet_id"],
                    kind=row["kind"],
                    outcome=Outcome(row["outcome"]),
                    source_path=row["source_path"],
                    recipient=row["recipient"],
                    amount=int(row["amount"]),
                    operation_key=row["operation_key"],
                    tx_hash=row["tx_hash"],
                    created_at=ensure_utc(datetime.fromisoformat(row["created_at"])),
                )
                for row in cursor.fetchall()
            ]

    # Operator review

    def flag_for_review(
        self,
        bet_id: int,
        stage: str,
        reason: str,
        operation_key: Optional[str] = None,
    ) -> None:
        """
        Flag a bet for operator reconciliation.

        A flagged bet is not processed automatically until the flag is cleared.
        An existing flag is kept as-is.
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR IGNORE INTO review_flags
                (bet_id, stage, reason, operation_key, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (bet_id, stage, reason, operation_key, utc_now().isoformat()))

        logger.warning(f"Bet {bet_id} flagged for operator review at stage {stage}: {reason}")

    def get_review_flag(self, bet_id: int) -> Optional[ReviewFlag]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM review_flags WHERE bet_id = ?", (bet_id,))
            row = cursor.fetchone()
            return self._row_to_flag(row) if row else None

    def get_flagged_bets(self) -> list[ReviewFlag]:
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM review_flags ORDER BY created_at")
            return [self._row_to_flag(row) for row in cursor.fetchall()]

    def clear_review_flag(self, bet_id: int) -> bool:
        """
        Clear an operator-review flag.

        Returns:
            True if a flag was removed, False if the bet was not flagged
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM review_flags WHERE bet_id = ?", (bet_id,))
            cleared = cursor.rowcount > 0

        if cleared:
            logger.info(f"Review flag cleared for bet {bet_id}")
        return cleared

    def _row_to_flag(self, row: sqlite3.Row) -> ReviewFlag:
        return ReviewFlag(
            bet_id=row["bet_id"],
            stage=row["stage"],
            reason=row["reason"],
            operation_key=row["operation_key"],
            created_at=ensure_utc(datetime.fromisoformat(row["created_at"])),
        )
