"""Tests for the SQLite bet ledger."""

import sqlite3
from datetime import timedelta

import pytest

from conftest import T0
from wagerbot.exceptions import BetNotFoundError, InvalidTransitionError
from wagerbot.models import BetStatus, BetTerms, Outcome, TransferRecord
from wagerbot.utils import utc_now


def _terms(**overrides):
    values = dict(
        challenger="alice",
        challenged="bob",
        amount=10_000_000,
        resolution_criteria="It rains in Lisbon on Friday",
        deadline_hours=48,
    )
    values.update(overrides)
    return BetTerms(**values)


def _transfer(bet_id, kind="payout", outcome=Outcome.PARTICIPANT1_WIN, key=None):
    return TransferRecord(
        bet_id=bet_id,
        kind=kind,
        outcome=outcome,
        source_path="base_escrow",
        recipient="0x" + "11" * 20,
        amount=200,
        operation_key=key or f"base_{bet_id}_{kind}",
        tx_hash="0x" + "ab" * 32,
        created_at=T0,
    )


class TestBets:
    def test_create_and_get(self, ledger):
        bet_id = ledger.create_bet(_terms(), "base_a", "base_b", created_at=T0)

        bet = ledger.get_bet(bet_id)

        assert bet.status == BetStatus.UNFUNDED
        assert bet.amount == 10_000_000
        assert bet.challenger == "alice"
        assert bet.participant1_deposit_path == "base_a"
        assert bet.deadline == T0 + timedelta(hours=48)

    def test_large_amounts_survive_round_trip(self, ledger):
        amount = 2 ** 70
        bet_id = ledger.create_bet(_terms(amount=amount), "base_a", "base_b")

        assert ledger.get_bet(bet_id).amount == amount

    def test_missing_bet(self, ledger):
        assert ledger.get_bet(999) is None
        assert ledger.get_bet_status_history(999) is None

    def test_paths_must_differ(self, ledger):
        with pytest.raises(ValueError):
            ledger.create_bet(_terms(), "base_a", "base_a")

    def test_paths_are_never_reused(self, ledger):
        ledger.create_bet(_terms(), "base_a", "base_b")

        with pytest.raises(sqlite3.IntegrityError):
            ledger.create_bet(_terms(), "base_a", "base_c")

    def test_get_by_status(self, ledger):
        first = ledger.create_bet(_terms(), "base_a", "base_b")
        second = ledger.create_bet(_terms(), "base_c", "base_d")
        ledger.update_bet_state(second, BetStatus.LIVE)

        assert [bet.id for bet in ledger.get_bets_by_status(BetStatus.UNFUNDED)] == [first]
        assert [bet.id for bet in ledger.get_bets_by_status(BetStatus.LIVE)] == [second]
        assert len(ledger.get_all_bets()) == 2

    def test_get_by_status_age(self, ledger):
        bet_id = ledger.create_bet(_terms(), "base_a", "base_b")
        now = utc_now()

        assert ledger.get_bets_by_status_age(BetStatus.UNFUNDED, timedelta(hours=1), now=now) == []
        aged = ledger.get_bets_by_status_age(
            BetStatus.UNFUNDED, timedelta(hours=1), now=now + timedelta(hours=2)
        )
        assert [bet.id for bet in aged] == [bet_id]


class TestStatusUpdates:
    def test_forward_transition_records_history(self, ledger):
        bet_id = ledger.create_bet(_terms(), "base_a", "base_b", created_at=T0)

        assert ledger.update_bet_state(bet_id, BetStatus.LIVE) is True
        assert ledger.update_bet_state(bet_id, BetStatus.RESOLVED) is True

        history = ledger.get_bet_status_history(bet_id)
        assert [change.status for change in history] == [
            BetStatus.UNFUNDED, BetStatus.LIVE, BetStatus.RESOLVED
        ]
        assert history[0].timestamp == T0

    def test_same_status_is_noop(self, ledger):
        bet_id = ledger.create_bet(_terms(), "base_a", "base_b")
        ledger.update_bet_state(bet_id, BetStatus.LIVE)

        assert ledger.update_bet_state(bet_id, BetStatus.LIVE) is False
        assert len(ledger.get_bet_status_history(bet_id)) == 2

    @pytest.mark.parametrize("path", [
        [BetStatus.RESOLVED],
        [BetStatus.INCONCLUSIVE],
        [BetStatus.LIVE, BetStatus.UNFUNDED],
        [BetStatus.LIVE, BetStatus.RESOLVED, BetStatus.LIVE],
        [BetStatus.LIVE, BetStatus.INCONCLUSIVE, BetStatus.RESOLVED],
    ])
    def test_backward_or_skipping_moves_are_rejected(self, ledger, path):
        bet_id = ledger.create_bet(_terms(), "base_a", "base_b")
        *allowed, rejected = path
        for status in allowed:
            ledger.update_bet_state(bet_id, status)
        before = ledger.get_bet(bet_id).status

        with pytest.raises(InvalidTransitionError):
            ledger.update_bet_state(bet_id, rejected)

        assert ledger.get_bet(bet_id).status == before

    def test_expected_status_mismatch_does_not_write(self, ledger):
        bet_id = ledger.create_bet(_terms(), "base_a", "base_b")
        ledger.update_bet_state(bet_id, BetStatus.LIVE)

        changed = ledger.update_bet_state(
            bet_id, BetStatus.RESOLVED, expected_status=BetStatus.UNFUNDED
        )

        assert changed is False
        assert ledger.get_bet(bet_id).status == BetStatus.LIVE

    def test_unknown_bet(self, ledger):
        with pytest.raises(BetNotFoundError):
            ledger.update_bet_state(42, BetStatus.LIVE)

    def test_last_status_change_moves(self, ledger):
        bet_id = ledger.create_bet(_terms(), "base_a", "base_b", created_at=T0)
        ledger.update_bet_state(bet_id, BetStatus.LIVE)

        assert ledger.get_bet(bet_id).last_status_change > T0


class TestTransfers:
    def test_record_and_read(self, ledger):
        bet_id = ledger.create_bet(_terms(), "base_a", "base_b")
        ledger.record_transfer(_transfer(bet_id, "refund1", Outcome.INCONCLUSIVE))
        ledger.record_transfer(_transfer(bet_id, "refund2", Outcome.INCONCLUSIVE))

        transfers = ledger.get_transfers(bet_id)

        assert [t.kind for t in transfers] == ["refund1", "refund2"]
        assert transfers[0].outcome == Outcome.INCONCLUSIVE
        assert transfers[0].amount == 200

    def test_same_kind_cannot_be_recorded_twice(self, ledger):
        bet_id = ledger.create_bet(_terms(), "base_a", "base_b")
        ledger.record_transfer(_transfer(bet_id))

        with pytest.raises(sqlite3.IntegrityError):
            ledger.record_transfer(_transfer(bet_id, key="other_key"))


class TestReviewFlags:
    def test_flag_lifecycle(self, ledger):
        bet_id = ledger.create_bet(_terms(), "base_a", "base_b")

        ledger.flag_for_review(bet_id, "transfer", "read timed out", "base_1_payout")
        ledger.flag_for_review(bet_id, "commit", "second reason")

        flag = ledger.get_review_flag(bet_id)
        assert flag.stage == "transfer"
        assert flag.operation_key == "base_1_payout"
        assert [f.bet_id for f in ledger.get_flagged_bets()] == [bet_id]

        assert ledger.clear_review_flag(bet_id) is True
        assert ledger.get_review_flag(bet_id) is None
        assert ledger.clear_review_flag(bet_id) is False
