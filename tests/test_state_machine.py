"""Tests for the bet state machine transition rules."""

import sqlite3
from unittest.mock import patch

import pytest

from conftest import ESCROW_OWNER, ESCROW_PATH, FakeSettlement
from wagerbot.exceptions import AmbiguousBroadcastError, TransactionError
from wagerbot.models import BetStatus, Outcome, ProcessOutcome
from wagerbot.state_machine import BetStateMachine, validate_bet


@pytest.fixture
def machine(context):
    return BetStateMachine(context)


def fund(settlement, ledger, bet_id, p1=True, p2=True, amount=100):
    bet = ledger.get_bet(bet_id)
    if p1:
        settlement.set_balance(*bet.owner_and_path(1), amount)
    if p2:
        settlement.set_balance(*bet.owner_and_path(2), amount)


def make_live(ledger, settlement, bet_id):
    fund(settlement, ledger, bet_id)
    assert ledger.update_bet_state(bet_id, BetStatus.LIVE, expected_status=BetStatus.UNFUNDED)
    return ledger.get_bet(bet_id)


class TestFunding:
    def test_partial_funding_stays_unfunded(self, machine, ledger, settlement, notify, clock, make_bet):
        bet_id = make_bet()
        fund(settlement, ledger, bet_id, p2=False)
        clock.advance_to(1)

        result = machine.process_unfunded(ledger.get_bet(bet_id))

        assert result.outcome == ProcessOutcome.UNCHANGED
        assert "participant 1" in result.detail
        assert ledger.get_bet(bet_id).status == BetStatus.UNFUNDED

    def test_partial_funding_notified_once_per_side(self, machine, ledger, settlement, notify, make_bet):
        bet_id = make_bet()
        fund(settlement, ledger, bet_id, p2=False)

        machine.process_unfunded(ledger.get_bet(bet_id))
        machine.process_unfunded(ledger.get_bet(bet_id))

        assert notify.call_count == 1
        assert "Challenger has funded" in notify.call_args[0][0]

    def test_both_funded_goes_live(self, machine, ledger, settlement, notify, make_bet):
        bet_id = make_bet()
        fund(settlement, ledger, bet_id)

        result = machine.process_unfunded(ledger.get_bet(bet_id))

        assert result.outcome == ProcessOutcome.ADVANCED
        assert result.new_status == BetStatus.LIVE
        assert ledger.get_bet(bet_id).status == BetStatus.LIVE
        assert "fully funded" in notify.call_args[0][0]

    def test_nothing_funded(self, machine, ledger, make_bet):
        bet_id = make_bet()

        result = machine.process_unfunded(ledger.get_bet(bet_id))

        assert result.outcome == ProcessOutcome.UNCHANGED
        assert result.detail == "awaiting deposits"

    def test_unknown_balance_is_retry_not_failure(self, machine, ledger, settlement, make_bet):
        bet_id = make_bet()
        bet = ledger.get_bet(bet_id)
        settlement.set_balance(*bet.owner_and_path(1), 100)
        settlement.set_balance(*bet.owner_and_path(2), RuntimeError("rpc down"))

        result = machine.process_unfunded(bet)

        assert result.outcome == ProcessOutcome.RETRY
        assert ledger.get_bet(bet_id).status == BetStatus.UNFUNDED

    def test_address_resolution_failure_is_retry(self, machine, ledger, settlement, make_bet):
        bet_id = make_bet()
        bet = ledger.get_bet(bet_id)
        settlement.failing_paths.add(bet.participant2_deposit_path)

        result = machine.process_unfunded(bet)

        assert result.outcome == ProcessOutcome.RETRY

    def test_stale_observation_does_not_double_advance(self, machine, ledger, settlement, notify, make_bet):
        bet_id = make_bet()
        fund(settlement, ledger, bet_id)
        stale = ledger.get_bet(bet_id)

        assert machine.process_unfunded(stale).outcome == ProcessOutcome.ADVANCED
        result = machine.process_unfunded(stale)

        assert result.outcome == ProcessOutcome.UNCHANGED
        assert notify.call_count == 1
        assert len(ledger.get_bet_status_history(bet_id)) == 2

    def test_invalid_stored_bet_is_terminal_error(self, machine, ledger, make_bet):
        bet = ledger.get_bet(make_bet())
        bet.amount = 0

        result = machine.process_unfunded(bet)

        assert result.outcome == ProcessOutcome.TERMINAL_ERROR


class TestResolution:
    def test_no_oracle_call_before_deadline(self, machine, ledger, settlement, oracle, transactions, clock, make_bet):
        bet = make_live(ledger, settlement, make_bet())
        clock.advance_to(23.9)

        result = machine.process_live(bet)

        assert result.outcome == ProcessOutcome.UNCHANGED
        oracle.determine_outcome.assert_not_called()
        assert transactions.executed == []

    def test_winner_receives_twice_the_stake(self, machine, ledger, settlement, oracle, transactions, clock, notify, make_bet):
        bet = make_live(ledger, settlement, make_bet())
        oracle.determine_outcome.return_value = Outcome.PARTICIPANT2_WIN
        clock.advance_to(25)

        result = machine.process_live(bet)

        assert result.outcome == ProcessOutcome.ADVANCED
        assert result.new_status == BetStatus.RESOLVED
        assert len(transactions.executed) == 1
        payout = transactions.executed[0]
        assert payout.amount == 200
        assert payout.recipient == FakeSettlement.address_for(*bet.owner_and_path(2))
        assert payout.source_owner == ESCROW_OWNER
        assert payout.source_path == ESCROW_PATH
        assert payout.operation_key == f"base_{bet.id}_payout"
        assert ledger.get_bet(bet.id).status == BetStatus.RESOLVED
        assert "Participant 2 wins" in notify.call_args[0][0]

    def test_inconclusive_refunds_each_participant(self, machine, ledger, settlement, oracle, transactions, clock, make_bet):
        bet = make_live(ledger, settlement, make_bet())
        oracle.determine_outcome.return_value = Outcome.INCONCLUSIVE
        clock.advance_to(25)

        result = machine.process_live(bet)

        assert result.outcome == ProcessOutcome.ADVANCED
        assert result.new_status == BetStatus.INCONCLUSIVE
        assert [t.amount for t in transactions.executed] == [100, 100]
        for participant, transfer in zip((1, 2), transactions.executed):
            owner, path = bet.owner_and_path(participant)
            assert transfer.recipient == FakeSettlement.address_for(owner, path)
            assert transfer.source_path == path
        assert result.tx_hashes == ["0xtx1", "0xtx2"]

    def test_indeterminate_verdict_leaves_bet_live(self, machine, ledger, settlement, oracle, transactions, clock, make_bet):
        bet = make_live(ledger, settlement, make_bet())
        oracle.determine_outcome.return_value = None
        clock.advance_to(25)

        result = machine.process_live(bet)

        assert result.outcome == ProcessOutcome.RETRY
        assert ledger.get_bet(bet.id).status == BetStatus.LIVE
        assert transactions.executed == []

        oracle.determine_outcome.return_value = Outcome.PARTICIPANT1_WIN
        clock.advance_to(25.5)
        result = machine.process_live(ledger.get_bet(bet.id))

        assert result.outcome == ProcessOutcome.ADVANCED
        assert transactions.executed[0].amount == 200

    def test_oracle_exception_is_retry(self, machine, ledger, settlement, oracle, clock, make_bet):
        bet = make_live(ledger, settlement, make_bet())
        oracle.determine_outcome.side_effect = RuntimeError("boom")
        clock.advance_to(25)

        result = machine.process_live(bet)

        assert result.outcome == ProcessOutcome.RETRY
        assert ledger.get_bet(bet.id).status == BetStatus.LIVE

    def test_failed_transfer_leaves_bet_live(self, machine, ledger, settlement, oracle, transactions, clock, make_bet):
        bet = make_live(ledger, settlement, make_bet())
        oracle.determine_outcome.return_value = Outcome.PARTICIPANT1_WIN
        transactions.failures = [TransactionError("gateway down")]
        clock.advance_to(25)

        result = machine.process_live(bet)

        assert result.outcome == ProcessOutcome.RETRY
        assert ledger.get_bet(bet.id).status == BetStatus.LIVE
        assert ledger.get_transfers(bet.id) == []

    def test_resume_after_partial_refunds_sends_only_missing_transfer(
        self, machine, ledger, settlement, oracle, transactions, clock, make_bet
    ):
        bet = make_live(ledger, settlement, make_bet())
        oracle.determine_outcome.return_value = Outcome.INCONCLUSIVE
        transactions.failures = [None, TransactionError("nonce too low")]
        clock.advance_to(25)

        first = machine.process_live(bet)

        assert first.outcome == ProcessOutcome.RETRY
        assert [t.kind for t in ledger.get_transfers(bet.id)] == ["refund1"]

        # A changed verdict must not change what was already started
        oracle.determine_outcome.reset_mock()
        oracle.determine_outcome.return_value = Outcome.PARTICIPANT1_WIN
        second = machine.process_live(ledger.get_bet(bet.id))

        oracle.determine_outcome.assert_not_called()
        assert second.outcome == ProcessOutcome.ADVANCED
        assert second.new_status == BetStatus.INCONCLUSIVE
        assert [t.operation_key for t in transactions.executed] == [
            f"base_{bet.id}_refund1",
            f"base_{bet.id}_refund2",
        ]

    def test_ambiguous_broadcast_flags_for_review(self, machine, ledger, settlement, oracle, transactions, clock, notify, make_bet):
        bet = make_live(ledger, settlement, make_bet())
        oracle.determine_outcome.return_value = Outcome.PARTICIPANT2_WIN
        transactions.failures = [AmbiguousBroadcastError("read timed out", f"base_{bet.id}_payout")]
        clock.advance_to(25)

        result = machine.process_live(bet)

        assert result.outcome == ProcessOutcome.NEEDS_OPERATOR_REVIEW
        flag = ledger.get_review_flag(bet.id)
        assert flag is not None
        assert flag.operation_key == f"base_{bet.id}_payout"
        assert ledger.get_bet(bet.id).status == BetStatus.LIVE
        assert "needs operator review" in notify.call_args[0][0]

    def test_commit_failure_resumes_without_resending(self, machine, ledger, settlement, oracle, transactions, clock, make_bet):
        bet = make_live(ledger, settlement, make_bet())
        oracle.determine_outcome.return_value = Outcome.PARTICIPANT1_WIN
        clock.advance_to(25)

        with patch.object(ledger, "update_bet_state", side_effect=sqlite3.OperationalError("database is locked")):
            first = machine.process_live(bet)

        assert first.outcome == ProcessOutcome.RETRY
        assert len(transactions.executed) == 1

        second = machine.process_live(ledger.get_bet(bet.id))

        assert second.outcome == ProcessOutcome.ADVANCED
        assert len(transactions.executed) == 1
        assert second.tx_hashes == ["0xtx1"]

    def test_missing_escrow_is_retry(self, machine, context, ledger, settlement, oracle, transactions, clock, make_bet):
        context.source_policy.escrow_path = None
        bet = make_live(ledger, settlement, make_bet())
        oracle.determine_outcome.return_value = Outcome.PARTICIPANT1_WIN
        clock.advance_to(25)

        result = machine.process_live(bet)

        assert result.outcome == ProcessOutcome.RETRY
        assert transactions.executed == []

    def test_terminal_bet_is_not_touched(self, machine, ledger, settlement, oracle, transactions, clock, make_bet):
        bet = make_live(ledger, settlement, make_bet())
        oracle.determine_outcome.return_value = Outcome.PARTICIPANT1_WIN
        clock.advance_to(25)
        machine.process_live(bet)
        oracle.determine_outcome.reset_mock()

        result = machine.process(ledger.get_bet(bet.id))

        assert result.outcome == ProcessOutcome.UNCHANGED
        oracle.determine_outcome.assert_not_called()
        assert len(transactions.executed) == 1


def test_validate_bet_rejects_shared_paths(ledger, make_bet):
    bet = ledger.get_bet(make_bet())
    assert validate_bet(bet) is None

    bet.participant2_deposit_path = bet.participant1_deposit_path
    assert "share" in validate_bet(bet)
