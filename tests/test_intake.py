"""Tests for bet intake."""

import re

import pytest

from conftest import T0
from wagerbot.exceptions import AddressResolutionError, InvalidBetTermsError
from wagerbot.intake import create_bet, validate_terms
from wagerbot.models import BetStatus, BetTerms


def _terms(**overrides):
    values = dict(
        challenger="@alice",
        challenged="@bob",
        amount=10_000_000,
        resolution_criteria="Team A wins the final",
        deadline_hours=24,
    )
    values.update(overrides)
    return BetTerms(**values)


def test_create_bet(context, ledger, settlement, notify):
    creation = create_bet(context, _terms())

    assert creation is not None
    bet = ledger.get_bet(creation.bet_id)
    assert bet.status == BetStatus.UNFUNDED
    assert bet.challenger == "alice"
    assert bet.challenged == "bob"
    assert bet.created_at == T0
    assert re.fullmatch(r"base_[0-9a-f]{32}", bet.participant1_deposit_path)
    assert bet.participant1_deposit_path != bet.participant2_deposit_path

    message = notify.call_args[0][0]
    assert creation.participant1_address.address in message
    assert creation.participant2_address.address in message
    assert "10.00 USDC" in message


@pytest.mark.parametrize("overrides", [
    {"challenged": "@ALICE"},
    {"challenger": ""},
    {"amount": 0},
    {"amount": -5},
    {"amount": 1.5},
    {"amount": True},
    {"deadline_hours": 0},
    {"resolution_criteria": "   "},
])
def test_invalid_terms_are_rejected(overrides):
    with pytest.raises(InvalidBetTermsError):
        validate_terms(_terms(**overrides))


def test_invalid_terms_get_apology_and_no_bet(context, ledger, notify):
    assert create_bet(context, _terms(amount=0)) is None

    assert ledger.get_all_bets() == []
    assert notify.call_args[0][0] == "@alice Sorry, there was an error creating your bet. Please try again."


def test_derivation_failure_keeps_bet_unfunded(context, ledger, settlement, notify, monkeypatch):
    monkeypatch.setattr(settlement, "derive_address", _raise_resolution)

    assert create_bet(context, _terms()) is None

    bets = ledger.get_all_bets()
    assert len(bets) == 1
    assert bets[0].status == BetStatus.UNFUNDED
    assert "Sorry" in notify.call_args[0][0]


def _raise_resolution(owner, path):
    raise AddressResolutionError("gateway unavailable")
