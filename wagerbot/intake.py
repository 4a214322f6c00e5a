"""
Bet intake from already-parsed terms.

Creates the ledger record with two fresh deposit derivation paths, derives
both deposit addresses and announces them. Unusable terms are a permanent
error: the bet is not created and the requester gets a generic apology.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from wagerbot.context import WorkerContext
from wagerbot.derivation import generate_derivation_path
from wagerbot.exceptions import AddressResolutionError, InvalidBetTermsError
from wagerbot.models import BetTerms, DepositAddress
from wagerbot.notifier import format_apology, format_bet_created

# Configure module logger
logger = logging.getLogger(__name__)


@dataclass
class BetCreation:
    bet_id: int
    participant1_deposit_path: str
    participant2_deposit_path: str
    participant1_address: DepositAddress
    participant2_address: DepositAddress


def validate_terms(terms: BetTerms) -> None:
    """
    Reject terms that cannot become a bet.

    Raises:
        InvalidBetTermsError: With a description of the first problem found
    """
    challenger = (terms.challenger or "").strip().lstrip("@")
    challenged = (terms.challenged or "").strip().lstrip("@")

    if not challenger or not challenged:
        raise InvalidBetTermsError("both participants must be named")
    if challenger.lower() == challenged.lower():
        raise InvalidBetTermsError("a participant cannot bet against themselves")
    if not isinstance(terms.amount, int) or isinstance(terms.amount, bool) or terms.amount <= 0:
        raise InvalidBetTermsError(f"stake must be a positive integer amount, got {terms.amount!r}")
    if terms.deadline_hours is None or terms.deadline_hours <= 0:
        raise InvalidBetTermsError(f"deadline must be a positive number of hours, got {terms.deadline_hours!r}")
    if not terms.resolution_criteria or not terms.resolution_criteria.strip():
        raise InvalidBetTermsError("resolution criteria are empty")


def create_bet(context: WorkerContext, terms: BetTerms) -> Optional[BetCreation]:
    """
    Create a bet and announce its deposit addresses.

    Args:
        context: Worker context
        terms: Parsed bet terms

    Returns:
        BetCreation on success, None if the bet could not be created
    """
    requester = (terms.challenger or "").strip().lstrip("@") or None

    try:
        validate_terms(terms)
    except InvalidBetTermsError as e:
        logger.warning(f"Rejected bet terms from {requester}: {e}")
        _notify(context, format_apology(requester))
        return None

    normalized = BetTerms(
        challenger=terms.challenger.strip().lstrip("@"),
        challenged=terms.challenged.strip().lstrip("@"),
        amount=terms.amount,
        resolution_criteria=terms.resolution_criteria.strip(),
        deadline_hours=float(terms.deadline_hours),
    )

    participant1_path = generate_derivation_path()
    participant2_path = generate_derivation_path()

    try:
        bet_id = context.ledger.create_bet(
            normalized, participant1_path, participant2_path, created_at=context.clock()
        )
    except Exception as e:
        logger.error(f"Error creating bet for {requester}: {e}", exc_info=True)
        _notify(context, format_apology(requester))
        return None

    try:
        address1 = context.settlement.derive_address(normalized.challenger, participant1_path)
        address2 = context.settlement.derive_address(normalized.challenged, participant2_path)
    except AddressResolutionError as e:
        # The bet exists and stays Unfunded; addresses can be derived again later
        logger.error(f"Bet {bet_id} created but deposit addresses could not be derived: {e}")
        _notify(context, format_apology(requester))
        return None

    _notify(context, format_bet_created(
        bet_id,
        normalized.challenger,
        normalized.challenged,
        address1.address,
        address2.address,
        normalized.amount,
        normalized.deadline_hours,
    ))

    logger.info(f"Bet {bet_id} created between {normalized.challenger} and {normalized.challenged}")
    return BetCreation(
        bet_id=bet_id,
        participant1_deposit_path=participant1_path,
        participant2_deposit_path=participant2_path,
        participant1_address=address1,
        participant2_address=address2,
    )


def _notify(context: WorkerContext, message: str) -> None:
    try:
        context.notify(message)
    except Exception as e:
        logger.error(f"Notification failed: {e}", exc_info=True)
