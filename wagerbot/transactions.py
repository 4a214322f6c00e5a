"""
Token transfer construction and broadcast.

A transfer is: encode the token call, let the signing gateway prepare the
unsigned transaction, obtain a delegated signature scoped to the source
derivation path, assemble, broadcast. Executing the same request twice moves
funds twice; callers gate on bet status and the transfer log.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from web3.exceptions import Web3Exception

from wagerbot.chain import SettlementClient
from wagerbot.config import Config
from wagerbot.exceptions import SigningError, TransactionError
from wagerbot.models import Bet

# Configure module logger
logger = logging.getLogger(__name__)


@dataclass
class TransferRequest:
    """
    One token transfer.

    Attributes:
        source_owner: Owner identity the source derivation path is scoped to
        source_path: Derivation path of the key holding the funds
        source_address: Chain address of the source
        recipient: Destination chain address
        amount: Amount in the token's smallest unit
        operation_key: Deterministic per-transition key, never a funding path
    """
    source_owner: str
    source_path: str
    source_address: str
    recipient: str
    amount: int
    operation_key: str


class SourcePolicy:
    """
    Decides where the funds for each movement are drawn from.

    Refunds come back out of the participant's own deposit address. Payouts
    are drawn from a consolidated escrow path controlled by the signer account.
    """

    def __init__(self, escrow_owner: Optional[str] = None, escrow_path: Optional[str] = None):
        self.escrow_owner = escrow_owner or Config.NEAR_ACCOUNT_ID
        self.escrow_path = escrow_path or Config.ESCROW_DERIVATION_PATH

    def refund_source(self, bet: Bet, participant: int) -> tuple[str, str]:
        return bet.owner_and_path(participant)

    def payout_source(self, bet: Bet) -> tuple[str, str]:
        if not self.escrow_owner or not self.escrow_path:
            raise TransactionError(f"No escrow source configured for payout of bet {bet.id}")
        return self.escrow_owner, self.escrow_path


class TransactionBuilder:
    """Builds, signs and broadcasts token transfers through the settlement client."""

    def __init__(self, settlement: SettlementClient, key_version: Optional[int] = None):
        self.settlement = settlement
        self.key_version = Config.SIGNATURE_KEY_VERSION if key_version is None else key_version

    def build_transaction_request(self, request: TransferRequest) -> dict:
        """
        Build the unsigned transaction request for a token transfer.

        Args:
            request: Transfer to encode

        Returns:
            Transaction request dict (to, from, value, data)
        """
        data = self.settlement.encode_transfer(request.recipient, request.amount)
        return {
            "to": self.settlement.token_address,
            "from": request.source_address,
            "value": "0",
            "data": data,
        }

    def execute(self, request: TransferRequest) -> str:
        """
        Sign and broadcast a transfer.

        Args:
            request: Transfer to execute

        Returns:
            Broadcast transaction hash

        Raises:
            TransactionError: On any failure before or during broadcast that is safe to retry
            AmbiguousBroadcastError: If the broadcast may or may not have been accepted
        """
        if request.amount <= 0:
            raise TransactionError(
                f"Refusing transfer of non-positive amount {request.amount}",
                request.operation_key,
            )

        logger.info(
            f"Transfer {request.operation_key}: {request.amount} from {request.source_address} "
            f"to {request.recipient}"
        )

        try:
            tx_request = self.build_transaction_request(request)
            transaction, payload = self.settlement.prepare_transaction(tx_request)
            signature = self.settlement.sign(
                payload,
                request.source_path,
                key_version=self.key_version,
                owner=request.source_owner,
                operation_key=request.operation_key,
            )
            signed_tx = self.settlement.assemble(transaction, signature)
        except SigningError as e:
            raise TransactionError(str(e), request.operation_key) from e
        except (ValueError, TypeError, Web3Exception) as e:
            raise TransactionError(f"Could not build transfer: {e}", request.operation_key) from e

        tx_hash = self.settlement.broadcast(signed_tx, operation_key=request.operation_key)
        logger.info(f"Transfer {request.operation_key} broadcast: {tx_hash}")
        return tx_hash
