"""
Settlement chain client.

This module talks to two collaborators:
- the EVM settlement chain over JSON-RPC (web3) for token balances and broadcasts
- the delegated-signing gateway over HTTP (requests) for address derivation,
  transaction preparation, signatures and signed-transaction assembly

Balance reads return None when the chain cannot be queried so callers can
tell "unknown" apart from a confirmed zero balance.
"""

import json
import logging
import threading
from typing import Any, Optional

import requests
from requests.exceptions import RequestException, ConnectTimeout, Timeout
from urllib3.exceptions import MaxRetryError, NewConnectionError
from web3 import Web3

from wagerbot.config import Config
from wagerbot.exceptions import (
    AddressResolutionError,
    AmbiguousBroadcastError,
    SigningError,
    TransactionError,
)
from wagerbot.models import DepositAddress
from wagerbot.utils import retry_with_backoff, safe_int

# Configure module logger
logger = logging.getLogger(__name__)


ERC20_ABI = [
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function"
    },
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function"
    },
]


# Node errors meaning this transaction, or one with its nonce, is already in flight
ALREADY_SUBMITTED_MARKERS = (
    "already known",
    "known transaction",
    "already imported",
    "nonce too low",
    "replacement transaction underpriced",
)


def _never_connected(error: requests.exceptions.ConnectionError) -> bool:
    """True when the connection failed before any bytes of the request were sent."""
    reason = error.args[0] if error.args else None
    if isinstance(reason, MaxRetryError):
        reason = reason.reason
    return isinstance(reason, NewConnectionError)


def _already_submitted(error: Exception) -> bool:
    """True when the node rejected a broadcast because it has seen the transaction or its nonce."""
    message = str(error).lower()
    return any(marker in message for marker in ALREADY_SUBMITTED_MARKERS)


class SettlementClient:
    """
    Client for the settlement chain and the delegated-signing gateway.

    Address derivation is deterministic on the gateway side, so derived
    addresses are cached in-process and never persisted.
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        signer_url: Optional[str] = None,
        token_address: Optional[str] = None,
        account_id: Optional[str] = None,
        signer_api_key: Optional[str] = None,
        web3: Optional[Web3] = None,
        broadcast_web3: Optional[Web3] = None,
        session: Optional[requests.Session] = None,
        timeout: Optional[int] = None,
        broadcast_timeout: Optional[int] = None,
    ):
        """
        Initialize the settlement client.

        Args:
            rpc_url: Settlement chain JSON-RPC URL. If None, uses Config.SETTLEMENT_RPC_URL
            signer_url: Signing gateway base URL. If None, uses Config.SIGNER_API_URL
            token_address: Token contract address. If None, uses Config.USDC_CONTRACT_ADDRESS
            account_id: Signer account. If None, uses Config.NEAR_ACCOUNT_ID
            signer_api_key: Bearer token for the gateway. If None, uses Config.SIGNER_API_KEY
            web3: Preconfigured Web3 instance for reads
            broadcast_web3: Preconfigured Web3 instance for broadcasts
            session: requests.Session for gateway calls
            timeout: Per-call timeout in seconds. If None, uses Config.API_TIMEOUT
            broadcast_timeout: Broadcast timeout in seconds. If None, uses Config.BROADCAST_TIMEOUT
        """
        self.rpc_url = rpc_url or Config.SETTLEMENT_RPC_URL
        self.signer_url = (signer_url or Config.SIGNER_API_URL or "").rstrip("/")
        self.account_id = account_id or Config.NEAR_ACCOUNT_ID
        self.signer_api_key = signer_api_key if signer_api_key is not None else Config.SIGNER_API_KEY
        self.timeout = timeout or Config.API_TIMEOUT
        self.broadcast_timeout = broadcast_timeout or Config.BROADCAST_TIMEOUT

        self.web3 = web3 or Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout}))
        if broadcast_web3 is not None:
            self.broadcast_web3 = broadcast_web3
        elif web3 is not None:
            self.broadcast_web3 = web3
        else:
            # Broadcasts are sent exactly once; the provider must not resend them
            self.broadcast_web3 = Web3(Web3.HTTPProvider(
                self.rpc_url,
                request_kwargs={"timeout": self.broadcast_timeout},
                exception_retry_configuration=None,
            ))

        self.token_address = Web3.to_checksum_address(token_address or Config.USDC_CONTRACT_ADDRESS)
        self.token = self.web3.eth.contract(address=self.token_address, abi=ERC20_ABI)

        self.session = session or requests.Session()
        self._address_cache: dict[tuple[str, str], DepositAddress] = {}
        self._cache_lock = threading.Lock()

    # Signing gateway

    def _gateway_post(self, endpoint: str, payload: dict, timeout: Optional[int] = None) -> dict:
        """POST to the signing gateway and return the decoded JSON body."""
        headers = {"Content-Type": "application/json"}
        if self.signer_api_key:
            headers["Authorization"] = f"Bearer {self.signer_api_key}"

        response = self.session.post(
            f"{self.signer_url}/{endpoint.lstrip('/')}",
            json=payload,
            headers=headers,
            timeout=timeout or self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected gateway response for {endpoint}: {json.dumps(data)[:200]}")
        return data

    def derive_address(self, owner: str, path: str) -> DepositAddress:
        """
        Derive the chain address and public key for (owner, path).

        Args:
            owner: Owner identity the derivation is scoped to
            path: Deposit derivation path

        Returns:
            DepositAddress with checksummed address

        Raises:
            AddressResolutionError: If the gateway cannot derive the address
        """
        key = (owner, path)
        with self._cache_lock:
            cached = self._address_cache.get(key)
        if cached:
            return cached

        try:
            data = self._derive_remote(owner, path)
        except (RequestException, ValueError) as e:
            raise AddressResolutionError(f"Could not derive address for path {path}: {e}") from e

        address = data.get("address")
        public_key = data.get("public_key") or data.get("publicKey")
        if not address or not Web3.is_address(address) or not public_key:
            raise AddressResolutionError(f"Gateway returned an invalid derivation for path {path}")

        derived = DepositAddress(address=Web3.to_checksum_address(address), public_key=public_key)
        with self._cache_lock:
            self._address_cache[key] = derived

        logger.debug(f"Derived deposit address {derived.address} for path {path}")
        return derived

    @retry_with_backoff(max_retries=2, initial_delay=0.5, max_delay=2.0, exceptions=(RequestException,))
    def _derive_remote(self, owner: str, path: str) -> dict:
        return self._gateway_post("derive", {"predecessor": owner, "path": path})

    def prepare_transaction(self, transaction_request: dict) -> tuple[Any, Any]:
        """
        Ask the gateway for the unsigned transaction and its signing payload.

        Returns:
            (unsigned transaction, payload to sign)

        Raises:
            SigningError: If the gateway fails or returns no payload
        """
        try:
            data = self._gateway_post("transactions/prepare", {"transaction": transaction_request})
        except (RequestException, ValueError) as e:
            raise SigningError(f"Transaction preparation failed: {e}") from e

        payloads = data.get("payloads") or []
        if "transaction" not in data or not payloads or "payload" not in payloads[0]:
            raise SigningError("Gateway returned no signing payload")

        return data["transaction"], payloads[0]["payload"]

    def sign(
        self,
        payload: Any,
        path: str,
        key_version: int = 0,
        owner: Optional[str] = None,
        operation_key: Optional[str] = None,
    ) -> dict:
        """
        Request a delegated signature over a payload, scoped to a derivation path.

        Args:
            payload: Signing payload returned by prepare_transaction
            path: Derivation path of the key that controls the source funds
            key_version: Signer key version
            owner: Owner identity the path is scoped to
            operation_key: Per-transition key the gateway uses to reject duplicates

        Returns:
            Signature object as returned by the gateway

        Raises:
            SigningError: If no signature is produced
        """
        request = {
            "account_id": self.account_id,
            "payload": payload,
            "path": path,
            "key_version": key_version,
        }
        if owner:
            request["predecessor"] = owner
        if operation_key:
            request["operation_key"] = operation_key

        try:
            data = self._gateway_post("sign", request)
        except (RequestException, ValueError) as e:
            raise SigningError(f"Signature request failed for path {path}: {e}") from e

        signature = data.get("signature")
        if not signature:
            raise SigningError(f"Gateway returned no signature for path {path}")
        return signature

    def assemble(self, transaction: Any, signature: dict) -> str:
        """
        Combine an unsigned transaction with its signature.

        Returns:
            Raw signed transaction as 0x-prefixed hex

        Raises:
            SigningError: If assembly fails
        """
        try:
            data = self._gateway_post(
                "transactions/assemble",
                {"transaction": transaction, "signatures": [signature]},
            )
        except (RequestException, ValueError) as e:
            raise SigningError(f"Signed transaction assembly failed: {e}") from e

        signed = data.get("signed_transaction")
        if not signed:
            raise SigningError("Gateway returned no signed transaction")
        return signed

    # Settlement chain

    def get_balance(self, address: str) -> Optional[int]:
        """
        Query the token balance of an address.

        Args:
            address: Chain address

        Returns:
            Balance in the token's smallest unit, or None if the query failed
        """
        try:
            raw = self.token.functions.balanceOf(Web3.to_checksum_address(address)).call()
        except Exception as e:
            logger.warning(f"Balance query failed for {address}: {e}")
            return None

        balance = safe_int(raw) if not isinstance(raw, int) else raw
        if balance is None or balance < 0:
            logger.warning(f"Unusable balance {raw!r} returned for {address}")
            return None

        logger.debug(f"Balance for {address}: {balance}")
        return balance

    def encode_transfer(self, recipient: str, amount: int) -> str:
        """Encode calldata for token transfer(recipient, amount)."""
        return self.token.encode_abi("transfer", args=[Web3.to_checksum_address(recipient), amount])

    def broadcast(self, signed_tx: str, operation_key: Optional[str] = None) -> str:
        """
        Broadcast a signed transaction.

        Args:
            signed_tx: Raw signed transaction hex
            operation_key: Key of the fund movement, attached to raised errors

        Returns:
            Transaction hash as 0x-prefixed hex

        Raises:
            TransactionError: If the node definitely did not accept the transaction
            AmbiguousBroadcastError: If the request was sent but no answer arrived
        """
        try:
            tx_hash = self.broadcast_web3.eth.send_raw_transaction(signed_tx)
        except ConnectTimeout as e:
            # Never connected, nothing was sent
            raise TransactionError(f"Broadcast connection timed out: {e}", operation_key) from e
        except Timeout as e:
            raise AmbiguousBroadcastError(
                f"Broadcast timed out after {self.broadcast_timeout}s, acceptance unknown",
                operation_key,
            ) from e
        except requests.exceptions.ConnectionError as e:
            if _never_connected(e):
                raise TransactionError(f"Broadcast connection failed: {e}", operation_key) from e
            raise AmbiguousBroadcastError(
                f"Connection dropped during broadcast, acceptance unknown: {e}",
                operation_key,
            ) from e
        except Exception as e:
            if _already_submitted(e):
                raise AmbiguousBroadcastError(
                    f"Node reports the transaction was already submitted: {e}",
                    operation_key,
                ) from e
            raise TransactionError(f"Broadcast rejected: {e}", operation_key) from e

        return Web3.to_hex(tx_hash)
