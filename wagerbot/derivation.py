"""
Derivation path generation for per-participant deposit addresses.

Funding paths are random and never reused. Operation keys are deterministic
per (bet, transition kind) so the signing gateway can reject a duplicate
transfer for the same transition.
"""

import secrets
from typing import Optional

from wagerbot.config import Config

# 16 bytes -> 128 bits of randomness
PATH_ENTROPY_BYTES = 16


def generate_derivation_path(namespace: Optional[str] = None) -> str:
    """
    Generate a fresh deposit derivation path.

    Args:
        namespace: Chain namespace prefix. If None, uses Config.SETTLEMENT_CHAIN_NAMESPACE

    Returns:
        Path string such as "base_3f9c...e1" with 32 hex characters of randomness
    """
    prefix = namespace or Config.SETTLEMENT_CHAIN_NAMESPACE
    return f"{prefix}_{secrets.token_hex(PATH_ENTROPY_BYTES)}"


def operation_key(bet_id: int, kind: str, namespace: Optional[str] = None) -> str:
    """Deterministic key for one fund movement of a bet, e.g. "base_7_payout"."""
    prefix = namespace or Config.SETTLEMENT_CHAIN_NAMESPACE
    return f"{prefix}_{bet_id}_{kind}"
