"""Exceptions raised by the settlement worker."""

from typing import Optional


class WagerBotError(Exception):
    """Base exception."""

    pass


class ConfigurationError(WagerBotError):
    """Required configuration is missing or invalid."""

    pass


class AddressResolutionError(WagerBotError):
    """A deposit address could not be derived."""

    pass


class SigningError(WagerBotError):
    """The signing gateway rejected or failed a request."""

    pass


class TransactionError(WagerBotError):
    """A transfer failed before it could have reached the chain. Safe to retry."""

    def __init__(self, message: str, operation_key: Optional[str] = None):
        super().__init__(message)
        self.operation_key = operation_key


class AmbiguousBroadcastError(TransactionError):
    """A broadcast was sent but its acceptance is unknown. Never auto-retry."""

    pass


class InvalidTransitionError(WagerBotError):
    """A status change would move a bet backward or skip a state."""

    pass


class BetNotFoundError(WagerBotError):
    """No bet exists with the given ID."""

    pass


class InvalidBetTermsError(WagerBotError):
    """Bet terms are unusable and the bet must not be created."""

    pass
