from __future__ import annotations


class SpotBotError(Exception):
    """Base class for engine errors."""


class TransientNetworkError(SpotBotError):
    """Exchange request failed after the retry budget was spent."""


class ExchangeRejectedError(SpotBotError):
    """Exchange answered with a client error (bad params, insufficient funds, ...)."""

    def __init__(self, message: str, status_code: int | None = None, code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class CredentialError(SpotBotError):
    """Missing exchange link or undecryptable secret."""


class PersistenceError(SpotBotError):
    """Local store failure."""
