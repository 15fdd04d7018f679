"""core/errors.py — exception taxonomy shared by every component.

    ConfigurationError    fatal at startup; the worker refuses to schedule.
    ExternalServiceError  exchange / sentiment source unreachable or bad data.
                          The current tick is abandoned, nothing is mutated.
    ValidationError       an expected rejection (bad price, size below the
                          minimum).  The candidate signal is dropped quietly.
    PersistenceError      store read/write failure.  In-memory work is
                          discarded; the next tick re-reads committed state.
"""
from __future__ import annotations


class CharityBotError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(CharityBotError):
    """Missing credentials, bad values or an unknown backend."""


class ExternalServiceError(CharityBotError):
    """An external dependency failed or returned invalid data."""

    def __init__(self, message: str, *, service: str = "external") -> None:
        super().__init__(message)
        self.service = service


class ExchangeError(ExternalServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(message, service="exchange")


class SentimentSourceError(ExternalServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(message, service="sentiment")


class ValidationError(CharityBotError):
    """A candidate trade was rejected by a sizing or price check."""


class PersistenceError(CharityBotError):
    """The state store failed to read or commit."""


class StaleLedgerError(PersistenceError):
    """A guarded ledger write no longer matches the snapshot it was planned from."""
