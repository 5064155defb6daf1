"""Typed exception hierarchy for exchange and trading-loop operations.

Enables callers to distinguish transient vs permanent failures and decide
whether to skip a pair, abort a single trade, or refuse to start.
"""


class ConfigurationError(Exception):
    """Invalid or missing configuration (malformed config, bad wallet secret)."""


class ExchangeError(Exception):
    """Base class for all exchange-related errors."""


class TransientExchangeError(ExchangeError):
    """Temporary failure that may succeed on retry (network, 503, timeout)."""


class RateLimitError(TransientExchangeError):
    """Exchange rate limit hit (429). Caller should backoff and retry."""
    def __init__(self, message: str = "Rate limit exceeded", retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class DataUnavailable(TransientExchangeError):
    """Market data could not be fetched or the history is too short."""


class PermanentExchangeError(ExchangeError):
    """Non-recoverable failure (invalid pair, auth, insufficient balance)."""


class AuthError(PermanentExchangeError):
    """Wallet credentials missing, undecryptable, or rejected by the exchange."""


class InsufficientFundsError(PermanentExchangeError):
    """Insufficient balance for the requested order."""


class InvalidOrderError(PermanentExchangeError):
    """Invalid order parameters (bad symbol, size below minimum, etc)."""


class ExecutionError(ExchangeError):
    """An order submission or account query failed for one trade attempt."""
