"""
Sync Engine Errors

Exception taxonomy shared by the vault, the provider adapters, the
orchestrator and the staleness sweep.
"""

import enum


class SyncEngineError(Exception):
    """Base class for all account-sync errors."""
    pass


class ProviderErrorKind(str, enum.Enum):
    AUTH_EXPIRED = "AuthExpired"
    RATE_LIMITED = "RateLimited"
    TIMEOUT = "Timeout"
    UNKNOWN = "Unknown"


class ProviderError(SyncEngineError):
    """
    Raised by provider adapters for any failure talking to an external source.

    The orchestrator maps AUTH_EXPIRED to the authRequired status and every
    other kind to error.
    """

    def __init__(self, kind: ProviderErrorKind, message: str = ""):
        self.kind = ProviderErrorKind(kind)
        self.message = message or self.kind.value
        super().__init__(self.message)

    @property
    def requires_reauth(self) -> bool:
        return self.kind == ProviderErrorKind.AUTH_EXPIRED

    def __repr__(self):
        return f"ProviderError({self.kind.value}, {self.message!r})"


class DecryptionError(SyncEngineError):
    """Envelope was tampered with, malformed, or sealed with another key."""
    pass


class ConnectionNotFound(SyncEngineError):
    pass


class AccountNotFound(SyncEngineError):
    pass


class SweepBudgetExceeded(SyncEngineError):
    """Internal signal that the sweep ran out of wall-clock time."""
    pass


class InvalidStatusTransition(SyncEngineError):
    pass


class SessionReleasedError(SyncEngineError):
    """A browser session was used after it had been released."""
    pass
