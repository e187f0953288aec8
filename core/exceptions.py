"""Shared exception types for the trading engine."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class CollaboratorError(RuntimeError):
    """Raised when an external collaborator (exchange, model API) fails."""

    def __init__(self, source: str, original: Optional[Exception] = None,
                 status_code: Optional[int] = None):
        message = f"{source}: {original}" if original else source
        super().__init__(message)
        self.source = source
        self.original = original
        self.status_code = status_code


class InvalidSettings(ValueError):
    """Raised when a settings update violates its bounds."""
