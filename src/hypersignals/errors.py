"""Error taxonomy shared by the engine and its collaborators."""

from __future__ import annotations


class HyperSignalsError(Exception):
    """Base error."""


class InsufficientDataError(HyperSignalsError):
    """Raised when a series is shorter than a computation's warm-up."""

    def __init__(self, message: str, *, required: int | None = None, got: int | None = None) -> None:
        super().__init__(message)
        self.required = required
        self.got = got


class InvalidParametersError(HyperSignalsError):
    """Raised for unusable parameters such as a zero stop distance."""


class NotFoundError(HyperSignalsError):
    """Raised by a state store when a document does not exist."""


class ExternalFetchError(HyperSignalsError):
    """Raised when the market-data collaborator fails."""

    def __init__(self, message: str, *, coin: str | None = None, timeframe: str | None = None) -> None:
        super().__init__(message)
        self.coin = coin
        self.timeframe = timeframe
