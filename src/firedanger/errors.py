"""Failure taxonomy for the forecast core.

Each kind of failure is a distinct exception so the caller (scheduler,
alerting) can decide between retrying, accepting, or stopping.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ForecastError(Exception):
    """Base class for forecast core errors."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(ForecastError):
    """Raised when ecoregion or variable configuration is invalid."""


class TransientIngestionFailure(ForecastError):
    """Raised when an upstream download fails in a way that may succeed later."""

    retryable = True


class IncompleteEnsemble(ForecastError):
    """Raised when fewer (or more) ensemble members resolved than expected."""

    def __init__(self, variable: str, downloaded: int, expected: int):
        message = (
            f"Incomplete ensemble for {variable}: {downloaded} of {expected} members downloaded"
        )
        super().__init__(
            message,
            {"variable": variable, "downloaded": downloaded, "expected": expected},
        )


class StaleUpstreamData(ForecastError):
    """Raised when upstream forecast data does not start today or tomorrow."""

    retryable = True


class DesyncedCoupledVariables(ForecastError):
    """Raised when only part of a coupled variable group received new data."""

    retryable = True


class SeriesIntegrityViolation(ForecastError):
    """Raised when an assembled daily series breaks a continuity invariant."""

    def __init__(self, kind: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        super().__init__(message, {"kind": kind, **(details or {})})


class HistoricalDataUnavailable(ForecastError):
    """Raised when the live historical pull fails and no cache exists."""


class ModelArtifactMissing(ForecastError):
    """Raised when a quantile grid or eCDF model for a cover class is missing."""


class ModelArtifactMismatch(ForecastError):
    """Raised when an artifact's rank rule disagrees with the configuration."""


class PublicationRejected(ForecastError):
    """Raised when the publication gate fails a generated forecast."""

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        self.reason = reason
        super().__init__(f"Forecast rejected: {reason}", details)
