"""
Error taxonomy for the vehicle search service.

- ValidationError: malformed constraint value or request parameter
- ConflictWarning: contradictory / impossible constraints (non-fatal)
- ConfigurationError: invalid re-ranking or diversity parameters
- ExternalServiceError: search backend or embedding provider failure
- SearchCancelledError: request deadline exceeded
"""

from typing import Optional


class VehicleSearchError(Exception):
    """Base class for errors raised by the search pipeline."""
    pass


class ValidationError(VehicleSearchError, ValueError):
    """Raised when a constraint value or request parameter is malformed."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class ConflictWarning(UserWarning):
    """Contradictory or impossible constraints. Surfaced as a warning string, never raised."""
    pass


class ConfigurationError(VehicleSearchError):
    """Raised before execution when re-ranking / diversity parameters are invalid."""
    pass


class ExternalServiceError(VehicleSearchError):
    """Raised when the search backend or embedding provider fails."""

    def __init__(
        self,
        message: str,
        service: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.service = service
        self.status_code = status_code
        self.retryable = retryable


class SearchCancelledError(VehicleSearchError):
    """Raised when a search exceeds its deadline or is cancelled."""
    pass
