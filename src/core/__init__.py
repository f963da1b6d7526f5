"""
Core module for cross-cutting concerns.

This module provides:
- Structured logging configuration
- Request tracing middleware
- The error taxonomy
- Common utilities
"""

from core.exceptions import (
    ConfigurationError,
    ConflictWarning,
    ExternalServiceError,
    SearchCancelledError,
    ValidationError,
    VehicleSearchError,
)
from core.logging import bind_context, configure_logging, get_logger
from core.utils import clamp, parse_number

__all__ = [
    "configure_logging",
    "get_logger",
    "bind_context",
    "VehicleSearchError",
    "ValidationError",
    "ConflictWarning",
    "ConfigurationError",
    "ExternalServiceError",
    "SearchCancelledError",
    "clamp",
    "parse_number",
]
