"""
WhatIfInvested Edge shared error taxonomy and logging setup.
"""
from .exceptions import (
    EdgeError,
    ErrorContext,
    ThrottledError,
    RouteNotFoundError,
    MethodNotAllowedError,
    DuplicateRouteError,
    UnitNotRegisteredError,
    UnitTimeoutError,
    UnitInvocationError,
    SecretAccessDeniedError,
    SecretUnavailableError,
    SecretExposureError,
    EgressBlockedError,
    ConfigurationError,
)
from .logging_config import configure_logging

__all__ = [
    "EdgeError",
    "ErrorContext",
    "ThrottledError",
    "RouteNotFoundError",
    "MethodNotAllowedError",
    "DuplicateRouteError",
    "UnitNotRegisteredError",
    "UnitTimeoutError",
    "UnitInvocationError",
    "SecretAccessDeniedError",
    "SecretUnavailableError",
    "SecretExposureError",
    "EgressBlockedError",
    "ConfigurationError",
    "configure_logging",
]
