"""
WhatIfInvested Edge Exception Hierarchy.
Structured errors for admission, routing, invocation, credential and egress failures.
"""
from __future__ import annotations
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from pydantic import BaseModel, Field
import structlog

logger = structlog.get_logger(__name__)


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    ADMISSION = "admission"
    ROUTING = "routing"
    VALIDATION = "validation"
    INVOCATION = "invocation"
    CREDENTIALS = "credentials"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class ErrorContext(BaseModel):
    """Structured context for error tracking."""
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    service_name: str = Field(default="whatif-edge")
    operation: str | None = None
    request_id: str | None = None
    compute_unit: str | None = None
    model_config = {"frozen": True}


class EdgeError(Exception):
    """Base exception for all edge errors with structured tracking."""
    error_code: str = "EDGE_ERROR"
    category: ErrorCategory = ErrorCategory.INTERNAL
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    http_status: int = 500

    def __init__(self, message: str, *, user_message: str | None = None,
                 context: ErrorContext | None = None, cause: Exception | None = None,
                 details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.user_message = user_message or "An error occurred. Please try again."
        self.context = context or ErrorContext()
        self.cause = cause
        self.details = details or {}
        self._log_error()

    def _log_error(self) -> None:
        log_data = {
            "error_code": self.error_code, "category": self.category.value,
            "severity": self.severity.value, "correlation_id": self.context.correlation_id,
            "operation": self.context.operation, "details": self.details,
        }
        if self.context.compute_unit:
            log_data["compute_unit"] = self.context.compute_unit
        if self.cause:
            log_data["cause_type"] = type(self.cause).__name__
        if self.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            logger.error(self.message, **log_data)
        else:
            logger.warning(self.message, **log_data)

    def response_headers(self) -> dict[str, str]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"code": self.error_code, "message": self.user_message,
                          "correlation_id": self.context.correlation_id,
                          "timestamp": self.context.timestamp.isoformat()}}


# Admission
class ThrottledError(EdgeError):
    error_code = "THROTTLED"
    category = ErrorCategory.ADMISSION
    severity = ErrorSeverity.LOW
    http_status = 429

    def __init__(self, policy_name: str, retry_after: int, headers: dict[str, str] | None = None,
                 **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details.update({"policy": policy_name, "retry_after": retry_after})
        super().__init__(f"Throttle policy '{policy_name}' exceeded",
                         user_message="Too Many Requests", details=details, **kwargs)
        self.retry_after = retry_after
        self._headers = dict(headers or {})

    def response_headers(self) -> dict[str, str]:
        headers = dict(self._headers)
        headers.setdefault("Retry-After", str(self.retry_after))
        return headers


# Routing
class RoutingError(EdgeError):
    error_code = "ROUTING_ERROR"
    category = ErrorCategory.ROUTING
    severity = ErrorSeverity.LOW
    http_status = 404


class RouteNotFoundError(RoutingError):
    error_code = "ROUTE_NOT_FOUND"
    http_status = 404

    def __init__(self, path: str, method: str, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details.update({"path": path, "method": method})
        super().__init__(f"No route for {method} {path}", user_message="Not Found",
                         details=details, **kwargs)


class MethodNotAllowedError(RoutingError):
    error_code = "METHOD_NOT_ALLOWED"
    http_status = 405

    def __init__(self, path: str, method: str, allowed: list[str], **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details.update({"path": path, "method": method, "allowed": allowed})
        super().__init__(f"Method {method} not allowed on {path}", user_message="Method Not Allowed",
                         details=details, **kwargs)
        self.allowed = allowed

    def response_headers(self) -> dict[str, str]:
        return {"Allow": ", ".join(self.allowed)}


class DuplicateRouteError(RoutingError):
    error_code = "DUPLICATE_ROUTE"
    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.HIGH
    http_status = 500

    def __init__(self, path: str, method: str, **kwargs: Any) -> None:
        super().__init__(f"Route already defined for {method} {path}",
                         user_message="Service configuration error",
                         details={"path": path, "method": method}, **kwargs)


# Invocation
class InvocationError(EdgeError):
    error_code = "INVOCATION_ERROR"
    category = ErrorCategory.INVOCATION
    severity = ErrorSeverity.HIGH
    http_status = 500


class UnitNotRegisteredError(InvocationError):
    error_code = "UNIT_NOT_REGISTERED"

    def __init__(self, unit_name: str, **kwargs: Any) -> None:
        super().__init__(f"Compute unit '{unit_name}' is not registered",
                         user_message="Internal server error", details={"unit": unit_name}, **kwargs)


class UnitTimeoutError(InvocationError):
    error_code = "UNIT_TIMEOUT"

    def __init__(self, unit_name: str, timeout_seconds: float, **kwargs: Any) -> None:
        super().__init__(f"Compute unit '{unit_name}' exceeded {timeout_seconds}s",
                         user_message="Internal server error",
                         details={"unit": unit_name, "timeout_seconds": timeout_seconds}, **kwargs)


class UnitInvocationError(InvocationError):
    error_code = "UNIT_FAILED"

    def __init__(self, unit_name: str, **kwargs: Any) -> None:
        super().__init__(f"Compute unit '{unit_name}' failed",
                         user_message="Internal server error", details={"unit": unit_name}, **kwargs)


# Credentials
class CredentialError(EdgeError):
    error_code = "CREDENTIAL_ERROR"
    category = ErrorCategory.CREDENTIALS
    severity = ErrorSeverity.HIGH
    http_status = 500


class SecretAccessDeniedError(CredentialError):
    error_code = "SECRET_ACCESS_DENIED"

    def __init__(self, reference: str, principal: str, **kwargs: Any) -> None:
        super().__init__(f"'{principal}' holds no read grant on '{reference}'",
                         user_message="Internal server error",
                         details={"reference": reference, "principal": principal}, **kwargs)


class SecretUnavailableError(CredentialError):
    error_code = "SECRET_UNAVAILABLE"

    def __init__(self, reference: str, reason: str, **kwargs: Any) -> None:
        super().__init__(f"Secret '{reference}' unavailable: {reason}",
                         user_message="Internal server error",
                         details={"reference": reference, "reason": reason}, **kwargs)


class SecretExposureError(CredentialError):
    error_code = "SECRET_EXPOSURE"
    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.CRITICAL

    def __init__(self, unit_name: str, variable: str, **kwargs: Any) -> None:
        super().__init__(f"Environment variable '{variable}' of '{unit_name}' embeds a secret value",
                         user_message="Service configuration error",
                         details={"unit": unit_name, "variable": variable}, **kwargs)


# Network
class EgressBlockedError(EdgeError):
    error_code = "EGRESS_BLOCKED"
    category = ErrorCategory.NETWORK
    severity = ErrorSeverity.HIGH
    http_status = 500

    def __init__(self, host: str, port: int, protocol: str = "tcp", **kwargs: Any) -> None:
        super().__init__(f"Egress to {protocol}/{host}:{port} blocked by network boundary",
                         user_message="Internal server error",
                         details={"host": host, "port": port, "protocol": protocol}, **kwargs)
        self.host, self.port, self.protocol = host, port, protocol


class ConfigurationError(EdgeError):
    error_code = "CONFIGURATION_ERROR"
    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.CRITICAL
    http_status = 500

    def __init__(self, message: str, *, config_key: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, user_message="Service configuration error",
                         details=details, **kwargs)
