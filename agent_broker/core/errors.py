"""
Agent Broker Error Handling

Specific error types with stable codes for clients and debugging context.
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Request errors (400s)
    INVALID_REQUEST = "INVALID_REQUEST"
    UNSUPPORTED_DOMAIN = "UNSUPPORTED_DOMAIN"

    # Auth and capability errors (401/403)
    UNAUTHENTICATED = "UNAUTHENTICATED"
    INVALID_TOKEN = "INVALID_TOKEN"
    POLICY_VIOLATION = "POLICY_VIOLATION"

    # Session errors
    NOT_FOUND = "NOT_FOUND"
    DUPLICATE_TOKEN = "DUPLICATE_TOKEN"
    SESSION_NOT_READY = "SESSION_NOT_READY"
    RATE_LIMITED = "RATE_LIMITED"

    # Server errors (500s)
    CONFIG_ERROR = "CONFIG_ERROR"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    AGENT_DISABLED = "AGENT_DISABLED"


STATUS_MAP: Dict[ErrorCode, int] = {
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.UNSUPPORTED_DOMAIN: 400,
    ErrorCode.UNAUTHENTICATED: 401,
    ErrorCode.INVALID_TOKEN: 401,
    ErrorCode.POLICY_VIOLATION: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.DUPLICATE_TOKEN: 409,
    ErrorCode.SESSION_NOT_READY: 409,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.CONFIG_ERROR: 500,
    ErrorCode.EXECUTION_ERROR: 500,
    ErrorCode.AGENT_DISABLED: 503,
}


class BrokerError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return status_for(self.code)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class InvalidRequestError(BrokerError):
    """Malformed request body or parameter."""

    def __init__(self, detail: str, field: Optional[str] = None):
        super().__init__(
            code=ErrorCode.INVALID_REQUEST,
            message="Invalid request",
            detail=detail,
            context={"field": field} if field else None
        )


class UnsupportedDomainError(BrokerError):
    """Requested domain cannot be automated by this broker."""

    def __init__(self, domain: str):
        super().__init__(
            code=ErrorCode.UNSUPPORTED_DOMAIN,
            message=f"Domain '{domain}' is not supported",
            context={"domain": domain}
        )


class UnauthenticatedError(BrokerError):
    """No caller identity was supplied."""

    def __init__(self):
        super().__init__(
            code=ErrorCode.UNAUTHENTICATED,
            message="Not authenticated. Provide a Bearer identity."
        )


class InvalidTokenError(BrokerError):
    """Capability token failed signature, shape, or age checks."""

    def __init__(self, detail: str):
        super().__init__(
            code=ErrorCode.INVALID_TOKEN,
            message="Invalid token",
            detail=detail
        )


class PolicyViolationError(BrokerError):
    """Action or navigation rejected by the security policy."""

    def __init__(self, reason: str, host: Optional[str] = None):
        context = {"reason": reason}
        if host:
            context["host"] = host
        super().__init__(
            code=ErrorCode.POLICY_VIOLATION,
            message="Blocked by policy",
            detail=reason,
            context=context
        )


class SessionNotFoundError(BrokerError):
    """Session is absent or owned by someone else."""

    def __init__(self, session_id: str):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message="Session not found",
            context={"session_id": session_id}
        )


class DuplicateTokenError(BrokerError):
    """Token id already consumed by another session."""

    def __init__(self):
        super().__init__(
            code=ErrorCode.DUPLICATE_TOKEN,
            message="Token already consumed"
        )


class SessionNotReadyError(BrokerError):
    """Session cannot be streamed in its current state."""

    def __init__(self, session_id: str, state: str, detail: Optional[str] = None):
        super().__init__(
            code=ErrorCode.SESSION_NOT_READY,
            message="Session is not ready to stream",
            detail=detail or f"consent state is '{state}'",
            context={"session_id": session_id, "state": state}
        )


class RateLimitedError(BrokerError):
    """Action budget for the current window is spent."""

    def __init__(self, limit: int, retry_after: int):
        self.retry_after = retry_after
        super().__init__(
            code=ErrorCode.RATE_LIMITED,
            message=f"Rate limit of {limit} actions per minute exceeded",
            context={"limit": limit, "retry_after": retry_after}
        )


class ConfigError(BrokerError):
    """Missing or invalid configuration."""

    def __init__(self, field: str, detail: str):
        super().__init__(
            code=ErrorCode.CONFIG_ERROR,
            message=f"Invalid configuration for '{field}'",
            detail=detail,
            context={"field": field}
        )


class ExecutionError(BrokerError):
    """Automation failure. Delivered as an ERROR event, never over HTTP."""

    def __init__(self, detail: str, phase: Optional[str] = None):
        super().__init__(
            code=ErrorCode.EXECUTION_ERROR,
            message="Automation failed",
            detail=detail,
            context={"phase": phase} if phase else None
        )


class AgentDisabledError(BrokerError):
    """Master enable flag is off."""

    def __init__(self):
        super().__init__(
            code=ErrorCode.AGENT_DISABLED,
            message="Agent mode is disabled"
        )


def status_for(code: ErrorCode) -> int:
    return STATUS_MAP.get(code, 500)


def to_http_exception(error: BrokerError) -> HTTPException:
    """Convert BrokerError to HTTPException."""
    headers = None
    if isinstance(error, RateLimitedError):
        headers = {"Retry-After": str(error.retry_after)}
    return HTTPException(
        status_code=status_for(error.code),
        detail=error.to_dict(),
        headers=headers,
    )
