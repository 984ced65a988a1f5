"""Application-level exception types for Bit Builder."""

from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    """Error taxonomy shared by transports, tools and the orchestrator."""

    AUTHENTICATION_REQUIRED = "authentication-required"
    INVALID_ARGUMENT = "invalid-argument"
    PERMISSION_DENIED = "permission-denied"
    CONNECTION_FAILED = "connection-failed"
    CONNECTION_TIMEOUT = "connection-timeout"
    RESPONSE_TIMEOUT = "response-timeout"
    TOOL_EXECUTION_FAILED = "tool-execution-failed"
    INTERNAL = "internal"


class BitBuilderError(Exception):
    """Base exception for Bit Builder."""


class ConfigurationError(BitBuilderError):
    """Raised when required settings are missing or invalid."""


class BridgeError(BitBuilderError):
    """A classified failure surfaced by a transport or the orchestrator."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# Status names used by the HTTPS callable protocol.
_CALLABLE_STATUS_CODES: dict[str, ErrorCode] = {
    "UNAUTHENTICATED": ErrorCode.AUTHENTICATION_REQUIRED,
    "INVALID_ARGUMENT": ErrorCode.INVALID_ARGUMENT,
    "PERMISSION_DENIED": ErrorCode.PERMISSION_DENIED,
    "DEADLINE_EXCEEDED": ErrorCode.RESPONSE_TIMEOUT,
    "UNAVAILABLE": ErrorCode.CONNECTION_FAILED,
    "INTERNAL": ErrorCode.INTERNAL,
}


class CallableError(BridgeError):
    """Error returned by a cloud callable, keeping the raw status."""

    def __init__(self, status: str, message: str) -> None:
        normalized = status.upper().replace("-", "_")
        super().__init__(_CALLABLE_STATUS_CODES.get(normalized, ErrorCode.INTERNAL), message)
        self.status = normalized


_AUTH_MESSAGES: dict[str, str] = {
    "EMAIL_EXISTS": "This email is already in use.",
    "WEAK_PASSWORD": "Password should be at least 6 characters.",
    "INVALID_EMAIL": "Invalid email address.",
    "EMAIL_NOT_FOUND": "User not found.",
    "INVALID_PASSWORD": "Incorrect password.",
    "INVALID_LOGIN_CREDENTIALS": "Incorrect password.",
    "TOO_MANY_ATTEMPTS_TRY_LATER": "Too many failed login attempts. Please try again later.",
}


class AuthError(BitBuilderError):
    """Raised when the authentication provider rejects a request."""

    def __init__(self, provider_code: str) -> None:
        # Provider codes may carry a trailing explanation ("WEAK_PASSWORD : Password should ...").
        self.provider_code = provider_code.split(":", 1)[0].strip()
        super().__init__(_AUTH_MESSAGES.get(self.provider_code, "Authentication failed. Please try again."))


class TurnFinalizedError(BitBuilderError):
    """Raised when a finalized transcript turn is mutated."""
