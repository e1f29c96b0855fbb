"""
Error taxonomy and classification.

Maps failures on the coaching path to an ErrorType, an error code and a
derived severity. Severity is not chosen freely:
- AI_MODEL_ERROR -> HIGH
- NETWORK_ERROR -> MEDIUM
- VALIDATION_ERROR and RATE_LIMIT -> always LOW
- anything else -> LOW unless the caller overrides it
"""

import socket
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from ai_coach_guard.storage.models import ErrorType, Severity

# Error types whose severity can never be overridden
_FIXED_LOW = (ErrorType.VALIDATION_ERROR, ErrorType.RATE_LIMIT)

_DERIVED_SEVERITY = {
    ErrorType.AI_MODEL_ERROR: Severity.HIGH,
    ErrorType.NETWORK_ERROR: Severity.MEDIUM,
}


class AIInvocationError(Exception):
    """Raised by the AI adapter with the failure already classified."""

    def __init__(self, error_type: ErrorType, error_code: str, message: str):
        super().__init__(message)
        self.error_type = error_type
        self.error_code = error_code


@dataclass(frozen=True)
class ClientInfo:
    """Client metadata recorded with logged errors."""
    user_agent: str = "unknown"
    ip_address: str = "unknown"


@dataclass
class ErrorEntry:
    """A failure or denial to be written to the error log."""
    identity: str
    error_type: ErrorType
    error_code: str
    message: str
    session_id: str = "none"
    user_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    request_data: Dict[str, Any] = field(default_factory=dict)
    response_data: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    severity: Optional[Severity] = None
    error_id: Optional[str] = None


def derive_severity(error_type: ErrorType, override: Optional[Severity] = None) -> Severity:
    """Severity for an error type, honouring an override where allowed."""
    if error_type in _FIXED_LOW:
        return Severity.LOW
    if override is not None:
        return override
    return _DERIVED_SEVERITY.get(error_type, Severity.LOW)


def classify_exception(exc: BaseException) -> Tuple[ErrorType, str]:
    """Classify an exception raised on the coaching path.

    Args:
        exc: The exception to classify

    Returns:
        Tuple of (ErrorType, error code)
    """
    if isinstance(exc, AIInvocationError):
        return exc.error_type, exc.error_code
    if isinstance(exc, (TimeoutError, socket.timeout)):
        return ErrorType.NETWORK_ERROR, "TIMEOUT"
    if isinstance(exc, socket.gaierror):
        return ErrorType.NETWORK_ERROR, "ENOTFOUND"
    if isinstance(exc, ConnectionError):
        return ErrorType.NETWORK_ERROR, "CONNECTION_ERROR"
    return ErrorType.UNKNOWN_ERROR, type(exc).__name__.upper()
