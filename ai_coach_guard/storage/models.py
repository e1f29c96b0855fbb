"""
Data models for storage layer.

Defines database entities and the closed enumerations stored with them.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional


class RequestKind(Enum):
    """Kinds of coaching requests a user can make."""
    WORKOUT_PLAN = "workout_plan"
    NUTRITION_ADVICE = "nutrition_advice"
    PROGRESS_ANALYSIS = "progress_analysis"
    CUSTOM_QUESTION = "custom_question"


class ErrorType(Enum):
    """Exhaustive error taxonomy for the coaching path."""
    API_ERROR = "API_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    AI_MODEL_ERROR = "AI_MODEL_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class Severity(Enum):
    """Severity of a logged error."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ErrorStatus(Enum):
    """Admin workflow status of a logged error."""
    OPEN = "OPEN"
    INVESTIGATING = "INVESTIGATING"
    RESOLVED = "RESOLVED"
    IGNORED = "IGNORED"

    @property
    def is_terminal(self) -> bool:
        return self in (ErrorStatus.RESOLVED, ErrorStatus.IGNORED)


@dataclass
class UserCreditState:
    """Credit counters embedded in a user record.

    Mutated in place by the credit ledger; never deleted.
    """
    hourly_remaining: int
    hourly_reset_at: datetime
    daily_used: int
    daily_reset_date: date

    def __post_init__(self):
        """Validate counters are not negative."""
        if self.hourly_remaining < 0:
            raise ValueError("hourly_remaining cannot be negative")
        if self.daily_used < 0:
            raise ValueError("daily_used cannot be negative")


@dataclass
class UserRecord:
    """A user and the credit state the quota engine owns."""
    id: int
    email: str
    name: str
    credits: UserCreditState
    created_at: datetime


@dataclass(frozen=True)
class CreditsSnapshot:
    """Credit balance captured alongside a saved coaching answer."""
    hourly: int
    daily: int


@dataclass(frozen=True)
class CoachingPlan:
    """A successful AI coaching answer kept for the user.

    Only `applied` ever changes after creation.
    """
    id: str
    user_id: int
    kind: RequestKind
    prompt_text: str
    response_text: str
    credits_snapshot: CreditsSnapshot
    applied: bool
    created_at: datetime


@dataclass(frozen=True)
class ErrorRecord:
    """Durable record of a coaching failure or denial."""
    id: str
    identity: str
    user_id: Optional[int]
    session_id: str
    error_type: ErrorType
    error_code: str
    message: str
    severity: Severity
    status: ErrorStatus
    created_at: datetime
    updated_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    request_data: Dict[str, Any] = field(default_factory=dict)
    response_data: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    user_agent: str = "unknown"
    ip_address: str = "unknown"
    admin_notes: str = ""
    resolved_by: str = ""
    resolved_at: Optional[datetime] = None
