"""
Admission control for AI coaching requests.

Decides whether a request may reach the paid AI model. States:

    RECEIVED -> RATE_CHECK -> CREDIT_CHECK -> {ALLOWED, DENIED}

Check order:
1. Request validation - a malformed request never touches quota state
2. Rate limit - one request per identity per window, regardless of credits
3. Hourly credits - reported before daily since they refill sooner
4. Daily cap

Denials are returned as decisions, never raised. Credits are not debited
here; the caller debits only after a successful AI response.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Dict, Optional, Type, Union

from ai_coach_guard.storage.models import RequestKind, UserRecord
from ai_coach_guard.storage.repository import UserRepository

from .credits import CreditLedger, format_daily_countdown, format_hourly_countdown
from .locks import IdentityLocks
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class AdmissionState(Enum):
    """States of one admission decision."""
    RECEIVED = auto()
    RATE_CHECK = auto()
    CREDIT_CHECK = auto()
    ALLOWED = auto()
    DENIED = auto()


class DenialReason(Enum):
    """Why a request was denied."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    HOURLY_LIMIT = "HOURLY_LIMIT"
    DAILY_LIMIT = "DAILY_LIMIT"


class InvalidRequest(ValueError):
    """Raised when a coaching payload is malformed."""

    def __init__(self, message: str, error_code: str):
        super().__init__(message)
        self.error_code = error_code


def _require_object(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be an object", "INVALID_PAYLOAD")
    return payload


def _include_context(payload: Dict[str, Any]) -> bool:
    include_context = payload.get("includeContext", False)
    if not isinstance(include_context, bool):
        raise InvalidRequest("includeContext must be a boolean", "INVALID_INCLUDE_CONTEXT")
    return include_context


@dataclass(frozen=True)
class CoachRequest:
    """A validated coaching request."""
    kind: RequestKind
    question: Optional[str] = None
    include_context: bool = False

    @property
    def label(self) -> str:
        return self.kind.value

    @classmethod
    def from_payload(cls, payload: Any, max_question_length: int) -> "CoachRequest":
        """Validate a raw request payload.

        Raises:
            InvalidRequest: If the payload is not an object, kind is missing
                or unknown, or the question is missing or too long for a
                custom question
        """
        payload = _require_object(payload)
        raw_kind = payload.get("kind")
        if not raw_kind:
            raise InvalidRequest("Request kind is required", "MISSING_KIND")
        try:
            kind = RequestKind(raw_kind)
        except ValueError:
            valid = [k.value for k in RequestKind]
            raise InvalidRequest(
                f"Invalid request kind '{raw_kind}', must be one of: {valid}",
                "INVALID_KIND",
            )

        question = payload.get("question")
        if question is not None and not isinstance(question, str):
            raise InvalidRequest("Question must be a string", "INVALID_QUESTION")
        question = question.strip() if question else None
        if kind == RequestKind.CUSTOM_QUESTION and not question:
            raise InvalidRequest("Question is required for custom questions", "MISSING_QUESTION")
        if question and len(question) > max_question_length:
            raise InvalidRequest(
                f"Question must be at most {max_question_length} characters",
                "QUESTION_TOO_LONG",
            )

        return cls(kind=kind, question=question, include_context=_include_context(payload))


@dataclass(frozen=True)
class ChatRequest:
    """A validated turn of a coaching conversation."""
    session_id: str
    message: Optional[str] = None
    include_context: bool = False

    label = "chat"

    @classmethod
    def from_payload(cls, payload: Any, max_message_length: int) -> "ChatRequest":
        """Validate a raw chat payload.

        An empty message starts the conversation.

        Raises:
            InvalidRequest: If the payload is not an object, sessionId is
                missing, or the message is not a string or too long
        """
        payload = _require_object(payload)
        session_id = payload.get("sessionId")
        if not session_id or not isinstance(session_id, str):
            raise InvalidRequest("Session ID is required", "MISSING_SESSION_ID")

        message = payload.get("message")
        if message is not None and not isinstance(message, str):
            raise InvalidRequest("Message must be a string", "INVALID_MESSAGE")
        message = message.strip() if message else None
        if message and len(message) > max_message_length:
            raise InvalidRequest(
                f"Message must be at most {max_message_length} characters",
                "MESSAGE_TOO_LONG",
            )

        return cls(session_id=session_id, message=message, include_context=_include_context(payload))


@dataclass
class AdmissionDecision:
    """Outcome of admitting one request."""
    state: AdmissionState
    user: UserRecord
    request: Optional[Union[CoachRequest, ChatRequest]] = None
    denial: Optional[DenialReason] = None
    error_code: Optional[str] = None
    message: str = ""
    wait_time: Optional[str] = None
    reset_time: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.state == AdmissionState.ALLOWED


class AdmissionController:
    """Composes the rate limiter and credit ledger into one decision.

    The rate and credit checks of one identity run under that identity's
    lock, so overlapping requests from the same user are decided in
    arrival order while other users proceed in parallel.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        ledger: CreditLedger,
        users: UserRepository,
        max_question_length: int = 500,
        persist_retries: int = 3,
        locks: Optional[IdentityLocks] = None,
    ):
        self.rate_limiter = rate_limiter
        self.ledger = ledger
        self.users = users
        self.max_question_length = max_question_length
        self.persist_retries = persist_retries
        self.locks = locks or IdentityLocks()

    def admit(self, user: UserRecord, payload: Any) -> AdmissionDecision:
        """Decide whether a coaching request may call the AI model.

        Args:
            user: The authenticated, existing user
            payload: Raw request payload

        Returns:
            AdmissionDecision in state ALLOWED or DENIED
        """
        return self._admit(user, payload, CoachRequest)

    def admit_chat(self, user: UserRecord, payload: Any) -> AdmissionDecision:
        """Decide whether a conversation turn may call the AI model."""
        return self._admit(user, payload, ChatRequest)

    def _admit(
        self,
        user: UserRecord,
        payload: Any,
        request_type: Type[Union[CoachRequest, ChatRequest]],
    ) -> AdmissionDecision:
        # RECEIVED
        try:
            request = request_type.from_payload(payload, self.max_question_length)
        except InvalidRequest as e:
            logger.info("Rejected coaching request from %s: %s", user.email, e)
            return AdmissionDecision(
                state=AdmissionState.DENIED,
                user=user,
                denial=DenialReason.VALIDATION_ERROR,
                error_code=e.error_code,
                message=str(e),
            )

        with self.locks.hold(user.email):
            # RATE_CHECK
            if not self.rate_limiter.allow(user.email):
                wait_seconds = math.ceil(self.rate_limiter.seconds_until_reset(user.email))
                logger.info("Rate limit hit for %s", user.email)
                return AdmissionDecision(
                    state=AdmissionState.DENIED,
                    user=user,
                    request=request,
                    denial=DenialReason.RATE_LIMIT,
                    error_code="RATE_LIMIT_EXCEEDED",
                    message="Too many requests. Please wait a few seconds before trying again.",
                    wait_time=format_hourly_countdown(*divmod(wait_seconds, 60)),
                )

            # CREDIT_CHECK, on the stored state rather than the caller's copy
            user = self.users.get_user(user.id) or user
            user = self._reconcile_and_persist(user)
            credits = user.credits

            if self.ledger.hourly_exhausted(credits):
                wait_time = format_hourly_countdown(*self.ledger.time_until_hourly_reset(credits))
                logger.info("Hourly limit reached for %s, next credit in %s", user.email, wait_time)
                return AdmissionDecision(
                    state=AdmissionState.DENIED,
                    user=user,
                    request=request,
                    denial=DenialReason.HOURLY_LIMIT,
                    error_code="HOURLY_LIMIT_REACHED",
                    message="Hourly limit reached",
                    wait_time=wait_time,
                )

            if self.ledger.daily_exhausted(credits):
                reset_time = format_daily_countdown(*self.ledger.time_until_daily_reset())
                logger.info("Daily limit reached for %s, resets in %s", user.email, reset_time)
                return AdmissionDecision(
                    state=AdmissionState.DENIED,
                    user=user,
                    request=request,
                    denial=DenialReason.DAILY_LIMIT,
                    error_code="DAILY_LIMIT_REACHED",
                    message="Daily limit reached",
                    reset_time=reset_time,
                )

        logger.debug(
            "Admitted %s request from %s (hourly=%d, daily=%d)",
            request.label, user.email, credits.hourly_remaining, credits.daily_used,
        )
        return AdmissionDecision(state=AdmissionState.ALLOWED, user=user, request=request)

    def _reconcile_and_persist(self, user: UserRecord) -> UserRecord:
        """Apply due resets and write them back.

        Each reset is written conditionally on the marker that was read;
        when another writer got there first the user is reloaded and
        reconciled again.
        """
        for _ in range(self.persist_retries):
            previous_hourly = user.credits.hourly_reset_at
            previous_daily = user.credits.daily_reset_date
            result = self.ledger.reconcile(user.credits)
            if not result.any_reset:
                return user

            written = True
            if result.hourly_reset:
                written = self.users.reset_hourly_credits(
                    user.id,
                    self.ledger.hourly_pool,
                    reset_at=user.credits.hourly_reset_at,
                    expected_reset_at=previous_hourly,
                ) and written
            if result.daily_reset:
                written = self.users.reset_daily_credits(
                    user.id,
                    reset_date=user.credits.daily_reset_date,
                    expected_reset_date=previous_daily,
                ) and written
            if written:
                logger.debug(
                    "Reset credits for %s (hourly=%s, daily=%s)",
                    user.email, result.hourly_reset, result.daily_reset,
                )
                return user

            reloaded = self.users.get_user(user.id)
            if reloaded is None:
                return user
            user = reloaded
        return user
