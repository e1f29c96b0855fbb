"""
AI coaching service.

Runs the request pipeline and produces HTTP-equivalent responses:

    admission -> AI model -> credit debit -> plan store

Conversation turns (chat) take the same path; the conversation itself is
kept in memory until the model delivers a plan.

Guarantees:
1. Credits are debited only after a confirmed AI answer
2. Every denial and failure is written to the error log
3. Callers never see provider error text or tracebacks, only a generic
   message and the id of the logged error
4. A failed debit after a successful answer never loses the answer; the
   user may get one free answer (accepted drift)
"""

import logging
import traceback
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Type, TypeVar

from ai_coach_guard.config.loader import CoachConfig
from ai_coach_guard.sdk.openai_client import CoachModelClient
from ai_coach_guard.storage.models import (
    CoachingPlan,
    CreditsSnapshot,
    ErrorRecord,
    ErrorStatus,
    ErrorType,
    RequestKind,
    Severity,
    UserCreditState,
    UserRecord,
)
from ai_coach_guard.storage.repository import (
    ErrorRepository,
    PlanRepository,
    UserRepository,
    initialize_schema,
)

from .admission import AdmissionController, AdmissionDecision, DenialReason
from .conversations import (
    PLAN_READY_MARKER,
    TOPIC_KEYWORDS,
    ChatTurn,
    ConversationStore,
    split_plan,
)
from .credits import CreditLedger, format_hourly_countdown, utcnow
from .error_logger import ErrorLogger
from .errors import ClientInfo, ErrorEntry, classify_exception
from .prompts import build_chat_prompt, build_prompt
from .rate_limiter import RateLimiter, create_rate_limiter

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Sorry, I encountered an error. Please try again later."
MAX_PLANS_PER_PAGE = 20
CONTEXT_PLAN_COUNT = 3

E = TypeVar("E", bound=Enum)


@dataclass(frozen=True)
class CoachResponse:
    """HTTP-equivalent response of a service call."""
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


def _error(status_code: int, message: str) -> CoachResponse:
    return CoachResponse(status_code, {"error": message})


def plan_to_dict(plan: CoachingPlan) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "kind": plan.kind.value,
        "prompt": plan.prompt_text,
        "response": plan.response_text,
        "creditsSnapshot": {
            "hourly": plan.credits_snapshot.hourly,
            "daily": plan.credits_snapshot.daily,
        },
        "applied": plan.applied,
        "createdAt": plan.created_at.isoformat(),
    }


def error_to_dict(record: ErrorRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "identity": record.identity,
        "userId": record.user_id,
        "sessionId": record.session_id,
        "errorType": record.error_type.value,
        "errorCode": record.error_code,
        "message": record.message,
        "details": record.details,
        "requestData": record.request_data,
        "responseData": record.response_data,
        "stackTrace": record.stack_trace,
        "userAgent": record.user_agent,
        "ipAddress": record.ip_address,
        "severity": record.severity.value,
        "status": record.status.value,
        "adminNotes": record.admin_notes,
        "resolvedBy": record.resolved_by,
        "resolvedAt": record.resolved_at.isoformat() if record.resolved_at else None,
        "createdAt": record.created_at.isoformat(),
        "updatedAt": record.updated_at.isoformat(),
    }


def _parse_enum(enum_cls: Type[E], value: Optional[str], name: str) -> Optional[E]:
    if value is None or value == "":
        return None
    try:
        return enum_cls(value.upper())
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ValueError(f"Invalid {name} '{value}', must be one of: {valid}")


def _request_summary(payload: Any, keys: Sequence[str], text_key: str) -> Dict[str, Any]:
    """Loggable view of a request body that leaves out the user's text."""
    if not isinstance(payload, dict):
        return {"payloadType": type(payload).__name__}
    summary = {key: payload.get(key) for key in keys}
    summary[f"has{text_key.capitalize()}"] = bool(payload.get(text_key))
    return summary


class CoachService:
    """Facade over the quota engine, AI adapter, plan store and error log."""

    def __init__(
        self,
        config: CoachConfig,
        users: UserRepository,
        plans: PlanRepository,
        error_logger: ErrorLogger,
        ledger: CreditLedger,
        rate_limiter: RateLimiter,
        admission: AdmissionController,
        model: CoachModelClient,
        conversations: ConversationStore,
    ):
        self.config = config
        self.users = users
        self.plans = plans
        self.error_logger = error_logger
        self.ledger = ledger
        self.rate_limiter = rate_limiter
        self.admission = admission
        self.model = model
        self.conversations = conversations

    def __enter__(self) -> "CoachService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Stop background sweeps."""
        self.rate_limiter.close()
        self.conversations.close()

    # Users

    def create_user(self, email: str, name: str = "") -> UserRecord:
        """Register a user with a full credit balance."""
        return self.users.create_user(email, name, self.ledger.new_state())

    def _lookup(self, identity: Optional[str]):
        if not identity:
            return None, _error(401, "Authentication required")
        user = self.users.get_user_by_email(identity)
        if user is None:
            return None, _error(404, "User not found")
        return user, None

    # Coaching

    def ask(
        self,
        identity: Optional[str],
        payload: Optional[Dict[str, Any]],
        session_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> CoachResponse:
        """Handle one coaching request.

        Args:
            identity: Authenticated user email, None if unauthenticated
            payload: Request body with kind, question and includeContext
            session_id: Client session, recorded with logged errors
            client: User agent and address, recorded with logged errors

        Returns:
            CoachResponse with the answer or a structured denial
        """
        client = client or ClientInfo()
        request_data: Dict[str, Any] = {}
        try:
            payload = payload or {}
            request_data = _request_summary(payload, ("kind", "includeContext"), "question")
            user, failure = self._lookup(identity)
            if failure is not None:
                return failure

            decision = self.admission.admit(user, payload)
            if not decision.allowed:
                return self._deny(decision, session_id, request_data, client)
            return self._answer(decision, session_id, request_data, client)
        except Exception as e:
            return self._fail(identity, None, session_id, request_data, e, client)

    def chat(
        self,
        identity: Optional[str],
        payload: Optional[Dict[str, Any]],
        client: Optional[ClientInfo] = None,
    ) -> CoachResponse:
        """Handle one turn of a coaching conversation.

        Turns pass the same admission checks as ask() and each answered
        turn costs one credit. The conversation ends when the model
        delivers a plan, which is saved like any other coaching answer.

        Args:
            identity: Authenticated user email, None if unauthenticated
            payload: Request body with sessionId, message and includeContext
            client: User agent and address, recorded with logged errors

        Returns:
            CoachResponse with the coach's reply or a structured denial
        """
        client = client or ClientInfo()
        request_data: Dict[str, Any] = {}
        session_id: Optional[str] = None
        try:
            payload = payload or {}
            request_data = _request_summary(payload, ("sessionId", "includeContext"), "message")
            if isinstance(payload, dict) and isinstance(payload.get("sessionId"), str):
                session_id = payload["sessionId"]
            user, failure = self._lookup(identity)
            if failure is not None:
                return failure

            decision = self.admission.admit_chat(user, payload)
            if not decision.allowed:
                return self._deny(decision, session_id, request_data, client)
            return self._converse(decision, request_data, client)
        except Exception as e:
            return self._fail(identity, None, session_id, request_data, e, client)

    def _deny(
        self,
        decision: AdmissionDecision,
        session_id: Optional[str],
        request_data: Dict[str, Any],
        client: ClientInfo,
    ) -> CoachResponse:
        user = decision.user
        is_validation = decision.denial == DenialReason.VALIDATION_ERROR
        status_code = 400 if is_validation else 429
        details: Dict[str, Any] = {"denial": decision.denial.value}
        if decision.wait_time:
            details["waitTime"] = decision.wait_time
        if decision.reset_time:
            details["resetTime"] = decision.reset_time

        self.error_logger.log_error(ErrorEntry(
            identity=user.email,
            user_id=user.id,
            session_id=session_id or "none",
            error_type=ErrorType.VALIDATION_ERROR if is_validation else ErrorType.RATE_LIMIT,
            error_code=decision.error_code,
            message=decision.message,
            details=details,
            request_data=request_data,
            response_data={"status": status_code},
            user_agent=client.user_agent,
            ip_address=client.ip_address,
            severity=Severity.LOW,
        ))

        if is_validation:
            return _error(status_code, decision.message)

        # A rate-limit denial skips the credit check, so reconcile here
        balance = replace(user.credits)
        self.ledger.reconcile(balance)
        body: Dict[str, Any] = {"error": decision.message}
        if decision.reset_time:
            body["resetTime"] = decision.reset_time
        else:
            body["waitTime"] = decision.wait_time
        body["creditsRemaining"] = balance.hourly_remaining
        body["dailyUsed"] = balance.daily_used
        return CoachResponse(status_code, body)

    def _answer(
        self,
        decision: AdmissionDecision,
        session_id: Optional[str],
        request_data: Dict[str, Any],
        client: ClientInfo,
    ) -> CoachResponse:
        user = decision.user
        request = decision.request

        context_user = None
        recent_plans = None
        if request.include_context:
            context_user = user
            recent_plans = self.plans.list_plans(user.id, limit=CONTEXT_PLAN_COUNT)
        prompt = build_prompt(request.kind, request.question, context_user, recent_plans)

        try:
            answer = self.model.generate(prompt)
        except Exception as e:
            return self._fail(user.email, user.id, session_id, request_data, e, client)

        credits = self._debit(user, session_id, client)
        plan_id = self._save_plan(user, request.kind, prompt, answer, credits)

        logger.info(
            "AI coach answered %s for %s (hourly=%d, daily=%d)",
            request.kind.value, user.email, credits.hourly_remaining, credits.daily_used,
        )
        return CoachResponse(200, {
            "response": answer,
            "kind": request.kind.value,
            **self._balance(credits),
            "planId": plan_id,
        })

    def _converse(
        self,
        decision: AdmissionDecision,
        request_data: Dict[str, Any],
        client: ClientInfo,
    ) -> CoachResponse:
        user = decision.user
        request = decision.request
        conversation = self.conversations.get_or_create(user.email, request.session_id)

        history = [(turn.role, turn.content) for turn in conversation.history]
        if request.message:
            history.append(("user", request.message))
        prompt = build_chat_prompt(
            history,
            conversation.topics,
            request.message,
            user if request.include_context else None,
            marker=PLAN_READY_MARKER,
        )

        try:
            reply = self.model.generate(prompt)
        except Exception as e:
            return self._fail(user.email, user.id, request.session_id, request_data, e, client)

        credits = self._debit(user, request.session_id, client)

        plan_text = split_plan(reply)
        if plan_text is not None:
            conversation.is_complete = True
            self.conversations.discard(user.email, request.session_id)
            plan_id = self._save_plan(user, RequestKind.WORKOUT_PLAN, prompt, plan_text, credits)
            logger.info("AI coach chat for %s finished with a plan", user.email)
            return CoachResponse(200, {
                "reply": plan_text,
                "questionNumber": len(TOPIC_KEYWORDS),
                "isComplete": True,
                "plan": plan_text,
                "planId": plan_id,
                **self._balance(credits),
            })

        if request.message:
            conversation.history.append(ChatTurn("user", request.message))
        conversation.history.append(ChatTurn("assistant", reply))
        conversation.track_topics(reply)
        logger.info(
            "AI coach chat reply for %s (topics: %s)",
            user.email, ", ".join(sorted(conversation.topics)) or "none",
        )
        return CoachResponse(200, {
            "reply": reply,
            "questionNumber": conversation.question_number,
            "isComplete": False,
            **self._balance(credits),
        })

    def _balance(self, credits: UserCreditState) -> Dict[str, Any]:
        return {
            "creditsRemaining": credits.hourly_remaining,
            "dailyUsed": credits.daily_used,
            "nextResetTime": format_hourly_countdown(
                *self.ledger.time_until_hourly_reset(credits)
            ),
        }

    def _save_plan(
        self,
        user: UserRecord,
        kind: RequestKind,
        prompt: str,
        answer: str,
        credits: UserCreditState,
    ) -> Optional[str]:
        """Store an answer as a plan; a failed save only loses the plan id."""
        plan = CoachingPlan(
            id=uuid.uuid4().hex,
            user_id=user.id,
            kind=kind,
            prompt_text=prompt,
            response_text=answer,
            credits_snapshot=CreditsSnapshot(
                hourly=credits.hourly_remaining,
                daily=credits.daily_used,
            ),
            applied=False,
            created_at=self.ledger.now(),
        )
        try:
            self.plans.save_plan(plan)
        except Exception:
            logger.exception("Failed to save %s plan for %s", kind.value, user.email)
            return None
        return plan.id

    def _debit(self, user: UserRecord, session_id: Optional[str], client: ClientInfo) -> UserCreditState:
        """Debit one credit after a successful answer.

        Retries failed writes; if the debit still cannot be stored the
        answer is kept and the missed debit is logged as drift.
        """
        retries = self.config.storage.persist_retries
        last_error: Optional[Exception] = None
        for attempt in range(1, retries + 1):
            try:
                stored = self.users.consume_credit(user.id, self.ledger.daily_cap)
            except Exception as e:
                last_error = e
                logger.warning(
                    "Credit debit for %s failed (attempt %d/%d): %s",
                    user.email, attempt, retries, e,
                )
                continue
            if stored is not None:
                return stored
            logger.warning("No credit left to debit for %s; answer served without debit", user.email)
            break

        estimate = replace(user.credits)
        if not (self.ledger.hourly_exhausted(estimate) or self.ledger.daily_exhausted(estimate)):
            self.ledger.consume(estimate)

        if last_error is not None:
            self.error_logger.log_error(ErrorEntry(
                identity=user.email,
                user_id=user.id,
                session_id=session_id or "none",
                error_type=ErrorType.UNKNOWN_ERROR,
                error_code="CREDIT_DEBIT_FAILED",
                message=f"Credit debit not persisted after {retries} attempts",
                details={"errorName": type(last_error).__name__, "errorMessage": str(last_error)},
                response_data={"status": 200},
                user_agent=client.user_agent,
                ip_address=client.ip_address,
            ))
        return estimate

    def _fail(
        self,
        identity: Optional[str],
        user_id: Optional[int],
        session_id: Optional[str],
        request_data: Dict[str, Any],
        exc: Exception,
        client: ClientInfo,
    ) -> CoachResponse:
        error_type, error_code = classify_exception(exc)
        error_id = uuid.uuid4().hex
        logger.error(
            "AI coach request failed for %s: %s/%s (error id %s)",
            identity or "unknown", error_type.value, error_code, error_id,
        )
        self.error_logger.log_error(ErrorEntry(
            identity=identity or "unknown",
            user_id=user_id,
            session_id=session_id or "none",
            error_type=error_type,
            error_code=error_code,
            message=str(exc) or type(exc).__name__,
            details={
                "errorName": type(exc).__name__,
                "cause": repr(exc.__cause__) if exc.__cause__ else None,
            },
            request_data=request_data,
            response_data={"status": 500},
            stack_trace="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            user_agent=client.user_agent,
            ip_address=client.ip_address,
            error_id=error_id,
        ))
        return CoachResponse(500, {"error": GENERIC_FAILURE_MESSAGE, "errorId": error_id})

    # Credits

    def credits(self, identity: Optional[str]) -> CoachResponse:
        """Current credit balance with countdowns to the next resets."""
        user, failure = self._lookup(identity)
        if failure is not None:
            return failure
        return CoachResponse(200, self.ledger.snapshot(user.credits))

    # Plans

    def list_plans(self, identity: Optional[str], page: int = 1, limit: int = MAX_PLANS_PER_PAGE) -> CoachResponse:
        """A page of the user's saved plans, newest first."""
        user, failure = self._lookup(identity)
        if failure is not None:
            return failure
        page = max(1, page)
        limit = min(max(1, limit), MAX_PLANS_PER_PAGE)
        plans = self.plans.list_plans(user.id, limit=limit, offset=(page - 1) * limit)
        return CoachResponse(200, {
            "plans": [plan_to_dict(plan) for plan in plans],
            "page": page,
            "limit": limit,
            "total": self.plans.count_plans(user.id),
        })

    def delete_plan(self, identity: Optional[str], plan_id: str) -> CoachResponse:
        user, failure = self._lookup(identity)
        if failure is not None:
            return failure
        if not self.plans.delete_plan(plan_id, user.id):
            return _error(404, "Plan not found")
        return CoachResponse(200, {"message": "Plan deleted"})

    def apply_plan(self, identity: Optional[str], plan_id: str) -> CoachResponse:
        user, failure = self._lookup(identity)
        if failure is not None:
            return failure
        plan = self.plans.mark_plan_applied(plan_id, user.id)
        if plan is None:
            return _error(404, "Plan not found")
        return CoachResponse(200, {"plan": plan_to_dict(plan)})

    # Admin error management

    def list_errors(
        self,
        status: Optional[str] = None,
        severity: Optional[str] = None,
        error_type: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> CoachResponse:
        """Paginated error listing filtered by status, severity and type."""
        try:
            status_filter = _parse_enum(ErrorStatus, status, "status")
            severity_filter = _parse_enum(Severity, severity, "severity")
            type_filter = _parse_enum(ErrorType, error_type, "errorType")
        except ValueError as e:
            return _error(400, str(e))

        page = max(1, page)
        limit = max(1, limit)
        errors, total = self.error_logger.list_errors(
            status=status_filter,
            severity=severity_filter,
            error_type=type_filter,
            page=page,
            limit=limit,
        )
        return CoachResponse(200, {
            "errors": [error_to_dict(record) for record in errors],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        })

    def error_stats(self) -> CoachResponse:
        stats = self.error_logger.get_error_stats()
        if stats is None:
            return _error(500, "Failed to load error stats")
        return CoachResponse(200, stats)

    def update_error_status(
        self,
        error_id: str,
        status: str,
        notes: Optional[str] = None,
        resolved_by: Optional[str] = None,
    ) -> CoachResponse:
        try:
            new_status = _parse_enum(ErrorStatus, status, "status")
        except ValueError as e:
            return _error(400, str(e))
        if new_status is None:
            return _error(400, "status is required")

        record = self.error_logger.update_status(error_id, new_status, notes, resolved_by)
        if record is None:
            return _error(404, "Error not found")
        return CoachResponse(200, {"error": error_to_dict(record)})

    def delete_error(self, error_id: str) -> CoachResponse:
        if not self.error_logger.delete_error(error_id):
            return _error(404, "Error not found")
        return CoachResponse(200, {"message": "Error deleted"})

    def cleanup_errors(self, days_old: Optional[int] = None) -> CoachResponse:
        """Delete resolved and ignored errors older than days_old."""
        if days_old is None:
            days_old = self.config.errors.retention_days
        if days_old <= 0:
            return _error(400, "daysOld must be > 0")
        deleted = self.error_logger.delete_old_errors(days_old)
        return CoachResponse(200, {"deletedCount": deleted, "daysOld": days_old})


def build_service(
    config: Optional[CoachConfig] = None,
    model: Optional[CoachModelClient] = None,
    clock: Callable[[], datetime] = utcnow,
    start_sweeper: bool = True,
) -> CoachService:
    """Construct every component once and wire them together.

    Args:
        config: Coach configuration (defaults when omitted)
        model: AI adapter to use instead of the configured OpenAI client
        clock: Source of the current aware datetime, shared by all components
        start_sweeper: Start the background sweeps of the rate limiter and
            the conversation store

    Returns:
        A ready CoachService; close() it to stop background work
    """
    config = config or CoachConfig()
    db_path = config.storage.db_path
    initialize_schema(db_path)

    users = UserRepository(
        db_path,
        hourly_pool=config.credits.hourly_pool,
        daily_cap=config.credits.daily_cap,
    )
    ledger = CreditLedger(config.credits, clock=clock)
    rate_limiter = create_rate_limiter(
        config.rate_limit, db_path, clock=lambda: clock().timestamp()
    )
    admission = AdmissionController(
        rate_limiter,
        ledger,
        users,
        max_question_length=config.ai.max_question_length,
        persist_retries=config.storage.persist_retries,
    )
    if model is None:
        model = CoachModelClient(
            model=config.ai.model,
            timeout_seconds=config.ai.timeout_seconds,
            max_output_tokens=config.ai.max_output_tokens,
            temperature=config.ai.temperature,
        )

    service = CoachService(
        config=config,
        users=users,
        plans=PlanRepository(db_path),
        error_logger=ErrorLogger(ErrorRepository(db_path), clock=clock),
        ledger=ledger,
        rate_limiter=rate_limiter,
        admission=admission,
        model=model,
        conversations=ConversationStore(config.chat, clock),
    )
    if start_sweeper:
        rate_limiter.start_sweeper()
        service.conversations.start_sweeper()
    return service
