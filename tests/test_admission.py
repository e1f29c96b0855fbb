"""
Tests for admission control.
"""
import os
import shutil
import tempfile
import threading
import time
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

import pytest

from ai_coach_guard.config.loader import CreditConfig, RateLimitConfig
from ai_coach_guard.core.admission import (
    AdmissionController,
    AdmissionState,
    ChatRequest,
    CoachRequest,
    DenialReason,
    InvalidRequest,
)
from ai_coach_guard.core.credits import CreditLedger
from ai_coach_guard.core.locks import IdentityLocks
from ai_coach_guard.core.rate_limiter import InMemoryRateLimiter
from ai_coach_guard.storage.models import RequestKind, UserCreditState
from ai_coach_guard.storage.repository import UserRepository, initialize_schema

from fakes import FakeClock

START = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


class TestCoachRequest:
    """Test payload validation."""

    def test_valid_workout_request(self):
        request = CoachRequest.from_payload({"kind": "workout_plan"}, 500)

        assert request.kind == RequestKind.WORKOUT_PLAN
        assert request.question is None
        assert request.include_context is False

    def test_custom_question_is_stripped(self):
        request = CoachRequest.from_payload(
            {"kind": "custom_question", "question": "  How much protein?  ", "includeContext": True},
            500,
        )

        assert request.question == "How much protein?"
        assert request.include_context is True

    @pytest.mark.parametrize("payload,code", [
        ({}, "MISSING_KIND"),
        ({"kind": ""}, "MISSING_KIND"),
        ({"kind": "meal_prep"}, "INVALID_KIND"),
        ({"kind": "custom_question"}, "MISSING_QUESTION"),
        ({"kind": "custom_question", "question": "   "}, "MISSING_QUESTION"),
        ({"kind": "custom_question", "question": 42}, "INVALID_QUESTION"),
        ({"kind": "custom_question", "question": "x" * 501}, "QUESTION_TOO_LONG"),
        ({"kind": "workout_plan", "includeContext": "yes"}, "INVALID_INCLUDE_CONTEXT"),
    ])
    def test_invalid_payloads(self, payload, code):
        with pytest.raises(InvalidRequest) as exc_info:
            CoachRequest.from_payload(payload, 500)
        assert exc_info.value.error_code == code

    def test_question_at_max_length_accepted(self):
        request = CoachRequest.from_payload({"kind": "custom_question", "question": "x" * 500}, 500)
        assert len(request.question) == 500

    @pytest.mark.parametrize("payload", [["workout_plan"], "workout_plan", 42])
    def test_non_object_payload(self, payload):
        with pytest.raises(InvalidRequest) as exc_info:
            CoachRequest.from_payload(payload, 500)
        assert exc_info.value.error_code == "INVALID_PAYLOAD"
        assert str(exc_info.value) == "Request body must be an object"


class TestChatRequest:
    """Test conversation payload validation."""

    def test_first_turn_without_message(self):
        request = ChatRequest.from_payload({"sessionId": "s1"}, 500)

        assert request.session_id == "s1"
        assert request.message is None
        assert request.include_context is False

    def test_message_is_stripped(self):
        request = ChatRequest.from_payload(
            {"sessionId": "s1", "message": "  I want to get stronger ", "includeContext": True}, 500
        )

        assert request.message == "I want to get stronger"
        assert request.include_context is True

    @pytest.mark.parametrize("payload,code", [
        ([], "INVALID_PAYLOAD"),
        ({}, "MISSING_SESSION_ID"),
        ({"sessionId": ""}, "MISSING_SESSION_ID"),
        ({"sessionId": 7}, "MISSING_SESSION_ID"),
        ({"sessionId": "s1", "message": ["hi"]}, "INVALID_MESSAGE"),
        ({"sessionId": "s1", "message": "x" * 501}, "MESSAGE_TOO_LONG"),
        ({"sessionId": "s1", "includeContext": 1}, "INVALID_INCLUDE_CONTEXT"),
    ])
    def test_invalid_payloads(self, payload, code):
        with pytest.raises(InvalidRequest) as exc_info:
            ChatRequest.from_payload(payload, 500)
        assert exc_info.value.error_code == code


class TestAdmissionController:
    """Test the admission state machine against a real user table."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

        self.clock = FakeClock(START)
        self.users = UserRepository(self.db_path)
        self.ledger = CreditLedger(CreditConfig(), clock=self.clock)
        self.rate_limiter = InMemoryRateLimiter(RateLimitConfig(), clock=self.clock.timestamp)
        self.controller = AdmissionController(self.rate_limiter, self.ledger, self.users)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _create_user(self, hourly=5, reset_at=None, daily=0, reset_date=date(2024, 6, 15)):
        credits = UserCreditState(
            hourly_remaining=hourly,
            hourly_reset_at=reset_at or START,
            daily_used=daily,
            daily_reset_date=reset_date,
        )
        return self.users.create_user("alice@example.com", "Alice", credits)

    def test_allowed_with_credits(self):
        user = self._create_user()

        decision = self.controller.admit(user, {"kind": "workout_plan"})

        assert decision.allowed
        assert decision.state == AdmissionState.ALLOWED
        assert decision.request.kind == RequestKind.WORKOUT_PLAN

    def test_admission_does_not_debit(self):
        """Test credits are only debited by the caller after success."""
        user = self._create_user(hourly=3, daily=2)

        self.controller.admit(user, {"kind": "workout_plan"})

        stored = self.users.get_user(user.id).credits
        assert stored.hourly_remaining == 3
        assert stored.daily_used == 2

    def test_validation_failure_does_not_consume_rate_window(self):
        """Test a malformed request leaves the rate window untouched."""
        user = self._create_user()

        decision = self.controller.admit(user, {"kind": "bogus"})
        assert decision.denial == DenialReason.VALIDATION_ERROR
        assert decision.error_code == "INVALID_KIND"

        assert self.controller.admit(user, {"kind": "workout_plan"}).allowed

    def test_rate_limit_denies_even_with_credits(self):
        user = self._create_user()
        assert self.controller.admit(user, {"kind": "workout_plan"}).allowed

        self.clock.advance(seconds=3)
        decision = self.controller.admit(user, {"kind": "workout_plan"})

        assert decision.state == AdmissionState.DENIED
        assert decision.denial == DenialReason.RATE_LIMIT
        assert decision.error_code == "RATE_LIMIT_EXCEEDED"
        assert decision.message.startswith("Too many requests")
        assert decision.wait_time == "0:07"

    def test_rate_window_reopens(self):
        user = self._create_user()
        self.controller.admit(user, {"kind": "workout_plan"})

        self.clock.advance(seconds=11)

        assert self.controller.admit(user, {"kind": "workout_plan"}).allowed

    def test_hourly_limit(self):
        user = self._create_user(hourly=0, reset_at=START - timedelta(minutes=20))

        decision = self.controller.admit(user, {"kind": "workout_plan"})

        assert decision.denial == DenialReason.HOURLY_LIMIT
        assert decision.error_code == "HOURLY_LIMIT_REACHED"
        assert decision.message == "Hourly limit reached"
        assert decision.wait_time == "40:00"
        assert decision.reset_time is None

    def test_daily_limit(self):
        user = self._create_user(hourly=3, daily=20)

        decision = self.controller.admit(user, {"kind": "workout_plan"})

        assert decision.denial == DenialReason.DAILY_LIMIT
        assert decision.error_code == "DAILY_LIMIT_REACHED"
        assert decision.message == "Daily limit reached"
        assert decision.reset_time == "12h 0m"

    def test_hourly_reported_before_daily(self):
        """Test hourly exhaustion wins when both windows are exhausted."""
        user = self._create_user(hourly=0, reset_at=START - timedelta(minutes=5), daily=20)

        decision = self.controller.admit(user, {"kind": "workout_plan"})

        assert decision.denial == DenialReason.HOURLY_LIMIT

    def test_hourly_refill_is_persisted(self):
        """Test a due refill is written back before the credit check."""
        user = self._create_user(hourly=0, reset_at=START - timedelta(minutes=61))

        decision = self.controller.admit(user, {"kind": "workout_plan"})

        assert decision.allowed
        stored = self.users.get_user(user.id).credits
        assert stored.hourly_remaining == 5
        assert stored.hourly_reset_at == START

    def test_daily_reset_from_yesterday_admits(self):
        user = self._create_user(hourly=2, daily=20, reset_date=date(2024, 6, 14))

        decision = self.controller.admit(user, {"kind": "workout_plan"})

        assert decision.allowed
        stored = self.users.get_user(user.id).credits
        assert stored.daily_used == 0
        assert stored.daily_reset_date == date(2024, 6, 15)

    def test_hourly_and_daily_resets_together(self):
        """Test both windows due at once are both written back."""
        user = self._create_user(
            hourly=0,
            reset_at=START - timedelta(minutes=61),
            daily=20,
            reset_date=date(2024, 6, 14),
        )

        decision = self.controller.admit(user, {"kind": "workout_plan"})

        assert decision.allowed
        assert decision.user.credits.hourly_remaining == 5
        assert decision.user.credits.daily_used == 0
        stored = self.users.get_user(user.id).credits
        assert stored.hourly_remaining == 5
        assert stored.hourly_reset_at == START
        assert stored.daily_used == 0
        assert stored.daily_reset_date == date(2024, 6, 15)

    def test_chat_turn_uses_same_checks(self):
        user = self._create_user(hourly=0, reset_at=START - timedelta(minutes=30))

        decision = self.controller.admit_chat(user, {"sessionId": "s1", "message": "hi"})

        assert decision.denial == DenialReason.HOURLY_LIMIT
        assert decision.request.session_id == "s1"

    def test_chat_turn_shares_rate_window_with_requests(self):
        user = self._create_user()
        assert self.controller.admit(user, {"kind": "workout_plan"}).allowed

        decision = self.controller.admit_chat(user, {"sessionId": "s1"})

        assert decision.denial == DenialReason.RATE_LIMIT

    def test_non_object_payload_denied(self):
        user = self._create_user()

        decision = self.controller.admit(user, ["workout_plan"])

        assert decision.denial == DenialReason.VALIDATION_ERROR
        assert decision.error_code == "INVALID_PAYLOAD"

    def test_uses_stored_state_over_stale_caller_copy(self):
        """Test the credit check reads the stored balance."""
        user = self._create_user(hourly=5)
        stale = replace(user, credits=replace(user.credits))
        self.users.save_credits(user.id, replace(user.credits, hourly_remaining=0))

        decision = self.controller.admit(stale, {"kind": "workout_plan"})

        assert decision.denial == DenialReason.HOURLY_LIMIT

    def test_concurrent_reset_reloads(self):
        """Test a reset that lost to another writer adopts the stored state."""
        user = self._create_user(hourly=2, reset_at=START - timedelta(minutes=10))
        stale = replace(user, credits=UserCreditState(
            hourly_remaining=0,
            hourly_reset_at=START - timedelta(hours=2),
            daily_used=0,
            daily_reset_date=date(2024, 6, 15),
        ))

        result = self.controller._reconcile_and_persist(stale)

        assert result.credits.hourly_remaining == 2
        assert result.credits.hourly_reset_at == START - timedelta(minutes=10)
        stored = self.users.get_user(user.id).credits
        assert stored.hourly_remaining == 2

    def test_same_identity_requests_are_serialized(self):
        """Test only one of many simultaneous requests is admitted."""
        user = self._create_user()
        results = []
        barrier = threading.Barrier(10)

        def worker():
            barrier.wait()
            results.append(self.controller.admit(user, {"kind": "workout_plan"}))

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for d in results if d.allowed) == 1
        assert all(d.denial == DenialReason.RATE_LIMIT for d in results if not d.allowed)
        assert len(self.controller.locks) == 0


class TestIdentityLocks:
    """Test the per-identity lock registry."""

    def test_registry_empties_after_use(self):
        locks = IdentityLocks()

        with locks.hold("alice@example.com"):
            assert len(locks) == 1

        assert len(locks) == 0

    def test_same_identity_is_exclusive(self):
        locks = IdentityLocks()
        inside = []
        overlaps = []

        def worker():
            with locks.hold("alice@example.com"):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(1)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []
        assert len(locks) == 0

    def test_different_identities_do_not_block(self):
        locks = IdentityLocks()

        with locks.hold("alice@example.com"):
            acquired = threading.Event()

            def worker():
                with locks.hold("bob@example.com"):
                    acquired.set()

            t = threading.Thread(target=worker)
            t.start()
            assert acquired.wait(timeout=2)
            t.join()
