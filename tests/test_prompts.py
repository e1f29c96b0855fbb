"""
Tests for prompt construction.
"""
from datetime import date, datetime, timezone

from ai_coach_guard.core.prompts import build_chat_prompt, build_prompt
from ai_coach_guard.storage.models import (
    CoachingPlan,
    CreditsSnapshot,
    RequestKind,
    UserCreditState,
    UserRecord,
)

NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


def make_user(name="Alice"):
    return UserRecord(
        id=1,
        email="alice@example.com",
        name=name,
        credits=UserCreditState(5, NOW, 0, date(2024, 6, 15)),
        created_at=NOW,
    )


def make_plan(kind):
    return CoachingPlan(
        id=kind.value,
        user_id=1,
        kind=kind,
        prompt_text="",
        response_text="",
        credits_snapshot=CreditsSnapshot(4, 1),
        applied=False,
        created_at=NOW,
    )


class TestBuildPrompt:
    """Test prompt text for each request kind."""

    def test_each_kind_has_instructions(self):
        prompts = {kind: build_prompt(kind) for kind in RequestKind}
        assert len(set(prompts.values())) == len(RequestKind)

    def test_without_context_omits_user(self):
        prompt = build_prompt(RequestKind.WORKOUT_PLAN)

        assert "workout plan" in prompt
        assert "User:" not in prompt

    def test_context_includes_user_and_recent_topics(self):
        prompt = build_prompt(
            RequestKind.PROGRESS_ANALYSIS,
            user=make_user(),
            recent_plans=[make_plan(RequestKind.WORKOUT_PLAN), make_plan(RequestKind.NUTRITION_ADVICE)],
        )

        assert "User: Alice" in prompt
        assert "Recent coaching topics: workout plan, nutrition advice" in prompt

    def test_unnamed_user(self):
        prompt = build_prompt(RequestKind.WORKOUT_PLAN, user=make_user(name=""))
        assert "User: Not specified" in prompt

    def test_question_appended(self):
        prompt = build_prompt(RequestKind.CUSTOM_QUESTION, question="How much protein?")
        assert prompt.endswith("Question: How much protein?")


class TestBuildChatPrompt:
    """Test prompt text for conversation turns."""

    def test_first_turn(self):
        prompt = build_chat_prompt([], set())

        assert "Topics discussed: None yet" in prompt
        assert "Current message: (Starting conversation)" in prompt
        assert "User:" not in prompt

    def test_history_and_topics(self):
        prompt = build_chat_prompt(
            [("assistant", "What are your goals?"), ("user", "Run a 10k")],
            {"workout schedule", "fitness goals"},
            "Run a 10k",
        )

        assert "Coach: What are your goals?\nUser: Run a 10k" in prompt
        assert "Topics discussed: fitness goals, workout schedule" in prompt
        assert prompt.endswith("Current message: Run a 10k")

    def test_marker_and_context(self):
        prompt = build_chat_prompt([], set(), user=make_user(), marker="DONE:")

        assert "User: Alice" in prompt
        assert '"DONE:"' in prompt
