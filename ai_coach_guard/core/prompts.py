"""
Prompt construction for coaching requests.
"""

from typing import Iterable, List, Optional, Tuple

from ai_coach_guard.storage.models import CoachingPlan, RequestKind, UserRecord

_INSTRUCTIONS = {
    RequestKind.WORKOUT_PLAN: (
        "Create a concise, personalized weekly workout plan with exercises, "
        "sets, reps and rest days."
    ),
    RequestKind.NUTRITION_ADVICE: (
        "Give concise, personalized nutrition guidance with daily calorie and "
        "macronutrient targets and example meals."
    ),
    RequestKind.PROGRESS_ANALYSIS: (
        "Analyze the user's recent fitness progress and suggest the next "
        "three concrete improvements."
    ),
    RequestKind.CUSTOM_QUESTION: "Answer the user's question concisely and safely.",
}


def build_prompt(
    kind: RequestKind,
    question: Optional[str] = None,
    user: Optional[UserRecord] = None,
    recent_plans: Optional[List[CoachingPlan]] = None,
) -> str:
    """Build the prompt sent to the AI model.

    Args:
        kind: Kind of coaching request
        question: The user's own question, if any
        user: User to personalize for; omitted when context is not wanted
        recent_plans: The user's latest saved plans, newest first

    Returns:
        Prompt text
    """
    lines = ["You are a friendly, knowledgeable AI fitness coach.", _INSTRUCTIONS[kind]]

    if user is not None:
        lines.append("")
        lines.append(f"User: {user.name or 'Not specified'}")
        if recent_plans:
            kinds = ", ".join(plan.kind.value.replace("_", " ") for plan in recent_plans)
            lines.append(f"Recent coaching topics: {kinds}")

    if question:
        lines.append("")
        lines.append(f"Question: {question}")

    return "\n".join(lines)


def build_chat_prompt(
    history: List[Tuple[str, str]],
    topics: Iterable[str],
    message: Optional[str] = None,
    user: Optional[UserRecord] = None,
    marker: str = "PLAN_READY:",
) -> str:
    """Build the prompt for one turn of a coaching conversation.

    Args:
        history: Earlier turns as (role, content), oldest first, including
            the current message
        topics: Topics already covered in the conversation
        message: The user's current message, None when starting
        user: User to personalize for; omitted when context is not wanted
        marker: Text the model must put before a finished plan
    """
    lines = [
        "You are a friendly, knowledgeable AI fitness coach having a conversation "
        "to understand the user's needs and build a personalized fitness plan.",
    ]
    if user is not None:
        lines.append(f"User: {user.name or 'Not specified'}")

    lines.append("")
    lines.append("Conversation so far:")
    for role, content in history:
        lines.append(f"{'User' if role == 'user' else 'Coach'}: {content}")

    covered = ", ".join(sorted(topics)) or "None yet"
    lines.extend([
        "",
        f"Topics discussed: {covered}",
        "",
        "If the conversation has just started, greet the user and ask about their goals.",
        "Otherwise ask one follow-up question about goals, fitness level, schedule, "
        "equipment or health considerations.",
        f"When you know enough, end your reply with \"{marker}\" followed by the plan.",
        "",
        f"Current message: {message or '(Starting conversation)'}",
    ])
    return "\n".join(lines)
