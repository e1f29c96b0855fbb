"""
Session-scoped coaching conversations.

A conversation collects the turns of one chat session until the model
answers with a finished plan. Conversations live in memory only; they are
discarded when the plan is delivered or once they are older than the
configured maximum age.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from ai_coach_guard.config.loader import ChatConfig

logger = logging.getLogger(__name__)

PLAN_READY_MARKER = "PLAN_READY:"

# Topic -> words in a model reply showing the topic was covered
TOPIC_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    "fitness goals": ("goal", "want to"),
    "current fitness level": ("level", "experience", "beginner", "advanced"),
    "workout schedule": ("day", "schedule", "time"),
    "equipment access": ("equipment", "gym", "home"),
    "health considerations": ("injury", "limitation", "health"),
}


@dataclass
class ChatTurn:
    role: str
    content: str


@dataclass
class Conversation:
    """State of one chat session."""
    session_id: str
    identity: str
    created_at: datetime
    history: List[ChatTurn] = field(default_factory=list)
    topics: Set[str] = field(default_factory=set)
    is_complete: bool = False

    @property
    def question_number(self) -> int:
        return len(self.topics) + 1

    def track_topics(self, reply: str) -> None:
        """Mark the topics a model reply touched on."""
        text = reply.lower()
        for topic, keywords in TOPIC_KEYWORDS.items():
            if any(keyword in text for keyword in keywords):
                self.topics.add(topic)


def split_plan(reply: str) -> Optional[str]:
    """Return the plan after the ready marker, or None if the reply has none."""
    if PLAN_READY_MARKER not in reply:
        return None
    return reply.split(PLAN_READY_MARKER, 1)[1].strip()


class ConversationStore:
    """In-memory conversations keyed by identity and session.

    Keying by identity as well keeps one user from continuing another
    user's session.
    """

    def __init__(self, config: ChatConfig, clock: Callable[[], datetime]):
        self.max_age = timedelta(seconds=config.max_age_seconds)
        self.sweep_interval = config.sweep_interval_seconds
        self._clock = clock
        self._conversations: Dict[Tuple[str, str], Conversation] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def get_or_create(self, identity: str, session_id: str) -> Conversation:
        """The live conversation of a session, or a fresh one.

        Expired and completed conversations are replaced.
        """
        now = self._clock()
        key = (identity, session_id)
        with self._lock:
            conversation = self._conversations.get(key)
            if (
                conversation is None
                or conversation.is_complete
                or now - conversation.created_at > self.max_age
            ):
                conversation = Conversation(session_id=session_id, identity=identity, created_at=now)
                self._conversations[key] = conversation
            return conversation

    def get(self, identity: str, session_id: str) -> Optional[Conversation]:
        with self._lock:
            return self._conversations.get((identity, session_id))

    def discard(self, identity: str, session_id: str) -> None:
        with self._lock:
            self._conversations.pop((identity, session_id), None)

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Drop conversations older than the maximum age.

        Returns:
            Number of removed conversations
        """
        now = now or self._clock()
        with self._lock:
            expired = [
                key for key, conversation in self._conversations.items()
                if now - conversation.created_at > self.max_age
            ]
            for key in expired:
                del self._conversations[key]
        return len(expired)

    def start_sweeper(self) -> None:
        """Run sweep() on a daemon thread every sweep_interval seconds."""
        if self._sweeper is not None:
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            name="ConversationStore-sweeper",
            daemon=True,
        )
        self._sweeper.start()

    def close(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            try:
                removed = self.sweep()
                logger.debug("Conversation sweep removed %d sessions", removed)
            except Exception:
                logger.exception("Conversation sweep failed")

    def __len__(self) -> int:
        with self._lock:
            return len(self._conversations)
