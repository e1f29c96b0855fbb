"""
Credit ledger for AI coaching.

Owns the reset policy of the two credit windows:
1. Hourly pool - refilled once an hour has passed since the last refill.
   The refill timestamp only moves at a refill, so partial hours never
   grant partial credit.
2. Daily cap - cleared when the calendar date in the reset timezone
   differs from the date of the last clear.

The two rules are independent of each other.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from ai_coach_guard.config.loader import CreditConfig
from ai_coach_guard.storage.models import UserCreditState

HOURLY_WINDOW = timedelta(hours=1)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class ResetResult:
    """Which windows a reconcile call reset."""
    hourly_reset: bool
    daily_reset: bool

    @property
    def any_reset(self) -> bool:
        return self.hourly_reset or self.daily_reset


class CreditLedger:
    """Applies reset and debit rules to a user's credit state."""

    def __init__(self, config: CreditConfig, clock: Clock = utcnow):
        self.hourly_pool = config.hourly_pool
        self.daily_cap = config.daily_cap
        self.tz = config.tz
        self._clock = clock

    def now(self) -> datetime:
        return _aware(self._clock())

    def local_date(self, moment: datetime) -> date:
        """Calendar date of a moment in the reset timezone."""
        return _aware(moment).astimezone(self.tz).date()

    def new_state(self, now: Optional[datetime] = None) -> UserCreditState:
        """Credit state for a newly created user."""
        now = now or self.now()
        return UserCreditState(
            hourly_remaining=self.hourly_pool,
            hourly_reset_at=now,
            daily_used=0,
            daily_reset_date=self.local_date(now),
        )

    def reconcile(self, state: UserCreditState, now: Optional[datetime] = None) -> ResetResult:
        """Apply due resets to state in place.

        Args:
            state: Credit state to update
            now: Current time (defaults to the ledger clock)

        Returns:
            ResetResult telling which windows were reset
        """
        now = _aware(now) if now else self.now()

        hourly_reset = False
        if now - _aware(state.hourly_reset_at) >= HOURLY_WINDOW:
            state.hourly_remaining = self.hourly_pool
            state.hourly_reset_at = now
            hourly_reset = True

        daily_reset = False
        today = self.local_date(now)
        if today != state.daily_reset_date:
            state.daily_used = 0
            state.daily_reset_date = today
            daily_reset = True

        return ResetResult(hourly_reset=hourly_reset, daily_reset=daily_reset)

    def hourly_exhausted(self, state: UserCreditState) -> bool:
        return state.hourly_remaining <= 0

    def daily_exhausted(self, state: UserCreditState) -> bool:
        return state.daily_used >= self.daily_cap

    def consume(self, state: UserCreditState) -> None:
        """Debit one credit from both windows.

        Raises:
            ValueError: If either window has no credit left
        """
        if self.hourly_exhausted(state):
            raise ValueError("No hourly credits remaining")
        if self.daily_exhausted(state):
            raise ValueError("Daily credit cap reached")
        state.hourly_remaining -= 1
        state.daily_used += 1

    def time_until_hourly_reset(
        self, state: UserCreditState, now: Optional[datetime] = None
    ) -> Tuple[int, int]:
        """Minutes and seconds until the next hourly refill, never negative."""
        now = _aware(now) if now else self.now()
        remaining = _aware(state.hourly_reset_at) + HOURLY_WINDOW - now
        total_seconds = max(0, int(remaining.total_seconds()))
        return divmod(total_seconds, 60)

    def time_until_daily_reset(self, now: Optional[datetime] = None) -> Tuple[int, int]:
        """Hours and minutes until the next midnight in the reset timezone."""
        now = _aware(now) if now else self.now()
        local_now = now.astimezone(self.tz)
        midnight = datetime.combine(local_now.date() + timedelta(days=1), time(0), tzinfo=self.tz)
        # Subtract in UTC so DST transitions count real elapsed time
        remaining = midnight.astimezone(timezone.utc) - now.astimezone(timezone.utc)
        total_minutes = max(0, int(remaining.total_seconds()) // 60)
        return divmod(total_minutes, 60)

    def snapshot(self, state: UserCreditState, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Credit view as shown to the user, computed on a reconciled copy."""
        now = _aware(now) if now else self.now()
        current = replace(state)
        self.reconcile(current, now)
        return {
            "hourly": {
                "remaining": current.hourly_remaining,
                "limit": self.hourly_pool,
                "resetTime": format_hourly_countdown(*self.time_until_hourly_reset(current, now)),
            },
            "daily": {
                "used": current.daily_used,
                "limit": self.daily_cap,
                "resetTime": format_daily_countdown(*self.time_until_daily_reset(now)),
            },
        }


def format_hourly_countdown(minutes: int, seconds: int) -> str:
    """Format a countdown as M:SS."""
    return f"{minutes}:{seconds:02d}"


def format_daily_countdown(hours: int, minutes: int) -> str:
    """Format a countdown as Hh Mm."""
    return f"{hours}h {minutes}m"
