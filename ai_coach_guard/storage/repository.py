"""
Repository pattern for data access.

Handles database operations for users and their credit state, saved
coaching plans, the error log and the shared rate-limit windows.
"""

import json
import sqlite3
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
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


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables and indexes if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL DEFAULT '',
                hourly_remaining INTEGER NOT NULL,
                hourly_reset_at TEXT NOT NULL,
                daily_used INTEGER NOT NULL,
                daily_reset_date TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS coaching_plan (
                id TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL REFERENCES users(id),
                kind TEXT NOT NULL,
                prompt_text TEXT NOT NULL,
                response_text TEXT NOT NULL,
                hourly_snapshot INTEGER NOT NULL,
                daily_snapshot INTEGER NOT NULL,
                applied INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_plan_user_created
                ON coaching_plan (user_id, created_at);

            CREATE TABLE IF NOT EXISTS ai_error (
                id TEXT PRIMARY KEY,
                identity TEXT NOT NULL,
                user_id INTEGER,
                session_id TEXT NOT NULL,
                error_type TEXT NOT NULL,
                error_code TEXT NOT NULL,
                message TEXT NOT NULL,
                details TEXT NOT NULL DEFAULT '{}',
                request_data TEXT NOT NULL DEFAULT '{}',
                response_data TEXT NOT NULL DEFAULT '{}',
                stack_trace TEXT,
                user_agent TEXT NOT NULL DEFAULT 'unknown',
                ip_address TEXT NOT NULL DEFAULT 'unknown',
                severity TEXT NOT NULL,
                status TEXT NOT NULL,
                admin_notes TEXT NOT NULL DEFAULT '',
                resolved_by TEXT NOT NULL DEFAULT '',
                resolved_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_error_identity ON ai_error (identity);
            CREATE INDEX IF NOT EXISTS idx_error_created ON ai_error (created_at);

            CREATE TABLE IF NOT EXISTS rate_limit_window (
                identity TEXT PRIMARY KEY,
                count INTEGER NOT NULL,
                window_reset_at REAL NOT NULL
            );
        """)
        conn.commit()
    finally:
        conn.close()


def _to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRepository:
    """Repository for users and their embedded credit state.

    Credit writes are conditional UPDATEs so overlapping requests from
    one user never lose a debit or a reset.
    """

    _COLUMNS = (
        "id, email, name, hourly_remaining, hourly_reset_at, "
        "daily_used, daily_reset_date, created_at"
    )

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        hourly_pool: Optional[int] = None,
        daily_cap: Optional[int] = None,
    ):
        self.db_path = db_path
        self.hourly_pool = hourly_pool
        self.daily_cap = daily_cap

    def check_bounds(self, credits: UserCreditState) -> None:
        """Reject counters above the configured pool and cap.

        Raises:
            ValueError: If hourly_remaining exceeds the hourly pool or
                daily_used exceeds the daily cap
        """
        if self.hourly_pool is not None and credits.hourly_remaining > self.hourly_pool:
            raise ValueError(f"hourly_remaining cannot exceed {self.hourly_pool}")
        if self.daily_cap is not None and credits.daily_used > self.daily_cap:
            raise ValueError(f"daily_used cannot exceed {self.daily_cap}")

    def create_user(self, email: str, name: str, credits: UserCreditState) -> UserRecord:
        """Insert a user with its initial credit state.

        Raises:
            ValueError: If email is empty or already registered, or the
                credits are out of bounds
        """
        if not email or not email.strip():
            raise ValueError("email is required and cannot be empty")
        self.check_bounds(credits)

        created_at = _utcnow()
        conn = get_connection(self.db_path)
        try:
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO users
                    (email, name, hourly_remaining, hourly_reset_at,
                     daily_used, daily_reset_date, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        email,
                        name,
                        credits.hourly_remaining,
                        _to_iso(credits.hourly_reset_at),
                        credits.daily_used,
                        credits.daily_reset_date.isoformat(),
                        _to_iso(created_at),
                    ),
                )
            except sqlite3.IntegrityError:
                raise ValueError(f"User already exists: {email}")
            conn.commit()
            return UserRecord(
                id=cursor.lastrowid,
                email=email,
                name=name,
                credits=credits,
                created_at=created_at,
            )
        finally:
            conn.close()

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM users WHERE id = ?", (user_id,)
            ).fetchone()
            return self._row_to_user(row) if row else None
        finally:
            conn.close()

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM users WHERE email = ?", (email,)
            ).fetchone()
            return self._row_to_user(row) if row else None
        finally:
            conn.close()

    def reset_hourly_credits(
        self,
        user_id: int,
        hourly_pool: int,
        reset_at: datetime,
        expected_reset_at: datetime,
    ) -> bool:
        """Refill the hourly pool if nobody else refilled it first.

        Args:
            user_id: User to update
            hourly_pool: Value hourly_remaining is reset to
            reset_at: New hourly reset timestamp
            expected_reset_at: Reset timestamp the caller read

        Returns:
            True if the row was updated, False on a concurrent reset
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                UPDATE users SET hourly_remaining = ?, hourly_reset_at = ?
                WHERE id = ? AND hourly_reset_at = ?
                """,
                (hourly_pool, _to_iso(reset_at), user_id, _to_iso(expected_reset_at)),
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def reset_daily_credits(
        self,
        user_id: int,
        reset_date: date,
        expected_reset_date: date,
    ) -> bool:
        """Zero the daily counter if nobody else reset it first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                UPDATE users SET daily_used = 0, daily_reset_date = ?
                WHERE id = ? AND daily_reset_date = ?
                """,
                (reset_date.isoformat(), user_id, expected_reset_date.isoformat()),
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def consume_credit(self, user_id: int, daily_cap: int) -> Optional[UserCreditState]:
        """Atomically debit one credit if the balance allows it.

        The bounds check and the decrement happen in one UPDATE, so the
        stored counters can never leave their bounds.

        Returns:
            The stored credit state after the debit, or None if the
            balance no longer allowed it
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                UPDATE users
                SET hourly_remaining = hourly_remaining - 1,
                    daily_used = daily_used + 1
                WHERE id = ? AND hourly_remaining > 0 AND daily_used < ?
                """,
                (user_id, daily_cap),
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return None
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM users WHERE id = ?", (user_id,)
            ).fetchone()
            conn.commit()
            return self._row_to_user(row).credits
        finally:
            conn.close()

    def save_credits(self, user_id: int, credits: UserCreditState) -> None:
        """Overwrite a user's credit state unconditionally (operator use).

        Raises:
            ValueError: If the credits are out of bounds
        """
        self.check_bounds(credits)
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                UPDATE users
                SET hourly_remaining = ?, hourly_reset_at = ?,
                    daily_used = ?, daily_reset_date = ?
                WHERE id = ?
                """,
                (
                    credits.hourly_remaining,
                    _to_iso(credits.hourly_reset_at),
                    credits.daily_used,
                    credits.daily_reset_date.isoformat(),
                    user_id,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _row_to_user(row) -> UserRecord:
        return UserRecord(
            id=row[0],
            email=row[1],
            name=row[2],
            credits=UserCreditState(
                hourly_remaining=row[3],
                hourly_reset_at=_from_iso(row[4]),
                daily_used=row[5],
                daily_reset_date=date.fromisoformat(row[6]),
            ),
            created_at=_from_iso(row[7]),
        )


class PlanRepository:
    """Repository for saved coaching plans.

    Every mutating call is scoped to the owning user; a plan owned by
    someone else is indistinguishable from a missing one.
    """

    _COLUMNS = (
        "id, user_id, kind, prompt_text, response_text, "
        "hourly_snapshot, daily_snapshot, applied, created_at"
    )

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def save_plan(self, plan: CoachingPlan) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"""
                INSERT INTO coaching_plan ({self._COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    plan.id,
                    plan.user_id,
                    plan.kind.value,
                    plan.prompt_text,
                    plan.response_text,
                    plan.credits_snapshot.hourly,
                    plan.credits_snapshot.daily,
                    int(plan.applied),
                    _to_iso(plan.created_at),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def list_plans(self, user_id: int, limit: int = 20, offset: int = 0) -> List[CoachingPlan]:
        """List a user's plans, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"""
                SELECT {self._COLUMNS} FROM coaching_plan
                WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                (user_id, limit, offset),
            )
            return [self._row_to_plan(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def count_plans(self, user_id: int) -> int:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM coaching_plan WHERE user_id = ?", (user_id,)
            ).fetchone()
            return row[0]
        finally:
            conn.close()

    def get_plan(self, plan_id: str, user_id: int) -> Optional[CoachingPlan]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM coaching_plan WHERE id = ? AND user_id = ?",
                (plan_id, user_id),
            ).fetchone()
            return self._row_to_plan(row) if row else None
        finally:
            conn.close()

    def delete_plan(self, plan_id: str, user_id: int) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM coaching_plan WHERE id = ? AND user_id = ?",
                (plan_id, user_id),
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def mark_plan_applied(self, plan_id: str, user_id: int) -> Optional[CoachingPlan]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE coaching_plan SET applied = 1 WHERE id = ? AND user_id = ?",
                (plan_id, user_id),
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return None
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM coaching_plan WHERE id = ?", (plan_id,)
            ).fetchone()
            conn.commit()
            return self._row_to_plan(row)
        finally:
            conn.close()

    @staticmethod
    def _row_to_plan(row) -> CoachingPlan:
        return CoachingPlan(
            id=row[0],
            user_id=row[1],
            kind=RequestKind(row[2]),
            prompt_text=row[3],
            response_text=row[4],
            credits_snapshot=CreditsSnapshot(hourly=row[5], daily=row[6]),
            applied=bool(row[7]),
            created_at=_from_iso(row[8]),
        )


class ErrorRepository:
    """Repository for the durable AI error log."""

    _COLUMNS = (
        "id, identity, user_id, session_id, error_type, error_code, message, "
        "details, request_data, response_data, stack_trace, user_agent, ip_address, "
        "severity, status, admin_notes, resolved_by, resolved_at, created_at, updated_at"
    )

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert_error(self, record: ErrorRecord) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"""
                INSERT INTO ai_error ({self._COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.identity,
                    record.user_id,
                    record.session_id,
                    record.error_type.value,
                    record.error_code,
                    record.message,
                    json.dumps(record.details, default=str),
                    json.dumps(record.request_data, default=str),
                    json.dumps(record.response_data, default=str),
                    record.stack_trace,
                    record.user_agent,
                    record.ip_address,
                    record.severity.value,
                    record.status.value,
                    record.admin_notes,
                    record.resolved_by,
                    _to_iso(record.resolved_at) if record.resolved_at else None,
                    _to_iso(record.created_at),
                    _to_iso(record.updated_at),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_error(self, error_id: str) -> Optional[ErrorRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM ai_error WHERE id = ?", (error_id,)
            ).fetchone()
            return self._row_to_error(row) if row else None
        finally:
            conn.close()

    def list_errors(
        self,
        status: Optional[ErrorStatus] = None,
        severity: Optional[Severity] = None,
        error_type: Optional[ErrorType] = None,
        identity: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[ErrorRecord], int]:
        """List errors with optional filtering.

        Returns:
            Tuple of (errors ordered newest first, total matching count)
        """
        conditions = []
        params: List[Any] = []
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if severity is not None:
            conditions.append("severity = ?")
            params.append(severity.value)
        if error_type is not None:
            conditions.append("error_type = ?")
            params.append(error_type.value)
        if identity is not None:
            conditions.append("identity = ?")
            params.append(identity)

        where = " WHERE " + " AND ".join(conditions) if conditions else ""

        conn = get_connection(self.db_path)
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM ai_error{where}", params).fetchone()[0]
            cursor = conn.execute(
                f"""
                SELECT {self._COLUMNS} FROM ai_error{where}
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                params + [limit, offset],
            )
            return [self._row_to_error(row) for row in cursor.fetchall()], total
        finally:
            conn.close()

    def update_status(
        self,
        error_id: str,
        status: ErrorStatus,
        admin_notes: Optional[str] = None,
        resolved_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[ErrorRecord]:
        """Set an error's workflow status.

        Moving to RESOLVED stamps resolved_at and resolved_by.
        """
        now = now or _utcnow()
        assignments = ["status = ?", "updated_at = ?"]
        params: List[Any] = [status.value, _to_iso(now)]
        if status == ErrorStatus.RESOLVED:
            assignments.extend(["resolved_at = ?", "resolved_by = ?"])
            params.extend([_to_iso(now), resolved_by or ""])
        if admin_notes:
            assignments.append("admin_notes = ?")
            params.append(admin_notes)
        params.append(error_id)

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"UPDATE ai_error SET {', '.join(assignments)} WHERE id = ?", params
            )
            if cursor.rowcount != 1:
                conn.rollback()
                return None
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM ai_error WHERE id = ?", (error_id,)
            ).fetchone()
            conn.commit()
            return self._row_to_error(row)
        finally:
            conn.close()

    def delete_error(self, error_id: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM ai_error WHERE id = ?", (error_id,))
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    def delete_terminal_before(self, cutoff: datetime) -> int:
        """Delete RESOLVED/IGNORED errors created before the cutoff.

        OPEN and INVESTIGATING errors are never deleted here.

        Returns:
            Number of deleted rows
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                DELETE FROM ai_error
                WHERE created_at < ? AND status IN (?, ?)
                """,
                (_to_iso(cutoff), ErrorStatus.RESOLVED.value, ErrorStatus.IGNORED.value),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def error_stats(self) -> Dict[str, Any]:
        """Aggregate error counts by type, severity and status."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT error_type, severity, status, COUNT(*), MAX(created_at)
                FROM ai_error
                GROUP BY error_type, severity, status
            """)
            by_type: Dict[str, Dict[str, Any]] = {}
            total = 0
            open_count = 0
            critical = 0
            for error_type, severity, status, count, latest in cursor.fetchall():
                total += count
                if status == ErrorStatus.OPEN.value:
                    open_count += count
                if severity == Severity.CRITICAL.value:
                    critical += count

                entry = by_type.setdefault(error_type, {
                    "total": 0,
                    "by_severity": {},
                    "by_status": {},
                    "latest": None,
                })
                entry["total"] += count
                entry["by_severity"][severity] = entry["by_severity"].get(severity, 0) + count
                entry["by_status"][status] = entry["by_status"].get(status, 0) + count
                if entry["latest"] is None or latest > entry["latest"]:
                    entry["latest"] = latest

            return {
                "total_errors": total,
                "open_errors": open_count,
                "critical_errors": critical,
                "by_type": by_type,
            }
        finally:
            conn.close()

    @staticmethod
    def _row_to_error(row) -> ErrorRecord:
        return ErrorRecord(
            id=row[0],
            identity=row[1],
            user_id=row[2],
            session_id=row[3],
            error_type=ErrorType(row[4]),
            error_code=row[5],
            message=row[6],
            details=json.loads(row[7]),
            request_data=json.loads(row[8]),
            response_data=json.loads(row[9]),
            stack_trace=row[10],
            user_agent=row[11],
            ip_address=row[12],
            severity=Severity(row[13]),
            status=ErrorStatus(row[14]),
            admin_notes=row[15],
            resolved_by=row[16],
            resolved_at=_from_iso(row[17]),
            created_at=_from_iso(row[18]),
            updated_at=_from_iso(row[19]),
        )


class RateWindowRepository:
    """Fixed-window counters stored in SQLite for multi-process throttling."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def hit(self, identity: str, now: float, window_seconds: float, max_requests: int) -> bool:
        """Count one request against the identity's current window.

        The read and the write run inside one IMMEDIATE transaction, which
        holds the database write lock for every process sharing the file.

        Returns:
            True if the request fits in the window
        """
        conn = get_connection(self.db_path)
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT count, window_reset_at FROM rate_limit_window WHERE identity = ?",
                    (identity,),
                ).fetchone()
                if row is None or now > row[1]:
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO rate_limit_window
                        (identity, count, window_reset_at) VALUES (?, 1, ?)
                        """,
                        (identity, now + window_seconds),
                    )
                    allowed = True
                elif row[0] < max_requests:
                    conn.execute(
                        "UPDATE rate_limit_window SET count = count + 1 WHERE identity = ?",
                        (identity,),
                    )
                    allowed = True
                else:
                    allowed = False
                conn.execute("COMMIT")
                return allowed
            except Exception:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def window_reset_at(self, identity: str) -> Optional[float]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT window_reset_at FROM rate_limit_window WHERE identity = ?",
                (identity,),
            ).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def delete_expired(self, now: float) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM rate_limit_window WHERE window_reset_at < ?", (now,)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def count_entries(self) -> int:
        conn = get_connection(self.db_path)
        try:
            return conn.execute("SELECT COUNT(*) FROM rate_limit_window").fetchone()[0]
        finally:
            conn.close()
