"""
Durable error logging for the coaching path.

Every denial and failure is recorded with a derived severity. Logging
must never break the request it describes: write failures are swallowed
and read failures return empty results.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from ai_coach_guard.storage.models import ErrorRecord, ErrorStatus, ErrorType, Severity
from ai_coach_guard.storage.repository import ErrorRepository

from .errors import ErrorEntry, derive_severity

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErrorLogger:
    """Records, queries and curates coaching errors."""

    def __init__(
        self,
        repository: ErrorRepository,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository
        self._clock = clock

    def log_error(self, entry: ErrorEntry) -> Optional[ErrorRecord]:
        """Persist an error entry.

        Args:
            entry: The failure or denial to record

        Returns:
            The stored record, or None if it could not be stored
        """
        try:
            now = self._clock()
            record = ErrorRecord(
                id=entry.error_id or uuid.uuid4().hex,
                identity=entry.identity or "unknown",
                user_id=entry.user_id,
                session_id=entry.session_id or "none",
                error_type=entry.error_type,
                error_code=entry.error_code,
                message=entry.message,
                severity=derive_severity(entry.error_type, entry.severity),
                status=ErrorStatus.OPEN,
                created_at=now,
                updated_at=now,
                details=entry.details,
                request_data=entry.request_data,
                response_data=entry.response_data,
                stack_trace=entry.stack_trace,
                user_agent=entry.user_agent or "unknown",
                ip_address=entry.ip_address or "unknown",
            )
            self.repository.insert_error(record)
        except Exception:
            logger.exception(
                "Failed to log AI error %s/%s for %s",
                entry.error_type.value, entry.error_code, entry.identity,
            )
            return None

        logger.log(
            _LOG_LEVELS[record.severity],
            "AI error logged: id=%s identity=%s type=%s code=%s severity=%s message=%s",
            record.id, record.identity, record.error_type.value,
            record.error_code, record.severity.value, record.message,
        )
        return record

    def get_error_stats(self) -> Optional[Dict[str, Any]]:
        try:
            return self.repository.error_stats()
        except Exception:
            logger.exception("Failed to get error stats")
            return None

    def get_recent_errors(self, limit: int = 50) -> List[ErrorRecord]:
        try:
            errors, _ = self.repository.list_errors(limit=limit)
            return errors
        except Exception:
            logger.exception("Failed to get recent errors")
            return []

    def get_errors_by_user(self, identity: str, limit: int = 20) -> List[ErrorRecord]:
        try:
            errors, _ = self.repository.list_errors(identity=identity, limit=limit)
            return errors
        except Exception:
            logger.exception("Failed to get errors for %s", identity)
            return []

    def get_error(self, error_id: str) -> Optional[ErrorRecord]:
        try:
            return self.repository.get_error(error_id)
        except Exception:
            logger.exception("Failed to get error %s", error_id)
            return None

    def list_errors(
        self,
        status: Optional[ErrorStatus] = None,
        severity: Optional[Severity] = None,
        error_type: Optional[ErrorType] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[ErrorRecord], int]:
        """Paginated error listing for the admin view.

        Returns:
            Tuple of (errors on the page, total matching count)
        """
        page = max(1, page)
        limit = max(1, limit)
        try:
            return self.repository.list_errors(
                status=status,
                severity=severity,
                error_type=error_type,
                limit=limit,
                offset=(page - 1) * limit,
            )
        except Exception:
            logger.exception("Failed to list errors")
            return [], 0

    def update_status(
        self,
        error_id: str,
        status: ErrorStatus,
        notes: Optional[str] = None,
        resolved_by: Optional[str] = None,
    ) -> Optional[ErrorRecord]:
        """Move an error through the admin workflow.

        Any of the four statuses may be set, including re-opening.
        RESOLVED stamps resolved_at and resolved_by.

        Returns:
            The updated record, or None if it does not exist
        """
        try:
            return self.repository.update_status(
                error_id, status, admin_notes=notes, resolved_by=resolved_by, now=self._clock()
            )
        except Exception:
            logger.exception("Failed to update status of error %s", error_id)
            return None

    def delete_error(self, error_id: str) -> bool:
        try:
            return self.repository.delete_error(error_id)
        except Exception:
            logger.exception("Failed to delete error %s", error_id)
            return False

    def delete_old_errors(self, days_old: int = 30) -> int:
        """Delete RESOLVED/IGNORED errors older than days_old.

        Open and investigating errors are kept regardless of age.

        Returns:
            Number of deleted errors
        """
        cutoff = self._clock() - timedelta(days=days_old)
        try:
            deleted = self.repository.delete_terminal_before(cutoff)
        except Exception:
            logger.exception("Failed to delete old errors")
            return 0
        logger.info("Deleted %d old AI errors", deleted)
        return deleted
