"""
Structured Logging Service

Provides submission-aware structured logging for key events:
- Stage changes during a submission attempt
- Attempt completed / failed / cancelled
- Attempt rejected because another one is in flight for the same target
- Retry started
- Bulk operation completed

Each log entry includes:
- event
- severity (INFO/WARN/ERROR)
- entity_type (submission, bulk_operation, system)
- entity_id (target file id, if applicable)
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Any
from uuid import UUID
from enum import Enum


class LogSeverity(str, Enum):
    """Log severity levels."""
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class LogEntityType(str, Enum):
    """Entity types for structured logging."""
    SUBMISSION = "submission"
    BULK_OPERATION = "bulk_operation"
    SYSTEM = "system"


class StructuredLogger:
    """
    Structured logging service for submission events.

    Logs are emitted in JSON format suitable for:
    - Application logs
    - Later metrics integration
    - Support investigations of failed submissions
    """

    def __init__(self, logger_name: str = "submission"):
        self.logger = logging.getLogger(logger_name)
        self._ensure_handler()

    def _ensure_handler(self):
        """Ensure logger has a proper handler configured."""
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

    def _serialize_value(self, value: Any) -> Any:
        """Serialize UUID and Enum values to strings."""
        if isinstance(value, UUID):
            return str(value)
        if isinstance(value, Enum):
            return value.value
        return value

    def _create_log_entry(
        self,
        event: str,
        severity: LogSeverity,
        entity_type: LogEntityType,
        entity_id: Optional[Any] = None,
        message: Optional[str] = None,
        **extra
    ) -> dict:
        """Create a structured log entry."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "severity": severity.value,
            "entity_type": entity_type.value,
        }

        if entity_id is not None:
            entry["entity_id"] = str(entity_id)
        if message:
            entry["message"] = message

        for key, value in extra.items():
            if value is not None:
                entry[key] = self._serialize_value(value)

        return entry

    def _log(self, entry: dict, severity: LogSeverity):
        """Emit the log entry at the appropriate level."""
        log_str = json.dumps(entry, default=str)
        if severity == LogSeverity.ERROR:
            self.logger.error(log_str)
        elif severity == LogSeverity.WARN:
            self.logger.warning(log_str)
        else:
            self.logger.info(log_str)

    # Submission events
    def stage_changed(
        self,
        target_id: Any,
        state: str,
        stage: Optional[str] = None,
        progress: Optional[int] = None,
    ):
        """Log an accepted stage transition."""
        entry = self._create_log_entry(
            event="submission.stage_changed",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.SUBMISSION,
            entity_id=target_id,
            message=f"Submission moved to {state}",
            state=state,
            stage=stage,
            progress=progress,
        )
        self._log(entry, LogSeverity.INFO)

    def submission_completed(
        self,
        target_id: Any,
        accepted_count: int,
        rejected_count: int = 0,
    ):
        """Log a successfully completed submission attempt."""
        entry = self._create_log_entry(
            event="submission.completed",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.SUBMISSION,
            entity_id=target_id,
            message=f"Submission completed: {accepted_count} accepted",
            accepted_count=accepted_count,
            rejected_count=rejected_count,
        )
        self._log(entry, LogSeverity.INFO)

    def submission_failed(
        self,
        target_id: Any,
        category: str,
        error_code: str,
        error_message: str,
    ):
        """Log a submission attempt that ended in Failed."""
        entry = self._create_log_entry(
            event="submission.failed",
            severity=LogSeverity.ERROR,
            entity_type=LogEntityType.SUBMISSION,
            entity_id=target_id,
            message=f"Submission failed: {category}",
            category=category,
            error_code=error_code,
            error_message=error_message,
        )
        self._log(entry, LogSeverity.ERROR)

    def submission_cancelled(self, target_id: Any):
        """Log a cancelled submission attempt."""
        entry = self._create_log_entry(
            event="submission.cancelled",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.SUBMISSION,
            entity_id=target_id,
            message="Submission cancelled by user",
        )
        self._log(entry, LogSeverity.INFO)

    def attempt_rejected(self, target_id: Any, reason: str):
        """Log an attempt rejected because another one is in flight."""
        entry = self._create_log_entry(
            event="submission.attempt_rejected",
            severity=LogSeverity.WARN,
            entity_type=LogEntityType.SUBMISSION,
            entity_id=target_id,
            message=f"Submission attempt rejected: {reason}",
            reason=reason,
        )
        self._log(entry, LogSeverity.WARN)

    def retry_started(self, target_id: Any, retry_count: int):
        """Log a user-triggered retry."""
        entry = self._create_log_entry(
            event="submission.retry_started",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.SUBMISSION,
            entity_id=target_id,
            message=f"Retry {retry_count} started",
            retry_count=retry_count,
        )
        self._log(entry, LogSeverity.INFO)

    # Bulk events
    def bulk_completed(
        self,
        operation: str,
        requested: int,
        succeeded: int,
        failed: int,
        status: str,
    ):
        """Log the summary of a settled bulk operation."""
        severity = LogSeverity.INFO if failed == 0 else LogSeverity.WARN
        entry = self._create_log_entry(
            event="bulk.completed",
            severity=severity,
            entity_type=LogEntityType.BULK_OPERATION,
            message=f"Bulk {operation} finished: {succeeded}/{requested} succeeded",
            operation=operation,
            requested=requested,
            succeeded=succeeded,
            failed=failed,
            status=status,
        )
        self._log(entry, severity)

    # System events
    def operation_failed(
        self,
        operation: str,
        error: str,
        retry_count: int = 0
    ):
        """Log failed outbound operation."""
        entry = self._create_log_entry(
            event="system.operation_failed",
            severity=LogSeverity.ERROR,
            entity_type=LogEntityType.SYSTEM,
            message=f"Operation failed: {operation}",
            operation=operation,
            error=error,
            retry_count=retry_count
        )
        self._log(entry, LogSeverity.ERROR)


# Global logger instance
submission_logger = StructuredLogger()
