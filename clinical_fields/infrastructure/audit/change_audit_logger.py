"""Change Audit Logger.

This module provides a buffering logger for field-level changes of custom-field
values. User writes and automatic recalculations are logged with old/new values,
timestamp and acting user, then flushed to storage after each service call.

Architecture:
    - Infrastructure layer component
    - Called from the field services
    - Flushed through FieldRepository.flush_change_logs in batches
"""

import logging
from typing import Any, List, Optional

from clinical_fields.domain.audit_models import ChangeEvent, ChangeType
from clinical_fields.domain.models import EntityType

logger = logging.getLogger(__name__)


class ChangeAuditLogger:
    """Buffer of field change events awaiting persistence.

    Example Usage:
        ```python
        audit = ChangeAuditLogger()
        audit.log_change(
            scope=EntityType.PATIENT,
            entity_id="P001",
            definition_id="def-weight",
            field_name="weight",
            old_value=70,
            new_value=72,
            change_type=ChangeType.UPDATE,
            changed_by="u-1",
        )
        repository.flush_change_logs(audit.get_logs())
        audit.clear_logs()
        ```
    """

    def __init__(self):
        """Initialize change audit logger."""
        self._logs: List[dict] = []

    def log_change(
        self,
        scope: EntityType,
        entity_id: str,
        definition_id: str,
        field_name: str,
        old_value: Optional[Any] = None,
        new_value: Optional[Any] = None,
        change_type: ChangeType = ChangeType.UPDATE,
        changed_by: Optional[str] = None
    ) -> None:
        """Log a single change event."""
        self.log_change_event(ChangeEvent(
            scope=scope,
            entity_id=entity_id,
            definition_id=definition_id,
            field_name=field_name,
            old_value=old_value,
            new_value=new_value,
            change_type=change_type,
            changed_by=changed_by,
        ))

    def log_change_event(self, change_event: ChangeEvent) -> None:
        """Log a ChangeEvent object."""
        self._logs.append(change_event.to_audit_dict())
        logger.debug(
            f"Logged change: {change_event.scope.value}.{change_event.entity_id}."
            f"{change_event.field_name} ({change_event.change_type.value})"
        )

    def log_changes_batch(self, change_events: List[ChangeEvent]) -> None:
        for event in change_events:
            self.log_change_event(event)

    def get_logs(self) -> List[dict]:
        """Get all logged change events.

        Returns:
            List of change log entries (dictionaries ready for database insertion)
        """
        return self._logs.copy()

    def clear_logs(self) -> None:
        """Clear all logged events (after flushing to storage)."""
        self._logs.clear()
        logger.debug("Cleared change audit logs")

    def discard_since(self, count: int) -> None:
        """Drop events logged after the buffer held ``count`` entries (rolled-back work)."""
        del self._logs[count:]

    def get_log_count(self) -> int:
        return len(self._logs)

    def has_logs(self) -> bool:
        return len(self._logs) > 0
