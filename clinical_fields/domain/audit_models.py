"""Field Change Audit Models.

This module defines the model for tracking field-level changes of custom-field
values, whether written by a user or produced by automatic recalculation.

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Change logs are append-only
"""

import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from clinical_fields.domain.models import EntityType


class ChangeType(str, Enum):
    """Kinds of value changes recorded in the audit trail."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    AUTO_CREATE = "AUTO_CREATE"
    AUTO_UPDATE = "AUTO_UPDATE"
    AUTO_CLEAR = "AUTO_CLEAR"


class ChangeEvent(BaseModel):
    """Represents a single change of a custom-field value.

    Parameters:
        scope: Store the value lives in (patient or visit)
        entity_id: Patient or visit the value belongs to
        definition_id: Field definition identifier
        field_name: Field name of the definition
        old_value: Previous value (before change)
        new_value: New value (after change)
        change_type: Type of change
        changed_at: Timestamp when change occurred
        changed_by: Acting user identifier (None for system changes)
    """

    scope: EntityType = Field(..., description="Value storage scope")
    entity_id: str = Field(..., description="Patient or visit identifier")
    definition_id: str = Field(..., description="Field definition identifier")
    field_name: str = Field(..., description="Name of the field that changed")
    old_value: Optional[Any] = Field(None, description="Previous value (before change)")
    new_value: Optional[Any] = Field(None, description="New value (after change)")
    change_type: ChangeType = Field(..., description="Type of change")
    changed_at: datetime = Field(default_factory=datetime.now, description="Timestamp when change occurred")
    changed_by: Optional[str] = Field(None, description="Acting user identifier")

    def to_audit_dict(self) -> dict:
        """Convert to dictionary for audit log insertion.

        Returns:
            Dictionary with serialized values suitable for database insertion
        """
        return {
            'change_id': str(uuid.uuid4()),
            'scope': self.scope.value,
            'entity_id': self.entity_id,
            'definition_id': self.definition_id,
            'field_name': self.field_name,
            'old_value': self._serialize_value(self.old_value),
            'new_value': self._serialize_value(self.new_value),
            'change_type': self.change_type.value,
            'changed_at': self.changed_at,
            'changed_by': self.changed_by or "system",
        }

    def _serialize_value(self, value: Any) -> Optional[str]:
        """Serialize values to text for database storage."""
        if value is None:
            return None
        if isinstance(value, (list, dict)):
            try:
                return json.dumps(value)
            except (TypeError, ValueError):
                return str(value)
        return str(value)

    model_config = {
        'frozen': True,
    }
