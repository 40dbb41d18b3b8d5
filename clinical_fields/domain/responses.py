"""Result models returned by the field services."""

from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd
from pydantic import BaseModel, Field

from clinical_fields.domain.models import EntityType, FieldCategory, FieldDefinition


class FieldView(BaseModel):
    """A field definition annotated with its current value for one entity."""

    definition: FieldDefinition
    value: Optional[Any] = Field(None, description="Current value (None when unset)")
    value_id: Optional[str] = Field(None, description="Value row id (None when unset)")
    updated_at: Optional[datetime] = None
    storage_level: EntityType = Field(..., description="Store the value lives in")
    source_visit_id: Optional[str] = Field(
        None, description="Visit the value was taken from, for visit-only fields seen from a patient"
    )


class CategoryFields(BaseModel):
    """A category with its active fields and values."""

    category: FieldCategory
    fields: List[FieldView] = Field(default_factory=list)


class BulkFieldResult(BaseModel):
    definition_id: str
    value_id: Optional[str] = None
    status: str = Field(..., description="created or updated")
    level: EntityType


class BulkUpdateSummary(BaseModel):
    message: str
    results: List[BulkFieldResult] = Field(default_factory=list)


class DeleteConfirmation(BaseModel):
    message: str = "Custom field value deleted"
    value_id: str
    definition_id: str


class RecalculationReport(BaseModel):
    """Outcome of a bulk recalculation pass.

    ``success`` says the pass ran; ``errors`` counts entities whose value was
    unresolvable.
    """

    success: bool = True
    definition_id: str
    recalculated: int = 0
    errors: int = 0
    total: int = 0
    last_entity_id: Optional[str] = Field(None, description="Cursor for resuming the pass")


class VisitHistoryEntry(BaseModel):
    visit_id: str
    visit_date: datetime
    visit_type: Optional[str] = None
    status: Optional[str] = None
    values: Dict[str, Any] = Field(default_factory=dict, description="Values keyed by definition id")


class VisitFieldHistory(BaseModel):
    """Chronological values of a visit-level category across a patient's visits."""

    category: FieldCategory
    fields: List[FieldDefinition] = Field(default_factory=list)
    visits: List[VisitHistoryEntry] = Field(default_factory=list)

    def to_dataframe(self) -> pd.DataFrame:
        """One row per visit, one column per field name, indexed by visit date."""
        columns = ["visit_id", "visit_date", "visit_type", "status"] + [f.field_name for f in self.fields]
        rows = []
        for entry in self.visits:
            row = {
                "visit_id": entry.visit_id,
                "visit_date": entry.visit_date,
                "visit_type": entry.visit_type,
                "status": entry.status,
            }
            for definition in self.fields:
                row[definition.field_name] = entry.values.get(definition.id)
            rows.append(row)
        df = pd.DataFrame(rows, columns=columns)
        return df.set_index("visit_date")
