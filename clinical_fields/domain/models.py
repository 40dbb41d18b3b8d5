"""Custom-Field Domain Models.

This module defines the Pydantic models for field categories, field definitions,
stored field values, measure records and the collaborator data (patients, visits,
actors) the field engine reads.

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Definitions are validated on construction: a malformed formula is rejected
      here, not on every evaluation
    - Values keep the four typed storage columns of the persistence layer
"""

import json
import logging
import re
from datetime import date, datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

MEASURE_PREFIX = "measure:"
REFERENCE_NAME_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class EntityType(str, Enum):
    """Entity types a category can apply to (and value storage scopes)."""
    PATIENT = "patient"
    VISIT = "visit"


class FieldType(str, Enum):
    """Data types of a field definition."""
    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    SELECT = "select"
    CALCULATED = "calculated"
    SEPARATOR = "separator"


class MeasureType(str, Enum):
    """Typed storage of a measure record."""
    NUMERIC = "numeric"
    TEXT = "text"
    BOOLEAN = "boolean"


class UserRole(str, Enum):
    """Roles understood by the role-based access policy."""
    ADMIN = "ADMIN"
    DIETITIAN = "DIETITIAN"


class FieldCategory(BaseModel):
    """A group of field definitions shown together.

    A category applicable to both entity types is "shared": its values are
    stored at patient scope even when edited through a visit.

    Parameters:
        id: Category identifier
        name: Display name in the default language
        description: Optional description in the default language
        entity_types: Entity types the category applies to
        display_order: Sort key for listings
        is_active: Inactive categories are hidden from listings
        color: Display color
        display_layout: Opaque layout metadata for the UI
        visit_types: Visit types the category is restricted to (None means all)
    """

    id: str = Field(..., description="Category identifier")
    name: str = Field(..., min_length=1, description="Category name")
    description: Optional[str] = Field(None, description="Category description")
    entity_types: List[EntityType] = Field(
        default_factory=lambda: [EntityType.PATIENT],
        description="Entity types the category applies to"
    )
    display_order: int = Field(default=0, description="Display order")
    is_active: bool = Field(default=True, description="Active flag")
    color: str = Field(default="#3498db", description="Display color")
    display_layout: Optional[dict] = Field(None, description="Layout metadata")
    visit_types: Optional[List[str]] = Field(None, description="Restricting visit types")

    @field_validator("entity_types")
    @classmethod
    def validate_entity_types(cls, v: List[EntityType]) -> List[EntityType]:
        """Require at least one entity type and drop duplicates."""
        if not v:
            raise ValueError("A category must apply to at least one entity type")
        unique: List[EntityType] = []
        for entity_type in v:
            if entity_type not in unique:
                unique.append(entity_type)
        return unique

    @property
    def is_shared(self) -> bool:
        """True when the category applies to both patients and visits."""
        return EntityType.PATIENT in self.entity_types and EntityType.VISIT in self.entity_types

    def applies_to(self, entity_type: EntityType) -> bool:
        """Check whether the category applies to an entity type."""
        return EntityType(entity_type) in self.entity_types


class FieldDefinition(BaseModel):
    """A named field belonging to one category.

    A field is either plain (no formula) or calculated (formula plus the
    ordered references it depends on). Calculated fields are never directly
    writable by users.

    Parameters:
        id: Definition identifier
        category_id: Owning category
        field_name: Unique key used in formulas
        field_label: Display label in the default language
        field_type: Data type
        is_active: Inactive definitions are hidden and not writable
        is_required: Empty values are rejected
        validation_rules: Rules as stored (dict or raw text, kept verbatim)
        select_options: Allowed options for select fields
        allow_multiple: Select fields accepting several options
        help_text: Help text in the default language
        display_order: Sort key inside the category
        formula: Formula of a calculated field
        dependencies: Field names or ``measure:<name>`` tokens the formula uses
        decimal_places: Rounding applied to numeric results
    """

    id: str = Field(..., description="Definition identifier")
    category_id: str = Field(..., description="Owning category identifier")
    field_name: str = Field(..., pattern=r"^[a-z0-9_]+$", max_length=100, description="Formula key")
    field_label: str = Field(..., min_length=1, description="Display label")
    field_type: FieldType = Field(..., description="Data type")
    is_active: bool = Field(default=True, description="Active flag")
    is_required: bool = Field(default=False, description="Required flag")
    validation_rules: Optional[Any] = Field(None, description="Validation rules, stored verbatim")
    select_options: Optional[List[Any]] = Field(None, description="Select options")
    allow_multiple: bool = Field(default=False, description="Multiple selection allowed")
    help_text: Optional[str] = Field(None, description="Help text")
    display_order: int = Field(default=0, description="Display order")
    formula: Optional[str] = Field(None, description="Formula of a calculated field")
    dependencies: List[str] = Field(default_factory=list, description="Referenced fields and measures")
    decimal_places: int = Field(default=2, ge=0, le=4, description="Rounding of numeric results")

    @field_validator("dependencies")
    @classmethod
    def validate_dependencies(cls, v: List[str]) -> List[str]:
        """Validate reference tokens and drop duplicates, keeping order."""
        unique: List[str] = []
        for token in v:
            name = token[len(MEASURE_PREFIX):] if token.startswith(MEASURE_PREFIX) else token
            if not REFERENCE_NAME_PATTERN.match(name):
                raise ValueError(f"Invalid dependency reference: {token}")
            if token not in unique:
                unique.append(token)
        return unique

    @model_validator(mode="after")
    def validate_formula_shape(self) -> "FieldDefinition":
        """Enforce the plain/calculated invariant and parse the formula eagerly.

        Raises:
            ValueError: Missing or unexpected formula, or malformed formula syntax
        """
        # Deferred import: the formula module imports the ports, which import these models
        from clinical_fields.domain.formula import parse_formula

        if self.field_type == FieldType.CALCULATED:
            if not self.formula or not self.formula.strip():
                raise ValueError(f"Calculated field '{self.field_name}' requires a formula")
            parsed = parse_formula(self.formula)
            if not self.dependencies:
                self.dependencies = list(parsed.references)
        elif self.formula:
            raise ValueError(
                f"Field '{self.field_name}' has a formula but is of type '{self.field_type.value}'"
            )
        return self

    @property
    def is_calculated(self) -> bool:
        return self.field_type == FieldType.CALCULATED

    @property
    def references(self) -> List[str]:
        """Declared dependencies plus every reference found in the formula."""
        if not self.is_calculated:
            return []
        from clinical_fields.domain.formula import parse_formula

        refs = list(self.dependencies)
        for ref in parse_formula(self.formula).references:
            if ref not in refs:
                refs.append(ref)
        return refs

    @property
    def parsed_validation_rules(self) -> dict:
        """Validation rules as a dict.

        Malformed or non-object rules count as no rules; the stored text itself
        is left untouched in ``validation_rules``.
        """
        rules = self.validation_rules
        if rules is None:
            return {}
        if isinstance(rules, dict):
            return rules
        if isinstance(rules, str):
            try:
                parsed = json.loads(rules)
            except (TypeError, ValueError):
                logger.debug(f"Ignoring malformed validation rules on field {self.field_name}")
                return {}
            return parsed if isinstance(parsed, dict) else {}
        return {}


class TypedValue(BaseModel):
    """The four typed storage columns of a value row; at most one is populated."""

    value_text: Optional[str] = None
    value_number: Optional[float] = None
    value_boolean: Optional[bool] = None
    value_json: Optional[Any] = None

    @model_validator(mode="after")
    def validate_single_column(self) -> "TypedValue":
        populated = [
            name for name in ("value_text", "value_number", "value_boolean", "value_json")
            if getattr(self, name) is not None
        ]
        if len(populated) > 1:
            raise ValueError(f"Only one typed column may be populated, got {populated}")
        return self

    @classmethod
    def from_result(cls, value: Any) -> "TypedValue":
        """Store an evaluated formula result in the matching column."""
        if value is None:
            return cls()
        if isinstance(value, bool):
            return cls(value_boolean=value)
        if isinstance(value, (int, float)):
            return cls(value_number=float(value))
        if isinstance(value, (list, dict)):
            return cls(value_json=value)
        return cls(value_text=str(value))

    def get(self) -> Any:
        """Return the populated column, or None."""
        for value in (self.value_json, self.value_number, self.value_boolean, self.value_text):
            if value is not None:
                return value
        return None

    def is_empty(self) -> bool:
        return self.get() is None


class FieldValue(BaseModel):
    """A stored value row: one per (entity, definition) in its scope."""

    id: str = Field(..., description="Value row identifier")
    entity_id: str = Field(..., description="Patient or visit identifier")
    definition_id: str = Field(..., description="Field definition identifier")
    scope: EntityType = Field(..., description="Store the row lives in")
    value_text: Optional[str] = None
    value_number: Optional[float] = None
    value_boolean: Optional[bool] = None
    value_json: Optional[Any] = None
    updated_by: Optional[str] = Field(None, description="Actor who last wrote the row")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def typed(self) -> TypedValue:
        return TypedValue(
            value_text=self.value_text,
            value_number=self.value_number,
            value_boolean=self.value_boolean,
            value_json=self.value_json,
        )

    @property
    def value(self) -> Any:
        """The populated typed column, or None for a cleared row."""
        return self.typed.get()


class MeasureRecord(BaseModel):
    """A single record of an external measure series (read-only to the engine)."""

    id: str = Field(..., description="Record identifier")
    patient_id: str = Field(..., description="Patient the measure belongs to")
    measure_name: str = Field(..., description="Measure name used in formulas")
    measure_type: MeasureType = Field(default=MeasureType.NUMERIC, description="Typed storage")
    numeric_value: Optional[float] = None
    text_value: Optional[str] = None
    boolean_value: Optional[bool] = None
    measured_at: datetime = Field(..., description="Measurement time")

    def coerced_value(self) -> Any:
        """Value as seen by formulas.

        Numeric text becomes a number and booleans become 1 or 0; other text
        is returned unchanged.
        """
        if self.measure_type == MeasureType.NUMERIC:
            return float(self.numeric_value) if self.numeric_value is not None else None
        if self.measure_type == MeasureType.BOOLEAN:
            if self.boolean_value is None:
                return None
            return 1 if self.boolean_value else 0
        if self.text_value is None:
            return None
        try:
            return float(self.text_value.strip())
        except ValueError:
            return self.text_value


class Patient(BaseModel):
    """Patient data the engine needs for access checks and routing."""

    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    assigned_dietitian_id: Optional[str] = None
    is_active: bool = True


class Visit(BaseModel):
    """Visit data the engine needs for access checks, routing and history."""

    id: str
    patient_id: str
    dietitian_id: Optional[str] = None
    visit_date: datetime
    visit_type: Optional[str] = None
    status: str = "SCHEDULED"


class Actor(BaseModel):
    """An already-authenticated user invoking a field service."""

    id: str
    username: str
    role: UserRole = UserRole.DIETITIAN

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class FieldUpdate(BaseModel):
    """One entry of a bulk update."""

    definition_id: str = Field(..., description="Target field definition")
    value: Optional[Any] = Field(None, description="Raw value")
