"""Domain layer of the custom-field engine.

Models, ports, the formula evaluator and the field services. Nothing here
depends on a concrete database.
"""

from .models import (
    Actor,
    EntityType,
    FieldCategory,
    FieldDefinition,
    FieldType,
    FieldValue,
    MeasureRecord,
    Patient,
    TypedValue,
    Visit,
)

__all__ = [
    "Actor",
    "EntityType",
    "FieldCategory",
    "FieldDefinition",
    "FieldType",
    "FieldValue",
    "MeasureRecord",
    "Patient",
    "TypedValue",
    "Visit",
]
