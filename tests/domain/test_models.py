"""Unit tests for the custom-field domain models."""

from datetime import datetime

import pytest
from pydantic import ValidationError as PydanticValidationError

from clinical_fields.domain.models import (
    EntityType,
    FieldCategory,
    FieldDefinition,
    FieldType,
    FieldValue,
    MeasureRecord,
    MeasureType,
    TypedValue,
)


def _definition(**overrides):
    data = dict(id="d1", category_id="c1", field_name="weight", field_label="Poids",
                field_type=FieldType.NUMBER)
    data.update(overrides)
    return FieldDefinition(**data)


class TestFieldCategory:
    """Test suite for FieldCategory."""

    def test_defaults_to_patient(self):
        """Test a category applies to patients by default."""
        category = FieldCategory(id="c1", name="Anthropométrie")
        assert category.entity_types == [EntityType.PATIENT]
        assert category.applies_to(EntityType.PATIENT)
        assert not category.applies_to(EntityType.VISIT)
        assert not category.is_shared

    def test_shared_category(self):
        """Test a category applicable to both entity types is shared."""
        category = FieldCategory(id="c1", name="Mesures", entity_types=["patient", "visit", "visit"])
        assert category.entity_types == [EntityType.PATIENT, EntityType.VISIT]
        assert category.is_shared

    def test_requires_an_entity_type(self):
        """Test an empty entity type list is rejected."""
        with pytest.raises(PydanticValidationError):
            FieldCategory(id="c1", name="Vide", entity_types=[])


class TestFieldDefinition:
    """Test suite for FieldDefinition."""

    def test_plain_definition(self):
        """Test a plain field has no references."""
        definition = _definition()
        assert not definition.is_calculated
        assert definition.references == []

    def test_calculated_fills_dependencies_from_formula(self):
        """Test dependencies default to the formula's references."""
        definition = _definition(field_name="bmi", field_type=FieldType.CALCULATED,
                                 formula="{weight} / ({height} ^ 2)")
        assert definition.is_calculated
        assert definition.dependencies == ["weight", "height"]

    def test_references_merge_declared_and_formula(self):
        """Test declared dependencies come first, then any extra formula references."""
        definition = _definition(field_name="total", field_type=FieldType.CALCULATED,
                                 formula="{a} + {measure:b}", dependencies=["c", "a"])
        assert definition.references == ["c", "a", "measure:b"]

    def test_calculated_requires_formula(self):
        """Test a calculated field without formula is rejected."""
        with pytest.raises(PydanticValidationError):
            _definition(field_type=FieldType.CALCULATED)

    def test_plain_field_rejects_formula(self):
        """Test a formula on a non-calculated field is rejected."""
        with pytest.raises(PydanticValidationError):
            _definition(formula="{a} + 1")

    def test_malformed_formula_rejected_eagerly(self):
        """Test formula syntax is checked when the definition is built."""
        with pytest.raises(PydanticValidationError) as exc_info:
            _definition(field_type=FieldType.CALCULATED, formula="{weight")
        assert "brace" in str(exc_info.value)

    def test_invalid_dependency_token(self):
        """Test dependency tokens must be valid names."""
        with pytest.raises(PydanticValidationError):
            _definition(field_type=FieldType.CALCULATED, formula="{a}", dependencies=["not a name"])

    def test_field_name_pattern(self):
        """Test field names are lowercase identifiers."""
        with pytest.raises(PydanticValidationError):
            _definition(field_name="Body Weight")

    def test_decimal_places_range(self):
        """Test decimal places are limited to 0-4."""
        with pytest.raises(PydanticValidationError):
            _definition(field_type=FieldType.CALCULATED, formula="{a}", decimal_places=5)

    def test_malformed_validation_rules_preserved(self):
        """Test non-JSON rules are kept verbatim and treated as no rules."""
        definition = _definition(validation_rules="min=0;max=10")
        assert definition.validation_rules == "min=0;max=10"
        assert definition.parsed_validation_rules == {}

    def test_json_validation_rules_parsed(self):
        """Test JSON text rules are parsed."""
        definition = _definition(validation_rules='{"min": 0}')
        assert definition.parsed_validation_rules == {"min": 0}


class TestTypedValue:
    """Test suite for TypedValue and FieldValue."""

    def test_only_one_column(self):
        """Test populating two columns is rejected."""
        with pytest.raises(PydanticValidationError):
            TypedValue(value_text="a", value_number=1.0)

    @pytest.mark.parametrize("result, column", [
        (True, "value_boolean"),
        (24.22, "value_number"),
        (3, "value_number"),
        (["a", "b"], "value_json"),
        ("obese", "value_text"),
    ])
    def test_from_result(self, result, column):
        """Test evaluated results land in the matching column."""
        typed = TypedValue.from_result(result)
        assert getattr(typed, column) == result
        assert typed.get() == result

    def test_empty(self):
        """Test None maps to an empty value."""
        assert TypedValue.from_result(None).is_empty()

    def test_field_value_exposes_populated_column(self):
        """Test FieldValue.value returns the populated column."""
        value = FieldValue(id="v1", entity_id="P001", definition_id="d1",
                           scope=EntityType.PATIENT, value_number=70.0)
        assert value.value == 70.0
        assert value.typed == TypedValue(value_number=70.0)


class TestMeasureRecord:
    """Test suite for MeasureRecord coercion."""

    def _record(self, **overrides):
        data = dict(id="m1", patient_id="P001", measure_name="body_weight",
                    measured_at=datetime(2024, 1, 1))
        data.update(overrides)
        return MeasureRecord(**data)

    def test_numeric(self):
        """Test numeric records coerce to float."""
        assert self._record(numeric_value=75).coerced_value() == 75.0

    def test_numeric_text(self):
        """Test numeric text coerces to float."""
        record = self._record(measure_type=MeasureType.TEXT, text_value=" 72.5 ")
        assert record.coerced_value() == 72.5

    def test_free_text(self):
        """Test free text is returned unchanged."""
        record = self._record(measure_type=MeasureType.TEXT, text_value="high")
        assert record.coerced_value() == "high"

    def test_boolean(self):
        """Test booleans coerce to 1 and 0."""
        assert self._record(measure_type=MeasureType.BOOLEAN, boolean_value=True).coerced_value() == 1
        assert self._record(measure_type=MeasureType.BOOLEAN, boolean_value=False).coerced_value() == 0
