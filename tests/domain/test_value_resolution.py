"""Unit tests for the value resolution layer."""

from datetime import date, datetime
from unittest.mock import Mock

from clinical_fields.domain.formula import UNRESOLVABLE
from clinical_fields.domain.models import EntityType, FieldDefinition, FieldType, FieldValue, MeasureRecord
from clinical_fields.domain.services.value_resolution import ValueResolver


def calc(name, formula, **kwargs):
    return FieldDefinition(id=f"def-{name}", category_id="c1", field_name=name, field_label=name,
                           field_type=FieldType.CALCULATED, formula=formula, **kwargs)


def plain(name):
    return FieldDefinition(id=f"def-{name}", category_id="c1", field_name=name, field_label=name,
                           field_type=FieldType.NUMBER)


def stored(name, number):
    return FieldValue(id=f"v-{name}", entity_id="P001", definition_id=f"def-{name}",
                      scope=EntityType.PATIENT, value_number=number)


def measures(records=None):
    repository = Mock()
    records = records or {}
    repository.find_latest_measure.side_effect = lambda patient_id, name: records.get(name)
    return repository


class TestBuildVariableMap:
    """Test suite for ValueResolver.build_variable_map."""

    def test_chained_calculation(self):
        """Test a calculated result feeds the fields evaluated after it."""
        definitions = [plain("weight"), plain("height"), calc("bmi", "{weight} / ({height} ^ 2)"),
                       calc("overweight", "{bmi} >= 25")]
        values = {"def-weight": stored("weight", 70), "def-height": stored("height", 1.70)}

        result = ValueResolver(measures()).build_variable_map(definitions, values)

        assert result.variables["bmi"] == 24.22
        assert result.value_of("def-bmi") == 24.22
        assert result.value_of("def-overweight") is False

    def test_unresolvable_is_removed(self):
        """Test an unresolvable field is dropped and propagates to its dependents."""
        definitions = [plain("weight"), calc("bmi", "{weight} / ({height} ^ 2)"), calc("twice", "{bmi} * 2")]
        values = {"def-weight": stored("weight", 70)}

        result = ValueResolver(measures()).build_variable_map(definitions, values)

        assert "bmi" not in result.variables
        assert result.outcomes["def-bmi"].error_type == UNRESOLVABLE
        assert result.value_of("def-twice") is None

    def test_empty_rows_are_omitted(self):
        """Test a cleared row counts as missing."""
        definitions = [plain("weight")]
        values = {"def-weight": FieldValue(id="v1", entity_id="P001", definition_id="def-weight",
                                           scope=EntityType.PATIENT)}
        assert ValueResolver(measures()).build_variable_map(definitions, values).variables == {}

    def test_targets_limit_evaluation(self):
        """Test non-target calculated fields keep their stored value."""
        definitions = [plain("a"), calc("b", "{a} + 1"), calc("c", "{b} * 10")]
        values = {"def-a": stored("a", 1), "def-b": stored("b", 5)}

        result = ValueResolver(measures()).build_variable_map(definitions, values, targets={"def-c"})

        assert set(result.outcomes) == {"def-c"}
        assert result.value_of("def-c") == 50.0

    def test_measure_variables(self):
        """Test the latest measure is read for the patient and coerced."""
        record = MeasureRecord(id="m1", patient_id="P001", measure_name="body_weight",
                               numeric_value=75, measured_at=datetime(2024, 1, 1))
        repository = measures({"body_weight": record})
        definitions = [calc("double_weight", "{measure:body_weight} * 2")]

        result = ValueResolver(repository).build_variable_map(definitions, {}, measure_patient_id="P001")

        assert result.variables["measure:body_weight"] == 75.0
        assert result.value_of("def-double_weight") == 150.0
        repository.find_latest_measure.assert_called_once_with("P001", "body_weight")

    def test_missing_measure_is_unresolvable(self):
        """Test a measure without records leaves the field unresolved."""
        definitions = [calc("double_weight", "{measure:body_weight} * 2")]
        result = ValueResolver(measures()).build_variable_map(definitions, {}, measure_patient_id="P001")
        assert result.outcomes["def-double_weight"].error_type == UNRESOLVABLE

    def test_cycle_members_are_unresolvable(self):
        """Test cyclic fields are reported while the rest is evaluated."""
        definitions = [plain("weight"), calc("a", "{b} + 1"), calc("b", "{a} + 1"), calc("c", "{weight} * 2")]
        values = {"def-weight": stored("weight", 70), "def-a": stored("a", 3)}

        result = ValueResolver(measures()).build_variable_map(definitions, values)

        assert result.value_of("def-c") == 140.0
        assert result.outcomes["def-a"].error_type == UNRESOLVABLE
        assert result.outcomes["def-a"].error_details["reason"] == "cycle"
        assert "a" not in result.variables
        assert [d.field_name for d in result.excluded] == ["a", "b"]

    def test_volatile_uses_given_date(self):
        """Test volatile formulas evaluate against the provided date."""
        definitions = [calc("age", "age_years({birth_date})", decimal_places=0)]
        birth = FieldValue(id="v1", entity_id="P001", definition_id="def-birth_date",
                           scope=EntityType.PATIENT, value_text="1980-05-01")
        definitions.append(FieldDefinition(id="def-birth_date", category_id="c1", field_name="birth_date",
                                           field_label="Naissance", field_type=FieldType.DATE))

        result = ValueResolver(measures()).build_variable_map(
            definitions, {"def-birth_date": birth}, today=date(2024, 6, 15)
        )

        assert result.value_of("def-age") == 44.0

    def test_deterministic(self):
        """Test the same snapshot yields the same variable map."""
        definitions = [plain("weight"), plain("height"), calc("bmi", "{weight} / ({height} ^ 2)")]
        values = {"def-weight": stored("weight", 70), "def-height": stored("height", 1.70)}
        resolver = ValueResolver(measures())
        assert resolver.build_variable_map(definitions, values).variables == \
            resolver.build_variable_map(definitions, values).variables
