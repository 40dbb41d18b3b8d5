"""Integration tests for VisitFieldService on an in-memory DuckDB store."""

from datetime import datetime

import pytest

from clinical_fields.domain.models import (
    EntityType,
    FieldCategory,
    FieldDefinition,
    FieldType,
    TypedValue,
    Visit,
)
from clinical_fields.domain.ports import AccessDenied, InvalidState, NotFound, ValidationError


def field_view(categories, field_name):
    for category in categories:
        for view in category.fields:
            if view.definition.field_name == field_name:
                return view
    raise AssertionError(f"Field {field_name} not listed")


def stored_value(store, definition_id, entity_id, scope):
    row = store.value_store(scope).find_value(entity_id, definition_id)
    return row.value if row is not None else None


class TestVisitGetFields:
    """Visit listings."""

    def test_lists_visit_categories(self, visit_service, dietitian):
        """Test shared and visit-only categories are listed with their storage level."""
        categories = visit_service.get_fields(dietitian, "V001")
        assert [c.category.id for c in categories] == ["cat-shared", "cat-visit"]
        assert field_view(categories, "waist").storage_level == EntityType.PATIENT
        assert field_view(categories, "visit_weight").storage_level == EntityType.VISIT

    def test_visit_type_restriction(self, visit_service, clinic, dietitian):
        """Test categories restricted to other visit types are hidden."""
        clinic.save_category(FieldCategory(id="cat-initial", name="Bilan initial", display_order=5,
                                           entity_types=[EntityType.VISIT], visit_types=["initial"]))
        clinic.save_visit(Visit(id="V003", patient_id="P001", dietitian_id="u-diet",
                                visit_date=datetime(2024, 5, 1, 9, 0), visit_type="initial"))

        follow_up = [c.category.id for c in visit_service.get_fields(dietitian, "V001")]
        initial = [c.category.id for c in visit_service.get_fields(dietitian, "V003")]
        assert "cat-initial" not in follow_up
        assert "cat-initial" in initial

    def test_access_denied(self, visit_service, other_dietitian):
        """Test a dietitian cannot read another dietitian's visit."""
        with pytest.raises(AccessDenied):
            visit_service.get_fields(other_dietitian, "V001")

    def test_unknown_visit(self, visit_service, admin):
        """Test an unknown visit is reported as not found."""
        with pytest.raises(NotFound) as exc_info:
            visit_service.get_fields(admin, "V999")
        assert str(exc_info.value) == "Visit not found"


class TestVisitWrites:
    """Routing and recalculation of visit writes."""

    def test_shared_field_routed_to_patient(self, visit_service, patient_service, clinic, dietitian):
        """Test a shared field written on a visit is stored once for the patient."""
        value = visit_service.set_field(dietitian, "V001", "def-waist", 90)

        assert value.scope == EntityType.PATIENT
        assert value.entity_id == "P001"
        assert stored_value(clinic, "def-waist", "V001", EntityType.VISIT) is None
        assert field_view(visit_service.get_fields(dietitian, "V002"), "waist").value == 90.0
        assert field_view(patient_service.get_fields(dietitian, "P001"), "waist").value == 90.0

    def test_visit_only_field_stored_on_visit(self, visit_service, clinic, dietitian):
        """Test visit-only fields are stored against the visit."""
        value = visit_service.set_field(dietitian, "V001", "def-visit-weight", 68)
        assert value.scope == EntityType.VISIT
        assert stored_value(clinic, "def-visit-weight", "V001", EntityType.VISIT) == 68.0
        assert field_view(visit_service.get_fields(dietitian, "V002"), "visit_weight").value is None

    def test_patient_only_field_not_found(self, visit_service, dietitian):
        """Test patient-only definitions cannot be written on a visit."""
        with pytest.raises(NotFound):
            visit_service.set_field(dietitian, "V001", "def-weight", 70)

    def test_visit_formula_reads_patient_values(self, visit_service, patient_service, clinic, dietitian):
        """Test visit calculations see patient values and follow patient writes."""
        patient_service.set_field(dietitian, "P001", "def-weight", 70)
        visit_service.set_field(dietitian, "V001", "def-visit-weight", 68)
        assert stored_value(clinic, "def-weight-delta", "V001", EntityType.VISIT) == -2.0

        patient_service.set_field(dietitian, "P001", "def-weight", 72)
        assert stored_value(clinic, "def-weight-delta", "V001", EntityType.VISIT) == -4.0
        assert stored_value(clinic, "def-weight-delta", "V002", EntityType.VISIT) is None
        assert field_view(visit_service.get_fields(dietitian, "V001"), "weight_delta").value == -4.0

    def test_bulk_update_routes_each_entry(self, visit_service, clinic, dietitian):
        """Test a bulk update writes shared and visit-only fields to their stores."""
        summary = visit_service.bulk_update(dietitian, "V001", [
            {"definition_id": "def-waist", "value": 88},
            {"definition_id": "def-visit-weight", "value": 67},
        ])
        assert [r.level for r in summary.results] == [EntityType.PATIENT, EntityType.VISIT]
        assert stored_value(clinic, "def-waist", "P001", EntityType.PATIENT) == 88.0
        assert stored_value(clinic, "def-visit-weight", "V001", EntityType.VISIT) == 67.0

    def test_bulk_update_rolls_back(self, visit_service, clinic, dietitian):
        """Test an invalid entry rolls back the shared write too."""
        with pytest.raises(ValidationError):
            visit_service.bulk_update(dietitian, "V001", [
                {"definition_id": "def-waist", "value": 88},
                {"definition_id": "def-visit-weight", "value": "heavy"},
            ])
        assert stored_value(clinic, "def-waist", "P001", EntityType.PATIENT) is None
        assert clinic.get_change_logs() == []

    def test_delete_visit_value(self, visit_service, clinic, dietitian):
        """Test deleting a visit value recalculates the visit's dependents."""
        value = visit_service.set_field(dietitian, "V001", "def-visit-weight", 68)
        confirmation = visit_service.delete_field(dietitian, "V001", value.id)
        assert confirmation.definition_id == "def-visit-weight"
        assert clinic.value_store(EntityType.VISIT).get_value(value.id) is None

    def test_delete_shared_value_through_visit(self, visit_service, clinic, dietitian):
        """Test a shared patient value can be deleted from one of the patient's visits."""
        value = visit_service.set_field(dietitian, "V002", "def-waist", 90)
        visit_service.delete_field(dietitian, "V001", value.id)
        assert clinic.value_store(EntityType.PATIENT).get_value(value.id) is None

    def test_delete_rejects_foreign_rows(self, visit_service, patient_service, dietitian):
        """Test rows of other visits and patient-only rows are not found."""
        other_visit_value = visit_service.set_field(dietitian, "V002", "def-visit-weight", 66)
        patient_only = patient_service.set_field(dietitian, "P001", "def-weight", 70)

        with pytest.raises(NotFound):
            visit_service.delete_field(dietitian, "V001", other_visit_value.id)
        with pytest.raises(NotFound):
            visit_service.delete_field(dietitian, "V001", patient_only.id)


class TestVisitFieldHistory:
    """Chronological history of a visit-level category."""

    def test_history_is_chronological(self, visit_service, patient_service, dietitian):
        """Test visits are listed oldest first with their values."""
        patient_service.set_field(dietitian, "P001", "def-weight", 70)
        visit_service.set_field(dietitian, "V002", "def-visit-weight", 66)
        visit_service.set_field(dietitian, "V001", "def-visit-weight", 68)

        history = visit_service.get_visit_field_history(dietitian, "P001", "cat-visit")

        assert [f.field_name for f in history.fields] == ["visit_weight", "weight_delta"]
        assert [entry.visit_id for entry in history.visits] == ["V001", "V002"]
        assert history.visits[0].values == {"def-visit-weight": 68.0, "def-weight-delta": -2.0}

        df = history.to_dataframe()
        assert df.index.name == "visit_date"
        assert list(df["visit_weight"]) == [68.0, 66.0]
        assert list(df["visit_id"]) == ["V001", "V002"]

    def test_shared_category_repeats_patient_values(self, visit_service, dietitian):
        """Test a shared category shows the patient value on every visit."""
        visit_service.set_field(dietitian, "V001", "def-waist", 90)
        history = visit_service.get_visit_field_history(dietitian, "P001", "cat-shared")
        assert [entry.values for entry in history.visits] == [{"def-waist": 90.0}, {"def-waist": 90.0}]

    def test_patient_category_rejected(self, visit_service, dietitian):
        """Test categories that do not apply to visits are rejected."""
        with pytest.raises(InvalidState):
            visit_service.get_visit_field_history(dietitian, "P001", "cat-anthro")

    def test_unknown_category(self, visit_service, dietitian):
        """Test unknown categories are not found."""
        with pytest.raises(NotFound):
            visit_service.get_visit_field_history(dietitian, "P001", "cat-missing")

    def test_empty_category(self, visit_service, clinic, dietitian):
        """Test a visit category without fields has an empty history."""
        clinic.save_category(FieldCategory(id="cat-empty", name="Vide", entity_types=[EntityType.VISIT]))
        history = visit_service.get_visit_field_history(dietitian, "P001", "cat-empty")
        assert history.visits == []
        assert history.to_dataframe().empty

    def test_access_denied(self, visit_service, other_dietitian):
        """Test history requires access to the patient."""
        with pytest.raises(AccessDenied):
            visit_service.get_visit_field_history(other_dietitian, "P001", "cat-visit")


class TestVisitCalculatedFields:
    """Visit-level calculated fields are computed on read."""

    def test_missing_visit_value_computed_on_read(self, visit_service, patient_service, clinic, dietitian):
        """Test a visit calculation added after the data is filled in on read."""
        patient_service.set_field(dietitian, "P001", "def-weight", 70)
        visit_service.set_field(dietitian, "V001", "def-visit-weight", 68)
        clinic.save_definition(FieldDefinition(
            id="def-visit-ratio", category_id="cat-visit", field_name="visit_ratio",
            field_label="Ratio", field_type=FieldType.CALCULATED, display_order=3,
            formula="{visit_weight} / {weight}", decimal_places=3
        ))

        categories = visit_service.get_fields(dietitian, "V001")
        assert field_view(categories, "visit_ratio").value == 0.971
        assert stored_value(clinic, "def-visit-ratio", "V001", EntityType.VISIT) == 0.971


class TestVisitTypeRestrictedCalculations:
    """Calculated fields of categories restricted to some visit types."""

    @pytest.fixture
    def initial_visit(self, clinic):
        clinic.save_category(FieldCategory(id="cat-initial", name="Bilan initial", display_order=5,
                                           entity_types=[EntityType.VISIT], visit_types=["initial"]))
        clinic.save_definition(FieldDefinition(
            id="def-constant", category_id="cat-initial", field_name="constant",
            field_label="Constante", field_type=FieldType.CALCULATED, formula="1 + 1"
        ))
        clinic.save_definition(FieldDefinition(
            id="def-initial-weight", category_id="cat-initial", field_name="initial_weight",
            field_label="Poids initial", field_type=FieldType.CALCULATED, formula="{weight} * 1"
        ))
        clinic.save_visit(Visit(id="V003", patient_id="P001", dietitian_id="u-diet",
                                visit_date=datetime(2024, 5, 1, 9, 0), visit_type="initial"))
        return "V003"

    def test_read_skips_other_visit_types(self, visit_service, clinic, dietitian, initial_visit):
        """Test a read of a follow-up visit stores nothing for an initial-only field."""
        visit_service.get_fields(dietitian, "V001")
        assert clinic.value_store(EntityType.VISIT).find_value("V001", "def-constant") is None

        visit_service.get_fields(dietitian, initial_visit)
        assert stored_value(clinic, "def-constant", initial_visit, EntityType.VISIT) == 2.0

    def test_patient_write_reaches_matching_visits_only(
        self, visit_service, patient_service, clinic, dietitian, initial_visit
    ):
        patient_service.set_field(dietitian, "P001", "def-weight", 70)

        assert stored_value(clinic, "def-initial-weight", initial_visit, EntityType.VISIT) == 70.0
        for visit_id in ("V001", "V002"):
            assert clinic.value_store(EntityType.VISIT).find_value(visit_id, "def-initial-weight") is None

    def test_recalculation_counts_excluded_visit_as_error(
        self, visit_service, clinic, admin, initial_visit
    ):
        """Test a stale row on an excluded visit is reported and left alone."""
        clinic.value_store(EntityType.VISIT).upsert_value("V001", "def-constant", TypedValue(value_number=5.0), None)
        clinic.value_store(EntityType.VISIT).upsert_value(
            initial_visit, "def-constant", TypedValue(value_number=5.0), None
        )

        report = visit_service.recalculate_all_values_for_field("def-constant", admin)
        assert (report.recalculated, report.errors, report.total) == (1, 1, 2)
        assert stored_value(clinic, "def-constant", initial_visit, EntityType.VISIT) == 2.0
        assert stored_value(clinic, "def-constant", "V001", EntityType.VISIT) == 5.0
