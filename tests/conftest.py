"""Shared fixtures: an in-memory DuckDB field store seeded with a small clinic."""

from datetime import date, datetime

import pytest

from clinical_fields.adapters.authorization import RoleBasedAccessPolicy
from clinical_fields.adapters.storage import DuckDBFieldStore
from clinical_fields.domain.models import (
    Actor,
    EntityType,
    FieldCategory,
    FieldDefinition,
    FieldType,
    Patient,
    UserRole,
    Visit,
)
from clinical_fields.domain.services import CalculatedFieldCache, PatientFieldService, VisitFieldService
from clinical_fields.infrastructure.audit import ChangeAuditLogger

FIXED_TODAY = date(2024, 6, 15)


@pytest.fixture
def store():
    """Initialized in-memory store."""
    store = DuckDBFieldStore(db_path=":memory:")
    result = store.initialize_schema()
    assert result.is_success()
    yield store
    store.close()


@pytest.fixture
def dietitian():
    return Actor(id="u-diet", username="alice", role=UserRole.DIETITIAN)


@pytest.fixture
def other_dietitian():
    return Actor(id="u-other", username="bob", role=UserRole.DIETITIAN)


@pytest.fixture
def admin():
    return Actor(id="u-admin", username="admin", role=UserRole.ADMIN)


@pytest.fixture
def clinic(store):
    """Two patients, two visits for P001 and four categories.

    - cat-anthro (patient): weight, height (m), bmi = weight / height^2
    - cat-shared (patient + visit): waist
    - cat-visit (visit only): visit_weight, weight_delta = visit_weight - weight
    - cat-measures (patient): double_weight = measure:body_weight * 2
    """
    store.save_patient(Patient(id="P001", first_name="Ada", assigned_dietitian_id="u-diet",
                               date_of_birth=date(1980, 5, 1)))
    store.save_patient(Patient(id="P002", first_name="Ben", assigned_dietitian_id="u-other"))
    store.save_visit(Visit(id="V001", patient_id="P001", dietitian_id="u-diet",
                           visit_date=datetime(2024, 1, 10, 9, 0), visit_type="follow_up"))
    store.save_visit(Visit(id="V002", patient_id="P001", dietitian_id="u-diet",
                           visit_date=datetime(2024, 3, 10, 9, 0), visit_type="follow_up"))

    store.save_category(FieldCategory(id="cat-anthro", name="Anthropométrie", display_order=1))
    store.save_category(FieldCategory(id="cat-shared", name="Mesures partagées", display_order=2,
                                      entity_types=[EntityType.PATIENT, EntityType.VISIT]))
    store.save_category(FieldCategory(id="cat-visit", name="Suivi", display_order=3,
                                      entity_types=[EntityType.VISIT]))
    store.save_category(FieldCategory(id="cat-measures", name="Mesures", display_order=4))

    definitions = [
        FieldDefinition(id="def-weight", category_id="cat-anthro", field_name="weight",
                        field_label="Poids", field_type=FieldType.NUMBER, display_order=1,
                        validation_rules={"min": 0, "max": 500}),
        FieldDefinition(id="def-height", category_id="cat-anthro", field_name="height",
                        field_label="Taille", field_type=FieldType.NUMBER, display_order=2),
        FieldDefinition(id="def-bmi", category_id="cat-anthro", field_name="bmi",
                        field_label="IMC", field_type=FieldType.CALCULATED, display_order=3,
                        formula="{weight} / ({height} ^ 2)", decimal_places=2),
        FieldDefinition(id="def-waist", category_id="cat-shared", field_name="waist",
                        field_label="Tour de taille", field_type=FieldType.NUMBER),
        FieldDefinition(id="def-visit-weight", category_id="cat-visit", field_name="visit_weight",
                        field_label="Poids du jour", field_type=FieldType.NUMBER, display_order=1),
        FieldDefinition(id="def-weight-delta", category_id="cat-visit", field_name="weight_delta",
                        field_label="Écart de poids", field_type=FieldType.CALCULATED, display_order=2,
                        formula="{visit_weight} - {weight}", decimal_places=1),
        FieldDefinition(id="def-double-weight", category_id="cat-measures", field_name="double_weight",
                        field_label="Double du poids", field_type=FieldType.CALCULATED,
                        formula="{measure:body_weight} * 2"),
    ]
    for definition in definitions:
        store.save_definition(definition)
    return store


@pytest.fixture
def services(clinic):
    """Patient and visit services sharing one cache and audit buffer."""
    cache = CalculatedFieldCache()
    audit_logger = ChangeAuditLogger()
    policy = RoleBasedAccessPolicy(clinic)
    patient_service = PatientFieldService(
        clinic, policy, cache=cache, audit_logger=audit_logger, today_provider=lambda: FIXED_TODAY
    )
    visit_service = VisitFieldService(
        clinic, policy, cache=cache, audit_logger=audit_logger, today_provider=lambda: FIXED_TODAY
    )
    return patient_service, visit_service


@pytest.fixture
def patient_service(services):
    return services[0]


@pytest.fixture
def visit_service(services):
    return services[1]
