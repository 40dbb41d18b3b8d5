"""Patient-Scoped Field Service.

Reads and writes a patient's custom fields. Values of patient and shared
categories are stored against the patient; visit-only categories are listed
with the values of the patient's most recent visits.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from clinical_fields.domain.models import Actor, EntityType, FieldUpdate, FieldValue
from clinical_fields.domain.ports import NotFound
from clinical_fields.domain.responses import (
    BulkFieldResult,
    BulkUpdateSummary,
    CategoryFields,
    DeleteConfirmation,
)
from clinical_fields.domain.services.entity_fields import EntityFieldService
from clinical_fields.domain.services.recalculation import EntityContext
from clinical_fields.domain.services.storage_scope import resolve_storage_scope
from clinical_fields.domain.validation import validate_value

logger = logging.getLogger(__name__)


class PatientFieldService(EntityFieldService):
    """Custom fields of a patient.

    Example Usage:
        ```python
        service = PatientFieldService(repository, RoleBasedAccessPolicy(repository))
        service.set_field(actor, "P001", "def-height", 170)
        service.set_field(actor, "P001", "def-weight", 70)
        categories = service.get_fields(actor, "P001", lang="en")
        ```
    """

    entity_type = EntityType.PATIENT

    def get_fields(self, actor: Actor, patient_id: str, lang: Optional[str] = None) -> List[CategoryFields]:
        """List every active category with its fields and the patient's values.

        Missing and volatile calculated values are computed and persisted first.

        Raises:
            AccessDenied: The actor cannot see the patient
            NotFound: Unknown patient
        """
        self._require_patient_access(actor, patient_id)
        self._require_patient(patient_id)

        context = EntityContext(EntityType.PATIENT, patient_id, patient_id)
        pset = self._evaluation_set(EntityType.PATIENT)
        values = self._load_values(context)
        if self._auto_calculate(context, pset, values, actor.id):
            values = self._load_values(context)
            self._flush_audit()

        dset = self._load_definition_set(lambda c: True)
        visit_values: Optional[Dict[str, Tuple[FieldValue, str]]] = None

        result: List[CategoryFields] = []
        for category in dset.categories:
            scope = resolve_storage_scope(category)
            views = []
            for definition in dset.fields_of(category.id):
                if scope == EntityType.PATIENT:
                    views.append(self._field_view(definition, values.get(definition.id), scope, lang))
                    continue
                if visit_values is None:
                    visit_values = self._latest_visit_values(patient_id)
                stored, visit_id = visit_values.get(definition.id, (None, None))
                views.append(self._field_view(definition, stored, scope, lang, source_visit_id=visit_id))
            result.append(CategoryFields(
                category=self.translations.translate_category(category, lang),
                fields=views,
            ))
        return result

    def _latest_visit_values(self, patient_id: str) -> Dict[str, Tuple[FieldValue, str]]:
        """Most recent non-empty visit value per definition id, with its visit id."""
        latest: Dict[str, Tuple[FieldValue, str]] = {}
        store = self.repository.value_store(EntityType.VISIT)
        for visit in reversed(self.repository.list_visits(patient_id)):
            for value in store.list_values(visit.id):
                if value.value is not None and value.definition_id not in latest:
                    latest[value.definition_id] = (value, visit.id)
        return latest

    def set_field(self, actor: Actor, patient_id: str, definition_id: str, raw_value: Any) -> FieldValue:
        """Validate and store one value, then recalculate its dependents.

        Raises:
            AccessDenied: The actor cannot see the patient
            NotFound: Unknown patient, or missing, inactive or visit-only definition
            ValidationError: The value violates the field's constraints
        """
        self._require_patient_access(actor, patient_id)
        self._require_patient(patient_id)
        definition, category = self._writable_definition(definition_id, EntityType.PATIENT)
        if resolve_storage_scope(category) != EntityType.PATIENT:
            raise NotFound("Field not found", details={"definition_id": definition_id})

        typed = validate_value(definition, raw_value)
        stored, _ = self._write_value(EntityType.PATIENT, patient_id, definition, typed, actor)
        self._propagate_change(EntityType.PATIENT, patient_id, None, [definition.field_name], actor.id)
        self._flush_audit()
        return stored

    def bulk_update(
        self,
        actor: Actor,
        patient_id: str,
        fields: Sequence[Union[FieldUpdate, dict]]
    ) -> BulkUpdateSummary:
        """Validate and store several values atomically.

        Either every value is written or none is. Dependents are recalculated
        once, after the transaction commits.

        Raises:
            AccessDenied: The actor cannot see the patient
            NotFound: An entry references an unknown or wrong-scope definition
            ValidationError: An entry fails validation
        """
        self._require_patient_access(actor, patient_id)
        self._require_patient(patient_id)
        updates = [u if isinstance(u, FieldUpdate) else FieldUpdate.model_validate(u) for u in fields]

        results: List[BulkFieldResult] = []
        changed_names: List[str] = []
        logged_before = self.audit_logger.get_log_count()
        try:
            with self.repository.transaction():
                for update in updates:
                    definition, category = self._writable_definition(update.definition_id, EntityType.PATIENT)
                    if resolve_storage_scope(category) != EntityType.PATIENT:
                        raise NotFound("Field not found", details={"definition_id": update.definition_id})
                    typed = validate_value(definition, update.value)
                    stored, created = self._write_value(EntityType.PATIENT, patient_id, definition, typed, actor)
                    results.append(BulkFieldResult(
                        definition_id=definition.id,
                        value_id=stored.id,
                        status="created" if created else "updated",
                        level=EntityType.PATIENT,
                    ))
                    changed_names.append(definition.field_name)
        except Exception:
            self.audit_logger.discard_since(logged_before)
            raise

        self._propagate_change(EntityType.PATIENT, patient_id, None, changed_names, actor.id)
        self._flush_audit()
        logger.info(f"Bulk update of {len(results)} field(s) for patient {patient_id}")
        return BulkUpdateSummary(message=f"{len(results)} field(s) updated", results=results)

    def delete_field(self, actor: Actor, patient_id: str, value_id: str) -> DeleteConfirmation:
        """Delete one of the patient's value rows and recalculate its dependents.

        Raises:
            AccessDenied: The actor cannot see the patient
            NotFound: The row does not exist or belongs to another patient
        """
        self._require_patient_access(actor, patient_id)
        value = self.repository.value_store(EntityType.PATIENT).get_value(value_id)
        if value is None or value.entity_id != patient_id:
            raise NotFound("Custom field value not found", details={"value_id": value_id})

        definition = self._delete_value(value, actor)
        if definition is not None:
            self._propagate_change(EntityType.PATIENT, patient_id, None, [definition.field_name], actor.id)
        self._flush_audit()
        return DeleteConfirmation(value_id=value_id, definition_id=value.definition_id)
