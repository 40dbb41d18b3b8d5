"""Visit-Scoped Field Service.

Mirrors the patient service for a visit. Every write is routed through
``resolve_storage_scope``: fields of shared categories are stored against the
visit's patient, visit-only fields against the visit itself.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Union

from clinical_fields.domain.models import Actor, EntityType, FieldUpdate, FieldValue
from clinical_fields.domain.ports import InvalidState, NotFound
from clinical_fields.domain.responses import (
    BulkFieldResult,
    BulkUpdateSummary,
    CategoryFields,
    DeleteConfirmation,
    VisitFieldHistory,
    VisitHistoryEntry,
)
from clinical_fields.domain.services.entity_fields import EntityFieldService
from clinical_fields.domain.services.recalculation import EntityContext
from clinical_fields.domain.services.storage_scope import resolve_storage_scope
from clinical_fields.domain.validation import validate_value

logger = logging.getLogger(__name__)


class VisitFieldService(EntityFieldService):
    """Custom fields of a visit."""

    entity_type = EntityType.VISIT

    def get_fields(self, actor: Actor, visit_id: str, lang: Optional[str] = None) -> List[CategoryFields]:
        """List the visit's categories with their fields and values.

        Categories restricted to other visit types are left out. Shared fields
        show the patient-level value.

        Raises:
            AccessDenied: The actor cannot see the visit
            NotFound: Unknown visit
        """
        self._require_visit_access(actor, visit_id)
        visit = self._require_visit(visit_id)

        patient_context = EntityContext(EntityType.PATIENT, visit.patient_id, visit.patient_id)
        visit_context = EntityContext(EntityType.VISIT, visit.id, visit.patient_id)

        pset = self._evaluation_set(EntityType.PATIENT)
        calculated = self._auto_calculate(patient_context, pset, self._load_values(patient_context), actor.id)
        vset = self._evaluation_set(EntityType.VISIT, visit)
        values = self._load_values(visit_context)
        if self._auto_calculate(visit_context, vset, values, actor.id):
            values = self._load_values(visit_context)
            calculated = True
        if calculated:
            self._flush_audit()

        dset = self._load_definition_set(
            lambda c: c.applies_to(EntityType.VISIT)
            and (not c.visit_types or visit.visit_type in c.visit_types)
        )
        result: List[CategoryFields] = []
        for category in dset.categories:
            scope = resolve_storage_scope(category)
            result.append(CategoryFields(
                category=self.translations.translate_category(category, lang),
                fields=[
                    self._field_view(definition, values.get(definition.id), scope, lang)
                    for definition in dset.fields_of(category.id)
                ],
            ))
        return result

    def set_field(self, actor: Actor, visit_id: str, definition_id: str, raw_value: Any) -> FieldValue:
        """Validate and store one value at its routed scope, then recalculate dependents.

        Raises:
            AccessDenied: The actor cannot see the visit
            NotFound: Unknown visit, or missing, inactive or patient-only definition
            ValidationError: The value violates the field's constraints
        """
        self._require_visit_access(actor, visit_id)
        visit = self._require_visit(visit_id)
        definition, category = self._writable_definition(definition_id, EntityType.VISIT)

        scope = resolve_storage_scope(category)
        entity_id = visit.patient_id if scope == EntityType.PATIENT else visit.id
        typed = validate_value(definition, raw_value)
        stored, _ = self._write_value(scope, entity_id, definition, typed, actor)
        self._propagate_change(scope, visit.patient_id, visit.id, [definition.field_name], actor.id)
        self._flush_audit()
        return stored

    def bulk_update(
        self,
        actor: Actor,
        visit_id: str,
        fields: Sequence[Union[FieldUpdate, dict]]
    ) -> BulkUpdateSummary:
        """Validate and store several values atomically, routing each by category.

        Raises:
            AccessDenied: The actor cannot see the visit
            NotFound: Unknown visit or definition
            ValidationError: An entry fails validation
        """
        self._require_visit_access(actor, visit_id)
        visit = self._require_visit(visit_id)
        updates = [u if isinstance(u, FieldUpdate) else FieldUpdate.model_validate(u) for u in fields]

        results: List[BulkFieldResult] = []
        changed: Dict[EntityType, List[str]] = {EntityType.PATIENT: [], EntityType.VISIT: []}
        logged_before = self.audit_logger.get_log_count()
        try:
            with self.repository.transaction():
                for update in updates:
                    definition, category = self._writable_definition(update.definition_id, EntityType.VISIT)
                    scope = resolve_storage_scope(category)
                    entity_id = visit.patient_id if scope == EntityType.PATIENT else visit.id
                    typed = validate_value(definition, update.value)
                    stored, created = self._write_value(scope, entity_id, definition, typed, actor)
                    results.append(BulkFieldResult(
                        definition_id=definition.id,
                        value_id=stored.id,
                        status="created" if created else "updated",
                        level=scope,
                    ))
                    changed[scope].append(definition.field_name)
        except Exception:
            self.audit_logger.discard_since(logged_before)
            raise

        self._propagate_change(EntityType.PATIENT, visit.patient_id, visit.id, changed[EntityType.PATIENT], actor.id)
        self._propagate_change(EntityType.VISIT, visit.patient_id, visit.id, changed[EntityType.VISIT], actor.id)
        self._flush_audit()
        logger.info(f"Bulk update of {len(results)} field(s) for visit {visit_id}")
        return BulkUpdateSummary(message=f"{len(results)} field(s) updated", results=results)

    def delete_field(self, actor: Actor, visit_id: str, value_id: str) -> DeleteConfirmation:
        """Delete a value row of the visit, or a shared value of its patient.

        Raises:
            AccessDenied: The actor cannot see the visit
            NotFound: The row does not exist or belongs to another entity
        """
        self._require_visit_access(actor, visit_id)
        visit = self._require_visit(visit_id)

        value = self.repository.value_store(EntityType.VISIT).get_value(value_id)
        if value is None or value.entity_id != visit.id:
            value = self._shared_patient_value(value_id, visit.patient_id)
        if value is None:
            raise NotFound("Custom field value not found", details={"value_id": value_id})

        definition = self._delete_value(value, actor)
        if definition is not None:
            self._propagate_change(value.scope, visit.patient_id, visit.id, [definition.field_name], actor.id)
        self._flush_audit()
        return DeleteConfirmation(value_id=value_id, definition_id=value.definition_id)

    def _shared_patient_value(self, value_id: str, patient_id: str) -> Optional[FieldValue]:
        value = self.repository.value_store(EntityType.PATIENT).get_value(value_id)
        if value is None or value.entity_id != patient_id:
            return None
        definition = self.repository.get_definition(value.definition_id)
        category = self.repository.get_category(definition.category_id) if definition else None
        if category is None or not category.is_shared:
            return None
        return value

    def get_visit_field_history(
        self,
        actor: Actor,
        patient_id: str,
        category_id: str,
        lang: Optional[str] = None
    ) -> VisitFieldHistory:
        """Chronological values of a visit-level category across the patient's visits.

        Raises:
            AccessDenied: The actor cannot see the patient
            NotFound: Unknown category
            InvalidState: The category does not apply to visits
        """
        self._require_patient_access(actor, patient_id)
        category = self.repository.get_category(category_id)
        if category is None:
            raise NotFound("Category not found", details={"category_id": category_id})
        if not category.applies_to(EntityType.VISIT):
            raise InvalidState(
                "Category is not a visit-level category",
                details={"category_id": category_id}
            )

        translated = self.translations.translate_category(category, lang)
        fields = sorted(
            self.repository.find_definitions(category_ids=[category_id], active_only=True),
            key=lambda d: (d.display_order, d.field_name)
        )
        if not fields:
            return VisitFieldHistory(category=translated, fields=[], visits=[])

        field_ids = {d.id for d in fields}
        scope = resolve_storage_scope(category)
        patient_values = {}
        if scope == EntityType.PATIENT:
            patient_values = {
                v.definition_id: v.value
                for v in self.repository.value_store(EntityType.PATIENT).list_values(patient_id)
                if v.definition_id in field_ids
            }

        store = self.repository.value_store(EntityType.VISIT)
        entries: List[VisitHistoryEntry] = []
        for visit in self.repository.list_visits(patient_id):
            if scope == EntityType.PATIENT:
                values = dict(patient_values)
            else:
                values = {
                    v.definition_id: v.value
                    for v in store.list_values(visit.id)
                    if v.definition_id in field_ids
                }
            entries.append(VisitHistoryEntry(
                visit_id=visit.id,
                visit_date=visit.visit_date,
                visit_type=visit.visit_type,
                status=visit.status,
                values=values,
            ))

        return VisitFieldHistory(
            category=translated,
            fields=[self.translations.translate_definition(d, lang) for d in fields],
            visits=entries,
        )
