"""Shared machinery of the patient and visit field services.

Both services read definitions, resolve variables and persist calculated
results the same way; they differ in access checks, in which categories they
expose and in where a written value is stored.

Recalculation rules:
    - A write at patient scope recalculates the patient's dependent calculated
      fields, then the visit-level dependents of every visit of that patient.
    - A write at visit scope recalculates that visit's dependents only.
    - Reads auto-calculate calculated fields that have no stored value (unless
      the cache already knows them to be unresolvable), every volatile field and
      every field reading a measure.
"""

import logging
from datetime import date
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from clinical_fields.domain.audit_models import ChangeType
from clinical_fields.domain.models import (
    Actor,
    EntityType,
    FieldCategory,
    FieldDefinition,
    FieldValue,
    Patient,
    TypedValue,
    Visit,
)
from clinical_fields.domain.ports import (
    AuthorizationPort,
    FieldRepository,
    InvalidState,
    NotFound,
    StorageError,
    AccessDenied,
)
from clinical_fields.domain.responses import FieldView, RecalculationReport
from clinical_fields.domain.services.calculation_cache import CalculatedFieldCache
from clinical_fields.domain.services.dependency_graph import (
    dependents_of,
    measure_dependent_ids,
    volatile_definition_ids,
)
from clinical_fields.domain.services.recalculation import EntityContext, Recalculator
from clinical_fields.domain.services.storage_scope import resolve_storage_scope
from clinical_fields.domain.services.translation import TranslationOverlay
from clinical_fields.domain.services.value_resolution import ValueResolver, VariableMap
from clinical_fields.infrastructure.audit.change_audit_logger import ChangeAuditLogger

logger = logging.getLogger(__name__)

DEFAULT_RECALCULATION_BATCH_SIZE = 500


def _open_to_visit(category: FieldCategory, visit: Optional[Visit]) -> bool:
    return visit is None or not category.visit_types or visit.visit_type in category.visit_types


def _field_sort_key(definition: FieldDefinition) -> Tuple[int, str]:
    return (definition.display_order, definition.field_name)


class DefinitionSet:
    """Active categories and their active definitions, with scope lookups."""

    def __init__(self, categories: List[FieldCategory], definitions: List[FieldDefinition]):
        self.categories = categories
        self.definitions = definitions
        self.categories_by_id: Dict[str, FieldCategory] = {c.id: c for c in categories}
        self.by_id: Dict[str, FieldDefinition] = {d.id: d for d in definitions}
        self._uncacheable: Optional[Set[str]] = None
        self._volatile: Optional[Set[str]] = None

    def category_of(self, definition: FieldDefinition) -> FieldCategory:
        return self.categories_by_id[definition.category_id]

    def scope_of(self, definition: FieldDefinition) -> EntityType:
        return resolve_storage_scope(self.category_of(definition))

    def fields_of(self, category_id: str) -> List[FieldDefinition]:
        return sorted((d for d in self.definitions if d.category_id == category_id), key=_field_sort_key)

    def calculated_in_scope(self, scope: EntityType) -> List[FieldDefinition]:
        return [d for d in self.definitions if d.is_calculated and self.scope_of(d) == scope]

    @property
    def volatile_ids(self) -> Set[str]:
        if self._volatile is None:
            self._volatile = volatile_definition_ids(self.definitions)
        return self._volatile

    @property
    def uncacheable_ids(self) -> Set[str]:
        if self._uncacheable is None:
            self._uncacheable = self.volatile_ids | measure_dependent_ids(self.definitions)
        return self._uncacheable


class EntityFieldService:
    """Base class of the entity-scoped field services.

    Parameters:
        repository: Storage collaborator
        authorization: Access-check collaborator
        cache: Calculated-field cache, shared by the services built together
        audit_logger: Buffer of value change events
        default_language: Language stored texts are written in
        fallback_language: Language tried when a translation is missing
        batch_size: Rows per batch in bulk recalculation
        today_provider: Returns the date used by volatile functions
    """

    entity_type: EntityType = EntityType.PATIENT

    def __init__(
        self,
        repository: FieldRepository,
        authorization: AuthorizationPort,
        cache: Optional[CalculatedFieldCache] = None,
        audit_logger: Optional[ChangeAuditLogger] = None,
        default_language: str = "fr",
        fallback_language: str = "en",
        batch_size: int = DEFAULT_RECALCULATION_BATCH_SIZE,
        today_provider: Optional[Callable[[], date]] = None
    ):
        self.repository = repository
        self.authorization = authorization
        self.cache = cache if cache is not None else CalculatedFieldCache()
        self.audit_logger = audit_logger if audit_logger is not None else ChangeAuditLogger()
        self.resolver = ValueResolver(repository)
        self.recalculator = Recalculator(repository, self.cache, self.audit_logger)
        self.translations = TranslationOverlay(repository, default_language, fallback_language)
        self.batch_size = max(1, batch_size)
        self._today_provider = today_provider or date.today

    # ------------------------------------------------------------------
    # Access and lookups
    # ------------------------------------------------------------------

    def _require_patient_access(self, actor: Actor, patient_id: str) -> None:
        result = self.authorization.check_patient_access(actor, patient_id)
        if result.is_failure():
            raise AccessDenied(result.error or "Access denied", details=result.error_details)

    def _require_visit_access(self, actor: Actor, visit_id: str) -> None:
        result = self.authorization.check_visit_access(actor, visit_id)
        if result.is_failure():
            raise AccessDenied(result.error or "Access denied", details=result.error_details)

    def _require_patient(self, patient_id: str) -> Patient:
        patient = self.repository.get_patient(patient_id)
        if patient is None:
            raise NotFound("Patient not found", details={"patient_id": patient_id})
        return patient

    def _require_visit(self, visit_id: str) -> Visit:
        visit = self.repository.get_visit(visit_id)
        if visit is None:
            raise NotFound("Visit not found", details={"visit_id": visit_id})
        return visit

    def _writable_definition(
        self,
        definition_id: str,
        entity_type: EntityType
    ) -> Tuple[FieldDefinition, FieldCategory]:
        """Return an active definition whose active category applies to the entity type.

        Raises:
            NotFound: Missing, inactive or wrong-scope definition
        """
        definition = self.repository.get_definition(definition_id)
        if definition is None or not definition.is_active:
            raise NotFound("Field not found", details={"definition_id": definition_id})
        category = self.repository.get_category(definition.category_id)
        if category is None or not category.is_active or not category.applies_to(entity_type):
            raise NotFound("Field not found", details={"definition_id": definition_id})
        return definition, category

    def _load_definition_set(self, include: Callable[[FieldCategory], bool]) -> DefinitionSet:
        categories = [c for c in self.repository.list_categories(active_only=True) if include(c)]
        if not categories:
            return DefinitionSet([], [])
        definitions = self.repository.find_definitions(
            category_ids=[c.id for c in categories],
            active_only=True
        )
        return DefinitionSet(categories, definitions)

    def _evaluation_set(self, scope: EntityType, visit: Optional[Visit] = None) -> DefinitionSet:
        """Definitions visible when evaluating an entity of a scope.

        A patient sees the patient-stored categories. A visit sees those plus
        the visit-only categories open to its visit type.
        """
        if scope == EntityType.PATIENT:
            return self._load_definition_set(lambda c: resolve_storage_scope(c) == EntityType.PATIENT)
        return self._load_definition_set(
            lambda c: resolve_storage_scope(c) == EntityType.PATIENT or _open_to_visit(c, visit)
        )

    def _load_values(self, context: EntityContext) -> Dict[str, FieldValue]:
        values = {
            v.definition_id: v
            for v in self.repository.value_store(EntityType.PATIENT).list_values(context.patient_id)
        }
        if context.scope == EntityType.VISIT:
            values.update({
                v.definition_id: v
                for v in self.repository.value_store(EntityType.VISIT).list_values(context.entity_id)
            })
        return values

    # ------------------------------------------------------------------
    # Calculation
    # ------------------------------------------------------------------

    def _recalculate(
        self,
        context: EntityContext,
        targets: Iterable[str],
        actor_id: Optional[str] = None,
        definition_set: Optional[DefinitionSet] = None
    ) -> VariableMap:
        """Evaluate and persist the targeted calculated fields of one entity.

        Targets stored in another scope are ignored: a patient-level calculated
        field is only ever evaluated for the patient.
        """
        dset = definition_set or self._evaluation_set(context.scope)
        own_targets = {
            i for i in targets
            if i in dset.by_id and dset.scope_of(dset.by_id[i]) == context.scope
        }
        if not own_targets:
            return VariableMap()

        values = self._load_values(context)
        variable_map = self.resolver.build_variable_map(
            dset.definitions,
            values,
            measure_patient_id=context.patient_id,
            targets=own_targets,
            today=self._today_provider()
        )
        self.recalculator.apply(
            context,
            dset.by_id,
            variable_map.outcomes,
            values,
            actor_id=actor_id,
            uncacheable_ids=dset.uncacheable_ids
        )
        if variable_map.excluded:
            logger.info(
                f"Skipped circular fields for {context.scope.value} {context.entity_id}: "
                f"{[d.field_name for d in variable_map.excluded]}"
            )
        return variable_map

    def _dependent_ids(self, dset: DefinitionSet, changed_names: Iterable[str], scope: EntityType) -> Set[str]:
        return {d.id for d in dependents_of(changed_names, dset.definitions) if dset.scope_of(d) == scope}

    def _propagate_change(
        self,
        write_scope: EntityType,
        patient_id: str,
        visit_id: Optional[str],
        changed_names: Iterable[str],
        actor_id: Optional[str]
    ) -> None:
        """Recalculate everything that depends on the changed fields."""
        changed = set(changed_names)
        if not changed:
            return

        if write_scope == EntityType.VISIT:
            self.cache.invalidate(visit_id)
            vset = self._evaluation_set(EntityType.VISIT, self.repository.get_visit(visit_id))
            targets = self._dependent_ids(vset, changed, EntityType.VISIT)
            if targets:
                self._recalculate(EntityContext(EntityType.VISIT, visit_id, patient_id), targets, actor_id, vset)
            return

        self.cache.invalidate(patient_id)
        pset = self._evaluation_set(EntityType.PATIENT)
        targets = self._dependent_ids(pset, changed, EntityType.PATIENT)
        if targets:
            self._recalculate(EntityContext(EntityType.PATIENT, patient_id, patient_id), targets, actor_id, pset)

        sets_by_type: Dict[Optional[str], DefinitionSet] = {}
        for visit in self.repository.list_visits(patient_id):
            if visit.visit_type not in sets_by_type:
                sets_by_type[visit.visit_type] = self._evaluation_set(EntityType.VISIT, visit)
            vset = sets_by_type[visit.visit_type]
            visit_targets = self._dependent_ids(vset, changed, EntityType.VISIT)
            if visit_targets:
                self._recalculate(
                    EntityContext(EntityType.VISIT, visit.id, patient_id), visit_targets, actor_id, vset
                )

    def _auto_calculate(
        self,
        context: EntityContext,
        dset: DefinitionSet,
        values: Dict[str, FieldValue],
        actor_id: Optional[str]
    ) -> bool:
        """Compute missing calculated values on read and refresh the uncacheable ones.

        Storage failures are logged and the stored values are returned as they are.

        Returns:
            True when a calculation ran
        """
        targets: Set[str] = set()
        for definition in dset.calculated_in_scope(context.scope):
            if definition.id in dset.uncacheable_ids:
                targets.add(definition.id)
                continue
            stored = values.get(definition.id)
            if stored is not None and stored.value is not None:
                continue
            if self.cache.contains(context.entity_id, definition.id) and \
                    self.cache.get(context.entity_id, definition.id) is None:
                continue
            targets.add(definition.id)
        if not targets:
            return False

        targets |= self._dependent_ids(dset, [dset.by_id[i].field_name for i in targets], context.scope)
        try:
            self._recalculate(context, targets, actor_id, dset)
        except StorageError as e:
            logger.warning(
                f"Auto-calculation failed for {context.scope.value} {context.entity_id}: {str(e)}"
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _write_value(
        self,
        scope: EntityType,
        entity_id: str,
        definition: FieldDefinition,
        typed: TypedValue,
        actor: Actor
    ) -> Tuple[FieldValue, bool]:
        store = self.repository.value_store(scope)
        previous = store.find_value(entity_id, definition.id)
        stored, created = store.upsert_value(entity_id, definition.id, typed, actor.id)
        self.audit_logger.log_change(
            scope=scope,
            entity_id=entity_id,
            definition_id=definition.id,
            field_name=definition.field_name,
            old_value=previous.value if previous is not None else None,
            new_value=typed.get(),
            change_type=ChangeType.CREATE if created else ChangeType.UPDATE,
            changed_by=actor.id,
        )
        return stored, created

    def _delete_value(self, value: FieldValue, actor: Actor) -> Optional[FieldDefinition]:
        definition = self.repository.get_definition(value.definition_id)
        self.repository.value_store(value.scope).delete_value(value.id)
        self.audit_logger.log_change(
            scope=value.scope,
            entity_id=value.entity_id,
            definition_id=value.definition_id,
            field_name=definition.field_name if definition else value.definition_id,
            old_value=value.value,
            new_value=None,
            change_type=ChangeType.DELETE,
            changed_by=actor.id,
        )
        self.cache.invalidate(value.entity_id, value.definition_id)
        return definition

    def _flush_audit(self) -> None:
        if not self.audit_logger.has_logs():
            return
        result = self.repository.flush_change_logs(self.audit_logger.get_logs())
        if result.is_failure():
            logger.error(f"Failed to persist {self.audit_logger.get_log_count()} audit entries: {result.error}")
        self.audit_logger.clear_logs()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def _field_view(
        self,
        definition: FieldDefinition,
        stored: Optional[FieldValue],
        storage_level: EntityType,
        lang: Optional[str],
        source_visit_id: Optional[str] = None
    ) -> FieldView:
        return FieldView(
            definition=self.translations.translate_definition(definition, lang),
            value=stored.value if stored is not None else None,
            value_id=stored.id if stored is not None else None,
            updated_at=stored.updated_at if stored is not None else None,
            storage_level=storage_level,
            source_visit_id=source_visit_id,
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def recalculate_all_values_for_field(
        self,
        definition_id: str,
        actor: Actor,
        start_after: Optional[str] = None,
        limit: Optional[int] = None
    ) -> RecalculationReport:
        """Recompute a calculated field for every entity that has a value row for it.

        Rows are visited in entity-id order, in batches. ``start_after`` and
        ``limit`` let a long pass be split into resumable chunks; the report's
        ``last_entity_id`` is the cursor for the next chunk.

        Parameters:
            definition_id: Calculated definition to repair
            actor: User running the repair
            start_after: Resume after this entity id
            limit: Maximum number of rows to process

        Returns:
            RecalculationReport with recalculated/errors counts

        Raises:
            NotFound: Unknown or inactive definition
            InvalidState: The definition is not calculated
        """
        definition = self.repository.get_definition(definition_id)
        if definition is None:
            raise NotFound("Field not found", details={"definition_id": definition_id})
        if not definition.is_calculated:
            raise InvalidState(
                f"Field '{definition.field_name}' is not a calculated field",
                details={"definition_id": definition_id}
            )
        category = self.repository.get_category(definition.category_id)
        if category is None:
            raise NotFound("Category not found", details={"category_id": definition.category_id})

        scope = resolve_storage_scope(category)
        dset = self._evaluation_set(scope)
        if definition_id not in dset.by_id:
            raise NotFound("Field not found", details={"definition_id": definition_id, "reason": "inactive"})

        store = self.repository.value_store(scope)
        sets_by_type: Dict[Optional[str], DefinitionSet] = {}
        recalculated = errors = total = 0
        cursor = start_after
        remaining = limit

        while remaining is None or remaining > 0:
            batch = self.batch_size if remaining is None else min(self.batch_size, remaining)
            rows = store.list_values_for_definition(definition_id, start_after=cursor, limit=batch)
            for row in rows:
                total += 1
                cursor = row.entity_id
                if scope == EntityType.VISIT:
                    visit = self.repository.get_visit(row.entity_id)
                    if visit is None or not _open_to_visit(category, visit):
                        errors += 1
                        continue
                    if visit.visit_type not in sets_by_type:
                        sets_by_type[visit.visit_type] = self._evaluation_set(scope, visit)
                    entity_set = sets_by_type[visit.visit_type]
                    context = EntityContext(scope, row.entity_id, visit.patient_id)
                else:
                    entity_set = dset
                    context = EntityContext(scope, row.entity_id, row.entity_id)

                variable_map = self._recalculate(context, {definition_id}, actor.id, entity_set)
                if variable_map.value_of(definition_id) is not None:
                    recalculated += 1
                else:
                    errors += 1
            if remaining is not None:
                remaining -= len(rows)
            if len(rows) < batch:
                break
            self._flush_audit()

        self._flush_audit()
        logger.info(
            f"Recalculated {definition.field_name}: {recalculated} ok, {errors} unresolvable, {total} rows"
        )
        return RecalculationReport(
            success=True,
            definition_id=definition_id,
            recalculated=recalculated,
            errors=errors,
            total=total,
            last_entity_id=cursor,
        )

    def clear_calculated_fields_cache(self) -> None:
        """Drop every cached calculated value."""
        self.cache.clear()
