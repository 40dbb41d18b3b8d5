"""Persistence of calculated field outcomes.

Each evaluated outcome is written back to the entity's value store:

    - a value is upserted (no write when the stored value is already equal)
    - an unresolvable outcome clears an existing row to null; no row is created
      for it, and the row itself is kept so repeated passes see the same rows

Results are mirrored in the calculated-field cache unless they depend on the
current date or on measures, which change outside the engine.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Set

from clinical_fields.domain.audit_models import ChangeType
from clinical_fields.domain.models import EntityType, FieldDefinition, FieldValue, TypedValue
from clinical_fields.domain.ports import FieldRepository, Result
from clinical_fields.domain.services.calculation_cache import CalculatedFieldCache
from clinical_fields.infrastructure.audit.change_audit_logger import ChangeAuditLogger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityContext:
    """The entity a calculation runs for.

    Attributes:
        scope: Store the entity's own values live in
        entity_id: Patient id or visit id
        patient_id: Owning patient (the entity itself for patient scope)
    """

    scope: EntityType
    entity_id: str
    patient_id: str


class Recalculator:
    """Writes evaluation outcomes back to storage, the cache and the audit trail."""

    def __init__(
        self,
        repository: FieldRepository,
        cache: CalculatedFieldCache,
        audit_logger: ChangeAuditLogger
    ):
        self.repository = repository
        self.cache = cache
        self.audit_logger = audit_logger

    def apply(
        self,
        context: EntityContext,
        definitions: Mapping[str, FieldDefinition],
        outcomes: Mapping[str, Result],
        existing: Mapping[str, FieldValue],
        actor_id: Optional[str] = None,
        uncacheable_ids: Optional[Set[str]] = None
    ) -> Dict[str, Optional[FieldValue]]:
        """Persist outcomes for one entity.

        Parameters:
            context: Entity the outcomes belong to
            definitions: Definitions keyed by id
            outcomes: Evaluation result per definition id
            existing: Stored rows keyed by definition id
            actor_id: User whose action triggered the calculation
            uncacheable_ids: Definitions never mirrored in the cache

        Returns:
            Stored row per definition id (None when nothing is stored)
        """
        store = self.repository.value_store(context.scope)
        uncacheable = uncacheable_ids or set()
        persisted: Dict[str, Optional[FieldValue]] = {}

        for definition_id, outcome in outcomes.items():
            definition = definitions[definition_id]
            current = existing.get(definition_id)
            resolved = outcome.is_success() and outcome.value is not None
            typed = TypedValue.from_result(outcome.value) if resolved else TypedValue()
            old_value = current.value if current is not None else None

            if current is not None and current.typed == typed:
                persisted[definition_id] = current
            elif resolved:
                stored, created = store.upsert_value(context.entity_id, definition_id, typed, actor_id)
                persisted[definition_id] = stored
                self.audit_logger.log_change(
                    scope=context.scope,
                    entity_id=context.entity_id,
                    definition_id=definition_id,
                    field_name=definition.field_name,
                    old_value=old_value,
                    new_value=typed.get(),
                    change_type=ChangeType.AUTO_CREATE if created else ChangeType.AUTO_UPDATE,
                    changed_by=actor_id,
                )
            elif current is not None:
                stored, _ = store.upsert_value(context.entity_id, definition_id, typed, actor_id)
                persisted[definition_id] = stored
                self.audit_logger.log_change(
                    scope=context.scope,
                    entity_id=context.entity_id,
                    definition_id=definition_id,
                    field_name=definition.field_name,
                    old_value=old_value,
                    new_value=None,
                    change_type=ChangeType.AUTO_CLEAR,
                    changed_by=actor_id,
                )
                logger.debug(
                    f"Cleared {definition.field_name} for {context.scope.value} {context.entity_id}: "
                    f"{outcome.error}"
                )
            else:
                persisted[definition_id] = None

            if definition_id in uncacheable:
                self.cache.invalidate(context.entity_id, definition_id)
            else:
                self.cache.set(context.entity_id, definition_id, typed.get())

        return persisted
