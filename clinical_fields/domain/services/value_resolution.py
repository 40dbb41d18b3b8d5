"""Value Resolution Layer.

Builds the variable map a formula is evaluated against for one entity:

    - plain fields: the stored value row (absent or empty rows are omitted)
    - calculated fields: evaluated in dependency order, each result becoming a
      variable for the fields that follow; unresolvable results are removed
    - ``measure:<name>`` references: the latest record of the entity's patient,
      coerced to a number where possible

Given the same stored values and measures the map is always the same, except
for volatile formulas, whose output depends on the current date.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from clinical_fields.domain.formula import UNRESOLVABLE, evaluate_formula, parse_formula
from clinical_fields.domain.models import MEASURE_PREFIX, FieldDefinition, FieldValue
from clinical_fields.domain.ports import MeasureRepository, Result
from clinical_fields.domain.services.dependency_graph import resolve_order

logger = logging.getLogger(__name__)


@dataclass
class VariableMap:
    """Outcome of resolving one entity's variables.

    Attributes:
        variables: Values keyed by field name or ``measure:<name>``
        outcomes: Evaluation result per evaluated definition id
        excluded: Calculated definitions left unresolved by a cycle
    """

    variables: Dict[str, Any] = field(default_factory=dict)
    outcomes: Dict[str, Result] = field(default_factory=dict)
    excluded: List[FieldDefinition] = field(default_factory=list)

    def value_of(self, definition_id: str) -> Any:
        """Evaluated value of a definition, None when unresolvable or not evaluated."""
        result = self.outcomes.get(definition_id)
        if result is None or result.is_failure():
            return None
        return result.value


class ValueResolver:
    """Resolves variable maps and evaluates calculated fields for an entity.

    Parameters:
        measures: Source of the latest measure records
    """

    def __init__(self, measures: MeasureRepository):
        self.measures = measures

    def measure_variables(self, patient_id: Optional[str], measure_names: Iterable[str]) -> Dict[str, Any]:
        """Resolve ``measure:<name>`` variables from the latest records.

        Missing measures, and records without a value, are omitted.
        """
        variables: Dict[str, Any] = {}
        if patient_id is None:
            return variables
        for name in measure_names:
            key = f"{MEASURE_PREFIX}{name}"
            if key in variables:
                continue
            record = self.measures.find_latest_measure(patient_id, name)
            if record is None:
                continue
            value = record.coerced_value()
            if value is not None:
                variables[key] = value
        return variables

    def build_variable_map(
        self,
        definitions: Sequence[FieldDefinition],
        values: Mapping[str, FieldValue],
        measure_patient_id: Optional[str] = None,
        targets: Optional[Iterable[str]] = None,
        today: Optional[date] = None
    ) -> VariableMap:
        """Resolve an entity's variables, evaluating the targeted calculated fields.

        Parameters:
            definitions: Every definition visible from the entity
            values: Stored value rows keyed by definition id
            measure_patient_id: Patient whose measures are read
            targets: Ids of the calculated definitions to evaluate (all when None);
                the others keep their stored value
            today: Date for volatile functions

        Returns:
            VariableMap with the variables and one outcome per evaluated target
        """
        target_ids = None if targets is None else set(targets)
        result = VariableMap()

        for definition in definitions:
            stored = values.get(definition.id)
            if stored is not None and stored.value is not None:
                result.variables[definition.field_name] = stored.value

        order = resolve_order(definitions)
        to_evaluate = [
            d for d in order.ordered if target_ids is None or d.id in target_ids
        ]

        measure_names: List[str] = []
        for definition in to_evaluate:
            for name in parse_formula(definition.formula).measure_references:
                if name not in measure_names:
                    measure_names.append(name)
        for ref in (r for d in to_evaluate for r in d.dependencies if r.startswith(MEASURE_PREFIX)):
            name = ref[len(MEASURE_PREFIX):]
            if name not in measure_names:
                measure_names.append(name)
        result.variables.update(self.measure_variables(measure_patient_id, measure_names))

        for definition in order.excluded:
            result.variables.pop(definition.field_name, None)
            if target_ids is None or definition.id in target_ids:
                result.excluded.append(definition)
                result.outcomes[definition.id] = Result.failure_result(
                    f"Field '{definition.field_name}' is part of a circular dependency",
                    error_type=UNRESOLVABLE,
                    error_details={"field_name": definition.field_name, "reason": "cycle"}
                )

        for definition in to_evaluate:
            outcome = evaluate_formula(
                parse_formula(definition.formula),
                result.variables,
                decimal_places=definition.decimal_places,
                today=today
            )
            result.outcomes[definition.id] = outcome
            if outcome.is_success() and outcome.value is not None:
                result.variables[definition.field_name] = outcome.value
            else:
                result.variables.pop(definition.field_name, None)

        return result
