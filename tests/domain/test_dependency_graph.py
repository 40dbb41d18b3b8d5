"""Unit tests for the dependency graph resolver."""

from clinical_fields.domain.models import FieldDefinition, FieldType
from clinical_fields.domain.services.dependency_graph import (
    dependents_of,
    detect_circular_dependencies,
    measure_dependent_ids,
    resolve_order,
    volatile_definition_ids,
)


def calc(name, formula, display_order=0):
    return FieldDefinition(id=f"def-{name}", category_id="c1", field_name=name, field_label=name,
                           field_type=FieldType.CALCULATED, formula=formula, display_order=display_order)


def plain(name):
    return FieldDefinition(id=f"def-{name}", category_id="c1", field_name=name, field_label=name,
                           field_type=FieldType.NUMBER)


class TestResolveOrder:
    """Test suite for resolve_order."""

    def test_prerequisites_come_first(self):
        """Test a field is ordered after the calculated fields it references."""
        definitions = [
            calc("category_score", "({bmi} >= 25) + ({bmi} >= 30)"),
            calc("bmi", "{weight} / ({height} ^ 2)"),
            plain("weight"),
            plain("height"),
        ]
        order = resolve_order(definitions)
        assert order.ordered_names == ["bmi", "category_score"]
        assert not order.has_cycles

    def test_ties_broken_by_display_order_then_name(self):
        """Test independent fields keep a stable order."""
        definitions = [calc("zeta", "1", display_order=1), calc("beta", "1", display_order=2),
                       calc("alpha", "1", display_order=2)]
        assert resolve_order(definitions).ordered_names == ["zeta", "alpha", "beta"]

    def test_cycle_is_excluded_not_raised(self):
        """Test cycle members and fields behind them are excluded."""
        definitions = [
            calc("a", "{b} + 1"),
            calc("b", "{a} + 1"),
            calc("c", "{a} * 2"),
            calc("d", "{weight} * 2"),
            plain("weight"),
        ]
        order = resolve_order(definitions)
        assert order.ordered_names == ["d"]
        assert order.excluded_names == ["a", "b", "c"]
        assert order.has_cycles

    def test_self_reference(self):
        """Test a field referencing itself is excluded."""
        order = resolve_order([calc("a", "{a} + 1")])
        assert order.excluded_names == ["a"]

    def test_restartable(self):
        """Test resolving twice gives the same order."""
        definitions = [calc("b", "{a}"), calc("a", "1")]
        assert resolve_order(definitions) == resolve_order(definitions)


class TestDependents:
    """Test suite for dependents and volatility helpers."""

    def test_transitive_dependents(self):
        """Test dependents of dependents are included."""
        definitions = [
            calc("bmi", "{weight} / ({height} ^ 2)"),
            calc("score", "{bmi} >= 25"),
            calc("other", "{height} * 100"),
            plain("weight"),
        ]
        names = [d.field_name for d in dependents_of(["weight"], definitions)]
        assert sorted(names) == ["bmi", "score"]

    def test_dependents_terminate_on_cycles(self):
        """Test a cycle does not loop forever."""
        definitions = [calc("a", "{b} + {x}"), calc("b", "{a}")]
        assert sorted(d.field_name for d in dependents_of(["x"], definitions)) == ["a", "b"]

    def test_volatile_ids_include_dependents(self):
        """Test fields depending on a volatile field are volatile too."""
        definitions = [
            calc("age", "age_years({birth_date})"),
            calc("age_months", "{age} * 12"),
            calc("bmi", "{weight} / ({height} ^ 2)"),
        ]
        assert volatile_definition_ids(definitions) == {"def-age", "def-age_months"}

    def test_measure_dependent_ids(self):
        """Test fields reading a measure, directly or not, are reported."""
        definitions = [
            calc("double_weight", "{measure:body_weight} * 2"),
            calc("quadruple", "{double_weight} * 2"),
            calc("bmi", "{weight} / ({height} ^ 2)"),
        ]
        assert measure_dependent_ids(definitions) == {"def-double_weight", "def-quadruple"}


class TestDetectCircularDependencies:
    """Test suite for definition-time cycle checks."""

    def test_no_cycle(self):
        """Test a new field without cycles."""
        existing = [calc("bmi", "{weight} / ({height} ^ 2)")]
        assert detect_circular_dependencies("score", ["bmi"], existing) == (False, [])

    def test_cycle_path(self):
        """Test the cycle path is returned."""
        existing = [calc("a", "{b}"), calc("b", "{c}")]
        has_cycle, cycle = detect_circular_dependencies("c", ["a"], existing)
        assert has_cycle
        assert cycle == ["c", "a", "b", "c"]

    def test_direct_self_reference(self):
        """Test a field depending on itself."""
        assert detect_circular_dependencies("a", ["a"], []) == (True, ["a", "a"])
