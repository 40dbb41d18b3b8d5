"""Calculated-field templates.

Ready-made formulas administrators can apply when creating a calculated field.
Placeholders in a template formula are mapped onto real field names with
``apply_template``.
"""

import re
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from clinical_fields.domain.formula import parse_formula
from clinical_fields.domain.models import FieldType
from clinical_fields.domain.ports import NotFound

_PLACEHOLDER = re.compile(r"\{\s*([a-zA-Z_][a-zA-Z0-9_]*(?::[a-zA-Z_][a-zA-Z0-9_]*)?)\s*\}")


class FormulaTemplate(BaseModel):
    """A reusable calculated-field formula.

    Parameters:
        id: Template identifier
        name: Display name
        description: What the formula computes
        category: Grouping used in template pickers
        formula: Formula with placeholder references
        decimal_places: Suggested rounding
        unit: Unit of the result, if any
    """

    id: str = Field(..., description="Template identifier")
    name: str = Field(..., description="Display name")
    description: str = Field(..., description="What the formula computes")
    category: str = Field(..., description="Template category")
    formula: str = Field(..., description="Formula with placeholders")
    decimal_places: int = Field(default=2, ge=0, le=4)
    unit: Optional[str] = None

    @property
    def placeholders(self) -> List[str]:
        return list(parse_formula(self.formula).references)


TEMPLATES: List[FormulaTemplate] = [
    FormulaTemplate(
        id="bmi", name="Body Mass Index (m)", category="anthropometry",
        description="Weight in kg divided by the square of height in metres",
        formula="{weight} / ({height} ^ 2)", decimal_places=2, unit="kg/m²",
    ),
    FormulaTemplate(
        id="bmi_cm", name="Body Mass Index (cm)", category="anthropometry",
        description="Weight in kg divided by the square of height in centimetres / 100",
        formula="{weight} / (({height} / 100) ^ 2)", decimal_places=2, unit="kg/m²",
    ),
    FormulaTemplate(
        id="bmi_from_measures", name="Body Mass Index from measures", category="anthropometry",
        description="BMI from the latest weight (kg) and height (cm) measures",
        formula="{measure:weight} / (({measure:height} / 100) ^ 2)", decimal_places=2, unit="kg/m²",
    ),
    FormulaTemplate(
        id="bmi_category_score", name="BMI category score", category="anthropometry",
        description="0 underweight, 1 normal, 2 overweight, 3 obese",
        formula="({bmi} >= 18.5) + ({bmi} >= 25) + ({bmi} >= 30)", decimal_places=0,
    ),
    FormulaTemplate(
        id="weight_loss", name="Weight loss", category="anthropometry",
        description="Initial weight minus current weight",
        formula="{initial_weight} - {current_weight}", decimal_places=1, unit="kg",
    ),
    FormulaTemplate(
        id="weight_loss_percentage", name="Weight loss (%)", category="anthropometry",
        description="Weight lost as a percentage of the initial weight",
        formula="(({initial_weight} - {current_weight}) / {initial_weight}) * 100",
        decimal_places=1, unit="%",
    ),
    FormulaTemplate(
        id="age_from_birth_date", name="Age", category="demographics",
        description="Full years since the birth date (recomputed every day)",
        formula="age_years({birth_date})", decimal_places=0, unit="years",
    ),
    FormulaTemplate(
        id="age_years", name="Approximate age", category="demographics",
        description="Days since the birth date divided by 365.25, rounded down",
        formula="floor((today() - {birth_date}) / 365.25)", decimal_places=0, unit="years",
    ),
    FormulaTemplate(
        id="calorie_deficit", name="Calorie deficit", category="nutrition",
        description="Calories burned minus calories consumed",
        formula="{calories_burned} - {calories_consumed}", decimal_places=0, unit="kcal",
    ),
    FormulaTemplate(
        id="protein_per_kg", name="Protein per kg", category="nutrition",
        description="Daily protein intake per kg of body weight",
        formula="{protein_intake} / {weight}", decimal_places=2, unit="g/kg",
    ),
    FormulaTemplate(
        id="percentage", name="Percentage", category="math",
        description="Part divided by total, times 100",
        formula="({part} / {total}) * 100", decimal_places=1, unit="%",
    ),
    FormulaTemplate(
        id="total_sum", name="Sum", category="math",
        description="Sum of two values", formula="{value1} + {value2}",
    ),
    FormulaTemplate(
        id="average", name="Average", category="math",
        description="Average of two values", formula="({value1} + {value2}) / 2",
    ),
    FormulaTemplate(
        id="difference", name="Difference", category="math",
        description="First value minus second value", formula="{value1} - {value2}",
    ),
    FormulaTemplate(
        id="ratio", name="Ratio", category="math",
        description="Numerator divided by denominator", formula="{numerator} / {denominator}",
    ),
]

_BY_ID: Dict[str, FormulaTemplate] = {template.id: template for template in TEMPLATES}


def get_all_templates() -> List[FormulaTemplate]:
    return list(TEMPLATES)


def get_template(template_id: str) -> Optional[FormulaTemplate]:
    return _BY_ID.get(template_id)


def get_templates_by_category(category: str) -> List[FormulaTemplate]:
    return [template for template in TEMPLATES if template.category == category]


def get_template_categories() -> List[str]:
    categories: List[str] = []
    for template in TEMPLATES:
        if template.category not in categories:
            categories.append(template.category)
    return categories


def apply_template(template_id: str, field_mapping: Optional[Dict[str, str]] = None) -> dict:
    """Build calculated-definition attributes from a template.

    Parameters:
        template_id: Template to apply
        field_mapping: Placeholder name to real reference (``weight`` -> ``poids``);
            unmapped placeholders are kept as written

    Returns:
        Dictionary with ``field_type``, ``formula``, ``dependencies`` and ``decimal_places``

    Raises:
        NotFound: Unknown template
        FormulaSyntaxError: A mapped name produces an invalid formula
    """
    template = get_template(template_id)
    if template is None:
        raise NotFound(f"Template not found: {template_id}", details={"template_id": template_id})

    mapping = field_mapping or {}

    def substitute(match: re.Match) -> str:
        placeholder = match.group(1)
        return "{" + mapping.get(placeholder, placeholder) + "}"

    formula = _PLACEHOLDER.sub(substitute, template.formula)
    parsed = parse_formula(formula)
    return {
        "field_type": FieldType.CALCULATED,
        "formula": formula,
        "dependencies": list(parsed.references),
        "decimal_places": template.decimal_places,
    }
