"""Clinical custom-field calculation engine.

Per-patient and per-visit custom fields with formula-driven calculated
values, measure references and dependency-ordered recalculation.
"""

__version__ = "1.0.0"
