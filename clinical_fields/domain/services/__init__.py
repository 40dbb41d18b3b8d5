"""Domain Services.

Dependency ordering, value resolution, recalculation and the patient and
visit field services.
"""

from clinical_fields.domain.services.calculation_cache import CalculatedFieldCache
from clinical_fields.domain.services.patient_fields import PatientFieldService
from clinical_fields.domain.services.visit_fields import VisitFieldService

__all__ = ["CalculatedFieldCache", "PatientFieldService", "VisitFieldService"]
