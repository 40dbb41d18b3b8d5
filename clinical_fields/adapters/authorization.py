"""Role-based access policy.

Administrators may read and write every patient and visit. Dietitians may
access the patients assigned to them and the visits they run or that belong
to one of their patients.
"""

import logging

from clinical_fields.domain.models import Actor
from clinical_fields.domain.ports import AuthorizationPort, PatientDirectory, Result

logger = logging.getLogger(__name__)

ACCESS_DENIED = "Access denied"


def _denied(actor: Actor, **details) -> Result[None]:
    logger.warning(f"Access denied for user {actor.username}: {details}")
    return Result.failure_result(
        ACCESS_DENIED,
        error_type="AccessDenied",
        error_details={"actor_id": actor.id, **details}
    )


class RoleBasedAccessPolicy(AuthorizationPort):
    """Access checks driven by the actor's role and patient assignments.

    Parameters:
        directory: Source of patient and visit records
    """

    def __init__(self, directory: PatientDirectory):
        self.directory = directory

    def check_patient_access(self, actor: Actor, patient_id: str) -> Result[None]:
        if actor.is_admin:
            return Result.success_result(None)
        patient = self.directory.get_patient(patient_id)
        if patient is None or patient.assigned_dietitian_id != actor.id:
            return _denied(actor, patient_id=patient_id)
        return Result.success_result(None)

    def check_visit_access(self, actor: Actor, visit_id: str) -> Result[None]:
        if actor.is_admin:
            return Result.success_result(None)
        visit = self.directory.get_visit(visit_id)
        if visit is None:
            return _denied(actor, visit_id=visit_id)
        if visit.dietitian_id == actor.id:
            return Result.success_result(None)
        patient = self.directory.get_patient(visit.patient_id)
        if patient is None or patient.assigned_dietitian_id != actor.id:
            return _denied(actor, visit_id=visit_id)
        return Result.success_result(None)
