"""Storage routing policy for custom-field values."""

from clinical_fields.domain.models import EntityType, FieldCategory


def resolve_storage_scope(category: FieldCategory) -> EntityType:
    """Return the store a category's values live in.

    Shared categories (patient and visit) always store at patient scope, so the
    same value is visible from the patient and from each of their visits.
    Visit-only categories store at visit scope; everything else at patient scope.
    """
    if category.is_shared:
        return EntityType.PATIENT
    if category.applies_to(EntityType.VISIT):
        return EntityType.VISIT
    return EntityType.PATIENT
