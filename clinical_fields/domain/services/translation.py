"""Localized overlays for categories and field definitions.

Stored texts are in the default language. For any other language the
translation is used when present, then the fallback language, then the stored
text.
"""

import logging
from typing import Dict, Optional, Sequence

from clinical_fields.domain.models import FieldCategory, FieldDefinition
from clinical_fields.domain.ports import TranslationPort

logger = logging.getLogger(__name__)

CATEGORY_ENTITY = "field_category"
DEFINITION_ENTITY = "field_definition"

CATEGORY_ATTRIBUTES = ("name", "description")
DEFINITION_ATTRIBUTES = ("field_label", "help_text")


class TranslationOverlay:
    """Applies translations on top of stored texts.

    Parameters:
        translations: Translation collaborator
        default_language: Language the stored texts are written in
        fallback_language: Language tried when the requested one is missing
    """

    def __init__(
        self,
        translations: TranslationPort,
        default_language: str = "fr",
        fallback_language: str = "en"
    ):
        self.translations = translations
        self.default_language = default_language
        self.fallback_language = fallback_language

    def _overlay(
        self,
        entity_id: str,
        entity_type: str,
        attributes: Sequence[str],
        lang: Optional[str]
    ) -> Dict[str, str]:
        if not lang or lang == self.default_language:
            return {}
        found = self.translations.get_translations(entity_id, entity_type, lang)
        if lang != self.fallback_language and any(not found.get(a) for a in attributes):
            fallback = self.translations.get_translations(entity_id, entity_type, self.fallback_language)
            found = {**fallback, **{k: v for k, v in found.items() if v}}
        return {a: found[a] for a in attributes if found.get(a)}

    def translate_category(self, category: FieldCategory, lang: Optional[str]) -> FieldCategory:
        update = self._overlay(category.id, CATEGORY_ENTITY, CATEGORY_ATTRIBUTES, lang)
        return category.model_copy(update=update) if update else category

    def translate_definition(self, definition: FieldDefinition, lang: Optional[str]) -> FieldDefinition:
        update = self._overlay(definition.id, DEFINITION_ENTITY, DEFINITION_ATTRIBUTES, lang)
        return definition.model_copy(update=update) if update else definition
