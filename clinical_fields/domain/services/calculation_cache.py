"""In-memory cache of calculated field values.

Keyed by ``(entity_id, definition_id)``. One instance is shared by the patient
and visit services built together; every mutation site invalidates the
entries it affects.
"""

import logging
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

_MISSING = object()


class CalculatedFieldCache:
    """Explicit cache of evaluated calculated values.

    A cached ``None`` records an unresolvable outcome and is distinguished from
    an absent entry with ``contains``.
    """

    def __init__(self):
        self._entries: Dict[Tuple[str, str], Any] = {}

    def get(self, entity_id: str, definition_id: str, default: Any = None) -> Any:
        return self._entries.get((entity_id, definition_id), default)

    def contains(self, entity_id: str, definition_id: str) -> bool:
        return (entity_id, definition_id) in self._entries

    def set(self, entity_id: str, definition_id: str, value: Any) -> None:
        self._entries[(entity_id, definition_id)] = value

    def invalidate(self, entity_id: str, definition_id: Optional[str] = None) -> int:
        """Drop one entry, or every entry of an entity when no definition is given.

        Returns:
            Number of entries removed
        """
        if definition_id is not None:
            return 1 if self._entries.pop((entity_id, definition_id), _MISSING) is not _MISSING else 0
        keys = [key for key in self._entries if key[0] == entity_id]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def invalidate_definition(self, definition_id: str) -> int:
        keys = [key for key in self._entries if key[1] == definition_id]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        logger.debug(f"Cleared calculated field cache ({count} entries)")

    def __len__(self) -> int:
        return len(self._entries)
