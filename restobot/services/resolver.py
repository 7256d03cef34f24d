from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from restobot.adapters.store import TenantStore
from restobot.schemas.operation import UNRESOLVED_KEY, OperationDescriptor, find_unresolved, is_unresolved

logger = logging.getLogger(__name__)

MENU_COLLECTION = "menu_items"


def resolve(reference: str, catalog: Iterable[Mapping[str, Any]]) -> Optional[str]:
    """Return the id of the first catalog entry whose name overlaps ``reference``.

    Matching is case-insensitive containment in either direction. Only when no
    entry matches that way are the reference's words tried in order against
    each name ("del burger" -> "Delhi Burger"). Within a pass the first entry
    in catalog order wins; there is no best-match scoring.
    """
    needle = (reference or "").strip().lower()
    if not needle:
        return None
    names = [
        (str(entry["id"]), str(entry.get("name") or "").strip().lower())
        for entry in catalog
    ]
    names = [(entry_id, name) for entry_id, name in names if name]
    for entry_id, name in names:
        if needle in name or name in needle:
            return entry_id
    needle_words = needle.split()
    for entry_id, name in names:
        if _words_contained(needle_words, name.split()):
            return entry_id
    return None


def _words_contained(needle_words: Sequence[str], name_words: Sequence[str]) -> bool:
    remaining = iter(name_words)
    return all(any(word in candidate for candidate in remaining) for word in needle_words)


class ValueResolver:
    """Replaces unresolved menu references in descriptors with tenant item ids."""

    def __init__(self, store: TenantStore) -> None:
        self._store = store

    def load_catalog(self, restaurant_id: str) -> List[Dict[str, Any]]:
        return [
            {"id": item["id"], "name": item.get("name", "")}
            for item in self._store.find(MENU_COLLECTION, restaurant_id)
        ]

    def resolve_operations(
        self, operations: Sequence[OperationDescriptor], restaurant_id: str
    ) -> List[OperationDescriptor]:
        pending = [operation for operation in operations if find_unresolved(operation.data) or find_unresolved(operation.filters)]
        if not pending:
            return list(operations)

        catalog = self.load_catalog(restaurant_id)
        resolved: List[OperationDescriptor] = []
        for operation in operations:
            updated = operation.model_copy(deep=True)
            updated.data = self._substitute(updated.data, catalog)
            updated.filters = self._substitute(updated.filters, catalog)
            resolved.append(updated)
        return resolved

    def _substitute(self, value: Any, catalog: List[Dict[str, Any]]) -> Any:
        if is_unresolved(value):
            reference = str(value[UNRESOLVED_KEY])
            match = resolve(reference, catalog)
            if match is None:
                logger.info("No menu item matches reference %r", reference)
                return value
            return match
        if isinstance(value, dict):
            return {key: self._substitute(item, catalog) for key, item in value.items()}
        if isinstance(value, list):
            return [self._substitute(item, catalog) for item in value]
        return value
