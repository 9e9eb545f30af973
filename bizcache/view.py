"""In-memory working copy of the cached collections."""

import logging
from typing import Any, Callable

from .models import ENTITY_TYPES

logger = logging.getLogger(__name__)

ViewListener = Callable[[str], None]


class WorkingSet:
    """The application's view of every entity collection.

    Each mutation swaps in a freshly built list, so a reader holding the
    result of ``get()`` never sees a half-applied change. Listeners are
    notified with the collection name after each mutation.
    """

    def __init__(self):
        self._collections: dict[str, list] = {name: [] for name in ENTITY_TYPES}
        self._listeners: list[ViewListener] = []

    def add_listener(self, listener: ViewListener) -> None:
        self._listeners.append(listener)

    def _notify(self, collection: str) -> None:
        for listener in self._listeners:
            try:
                listener(collection)
            except Exception as e:
                logger.error(f"View listener failed for {collection}: {e}")

    def get(self, collection: str) -> list:
        """Get a copy of a collection."""
        return list(self._collections.get(collection, []))

    def find(self, collection: str, entity_id: str) -> Any | None:
        for entity in self._collections.get(collection, []):
            if entity.id == entity_id:
                return entity
        return None

    def replace_all(self, collection: str, entities: list) -> None:
        self._collections[collection] = list(entities)
        self._notify(collection)

    def load(self, collections: dict[str, list]) -> None:
        """Replace several collections at once."""
        for name, entities in collections.items():
            self._collections[name] = list(entities)
        for name in collections:
            self._notify(name)

    def upsert(self, collection: str, entity: Any) -> bool:
        """Replace by id in place, or prepend if new.

        Returns:
            True if an existing entity was replaced.
        """
        current = self._collections.get(collection, [])
        replaced = False
        updated = []
        for existing in current:
            if existing.id == entity.id:
                updated.append(entity)
                replaced = True
            else:
                updated.append(existing)

        if not replaced:
            # New listings show at the top
            updated.insert(0, entity)

        self._collections[collection] = updated
        self._notify(collection)
        return replaced

    def remove(self, collection: str, entity_id: str) -> bool:
        """Remove by id. Returns True if something was removed."""
        current = self._collections.get(collection, [])
        remaining = [e for e in current if e.id != entity_id]
        if len(remaining) == len(current):
            return False

        self._collections[collection] = remaining
        self._notify(collection)
        return True

    def counts(self) -> dict[str, int]:
        return {name: len(entities) for name, entities in self._collections.items()}
