"""
Holder for the externally refreshed content catalog.
"""

import json
from pathlib import Path
from typing import Iterable, Mapping, Tuple, Union

from recommender.models.domain import ContentItem
from recommender.shared.logging import get_logger

logger = get_logger(__name__)


class CatalogSnapshotHolder:
    """Keeps the latest catalog as an immutable tuple.

    Requests take one snapshot up front; a concurrent replace never changes
    the items a request is already working with.
    """

    def __init__(self, items: Iterable[ContentItem] = ()):
        self._items: Tuple[ContentItem, ...] = tuple(items)
        self.version = 1 if self._items else 0

    def snapshot(self) -> Tuple[ContentItem, ...]:
        return self._items

    def replace(self, items: Iterable[Union[ContentItem, Mapping]]) -> int:
        """Swap in a new catalog; returns the new version."""
        parsed = tuple(
            item if isinstance(item, ContentItem) else ContentItem.from_dict(item)
            for item in items
        )
        ids = [item.content_id for item in parsed]
        if len(set(ids)) != len(ids):
            raise ValueError("Catalog contains duplicate content ids")
        self._items = parsed
        self.version += 1
        logger.info(f"Catalog replaced: version {self.version}, {len(parsed)} items")
        return self.version

    def load_json(self, path: Path) -> int:
        """Load a catalog from a JSON file holding a list of items or {"items": [...]}."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        items = data.get("items", []) if isinstance(data, dict) else data
        return self.replace(items)

    def __len__(self) -> int:
        return len(self._items)
