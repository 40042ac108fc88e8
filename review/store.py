"""In-memory review store (persistence collaborator stand-in) with all-or-nothing transactions."""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from core.exceptions import ItemNotFound, ReviewQueueError
from core.interfaces import IReviewStore
from core.models import Correction, ReviewQueueItem

logger = logging.getLogger(__name__)


class InMemoryReviewStore(IReviewStore):
    """
    Items are copied on the way in and out so callers never share mutable state with the store.
    transaction() snapshots everything and restores the snapshot if the block raises.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._items: dict[str, ReviewQueueItem] = {}
        self._corrections: list[Correction] = []
        self._documents: dict[str, Any] = {}

    def add(self, item: ReviewQueueItem) -> None:
        with self._lock:
            if item.item_id in self._items:
                raise ReviewQueueError(f"Duplicate review item {item.item_id}")
            self._items[item.item_id] = copy.deepcopy(item)

    def get(self, item_id: str) -> ReviewQueueItem | None:
        with self._lock:
            item = self._items.get(item_id)
            return copy.deepcopy(item) if item is not None else None

    def update(self, item: ReviewQueueItem) -> None:
        with self._lock:
            if item.item_id not in self._items:
                raise ItemNotFound(f"Review item {item.item_id} not found")
            self._items[item.item_id] = copy.deepcopy(item)

    def list_items(self) -> list[ReviewQueueItem]:
        with self._lock:
            return [copy.deepcopy(i) for i in self._items.values()]

    def save_corrections(self, corrections: list[Correction]) -> None:
        with self._lock:
            self._corrections.extend(corrections)

    def corrections(self) -> list[Correction]:
        with self._lock:
            return list(self._corrections)

    def save_document(self, document_id: str, document: Any) -> None:
        # ExtractedDocument is frozen; stored by reference
        with self._lock:
            self._documents[document_id] = document

    def get_document(self, document_id: str) -> Any | None:
        with self._lock:
            return self._documents.get(document_id)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            snapshot = (dict(self._items), list(self._corrections), dict(self._documents))
            try:
                yield
            except Exception:
                self._items, self._corrections, self._documents = snapshot
                logger.warning("Review store transaction rolled back")
                raise
