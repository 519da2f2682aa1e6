"""Indexed in-memory store for mirrored NSX objects.

One store exists per object kind (groups, policies, rules). Objects are keyed
by their NSX id and carry a single secondary index on the owner tag, which is
kept consistent with every mutation under the store's own lock. Concurrent
reconciliations for different owners read and write the same store without
any external locking.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from typing import Generic, TypeVar

from .models import NsxResource

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=NsxResource)


class StoreError(Exception):
    """Raised when a store operation violates the store's invariants."""

    pass


def key_func(obj: NsxResource) -> str:
    """Primary key: the NSX id."""
    return obj.id


def owner_index_func(obj: NsxResource) -> str | None:
    """Secondary index: the owner tag value, if any."""
    return obj.owner


class IndexedStore(Generic[T]):
    """Thread-safe keyed collection with one secondary index.

    Not-found is a normal outcome: ``get`` returns None and ``list_by_index``
    returns an empty list.
    """

    def __init__(
        self,
        kind: str,
        key: Callable[[T], str] = key_func,
        index: Callable[[T], str | None] = owner_index_func,
    ) -> None:
        self._kind = kind
        self._key = key
        self._index = index
        self._items: dict[str, T] = {}
        self._by_index: dict[str, dict[str, None]] = {}
        self._lock = threading.RLock()

    @property
    def kind(self) -> str:
        return self._kind

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def put(self, obj: T) -> None:
        """Insert or replace an object.

        Raises:
            StoreError: If the object is marked for deletion. Deletion intent
                is terminal; such objects are removed, never stored.
        """
        if obj.is_marked_for_delete:
            raise StoreError(f"{self._kind} {obj.id} is marked for delete and cannot be stored")
        key = self._key(obj)
        with self._lock:
            previous = self._items.get(key)
            if previous is not None:
                self._unindex(key, previous)
            self._items[key] = obj
            value = self._index(obj)
            if value is not None:
                # dict keeps insertion order so index lookups are deterministic
                self._by_index.setdefault(value, {})[key] = None

    def get(self, key: str) -> T | None:
        with self._lock:
            return self._items.get(key)

    def delete(self, key: str) -> T | None:
        """Remove an object by key; returns it, or None if it was absent."""
        with self._lock:
            obj = self._items.pop(key, None)
            if obj is not None:
                self._unindex(key, obj)
            return obj

    def apply(self, obj: T) -> None:
        """Mirror a successfully applied object: delete if marked, else upsert."""
        if obj.is_marked_for_delete:
            self.delete(self._key(obj))
            logger.debug("Removed %s %s from store", self._kind, obj.id)
        else:
            self.put(obj)
            logger.debug("Stored %s %s", self._kind, obj.id)

    def apply_all(self, objs: Iterable[T]) -> None:
        for obj in objs:
            self.apply(obj)

    def replace(self, objs: Iterable[T]) -> None:
        """Replace the whole store contents with ``objs``."""
        with self._lock:
            self._items.clear()
            self._by_index.clear()
            for obj in objs:
                self.put(obj)

    def list_by_index(self, value: str) -> list[T]:
        with self._lock:
            keys = self._by_index.get(value, {})
            return [self._items[k] for k in keys]

    def list_index_values(self) -> set[str]:
        with self._lock:
            return set(self._by_index)

    def list_all(self) -> list[T]:
        with self._lock:
            return list(self._items.values())

    def _unindex(self, key: str, obj: T) -> None:
        value = self._index(obj)
        if value is None:
            return
        keys = self._by_index.get(value)
        if keys is None:
            return
        keys.pop(key, None)
        if not keys:
            del self._by_index[value]
