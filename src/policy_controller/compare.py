"""Comparison of existing and desired NSX objects.

Objects are reduced to a comparable projection: the id, the owner tag, and a
fingerprint of the functional fields. System-managed fields (revision, paths,
deletion intent, and a policy's embedded rules, which are diffed separately)
never take part in the fingerprint, so an object read back from NSX compares
equal to the object that was sent.

Matching between collections is by id only. Two objects with different ids
are never matched, whatever their content.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from .models import NsxResource

T = TypeVar("T", bound=NsxResource)


@dataclass(frozen=True)
class Comparable(Generic[T]):
    """Comparable projection of an NSX object."""

    key: str
    owner: str | None
    fingerprint: str
    obj: T = field(compare=False, repr=False)


@dataclass
class DiffResult(Generic[T]):
    """Outcome of comparing two collections of the same kind.

    Attributes:
        changed: Desired objects that are new or differ from the existing copy,
            in desired order.
        stale: Existing objects with no desired counterpart, in existing order.
    """

    changed: list[T] = field(default_factory=list)
    stale: list[T] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.changed or self.stale)


# Keys NSX sets on nested entries (group expressions, service entries).
# Underscore-prefixed keys (_revision, _create_time, ...) are dropped as well.
NESTED_SYSTEM_KEYS = frozenset(
    {
        "path",
        "parent_path",
        "relative_path",
        "remote_path",
        "unique_id",
        "realization_id",
        "owner_id",
        "marked_for_delete",
    }
)


def _strip_system_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: _strip_system_keys(v)
            for k, v in value.items()
            if k not in NESTED_SYSTEM_KEYS and not k.startswith("_")
        }
    if isinstance(value, list):
        return [_strip_system_keys(v) for v in value]
    return value


def fingerprint(obj: NsxResource) -> str:
    """Stable digest of an object's functional fields."""
    data: dict[str, Any] = obj.model_dump(mode="json", exclude=set(obj.SYSTEM_FIELDS))
    data = {key: _strip_system_keys(value) for key, value in data.items()}
    # NSX does not preserve tag order
    data["tags"] = sorted(data.get("tags", []), key=lambda t: (t["scope"], t["tag"]))
    encoded = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def to_comparable(obj: T) -> Comparable[T]:
    return Comparable(key=obj.id, owner=obj.owner, fingerprint=fingerprint(obj), obj=obj)


def compare_resource(existing: T | None, desired: T) -> bool:
    """Return True if ``desired`` must be written, i.e. it differs from ``existing``.

    A missing existing object counts as changed (create).
    """
    if existing is None:
        return True
    return to_comparable(existing) != to_comparable(desired)


def compare_resources(existing: Iterable[T], desired: Iterable[T]) -> DiffResult[T]:
    """Classify objects as changed (create-or-update) or stale (remove).

    Objects whose projections are identical appear in neither list.
    """
    existing_by_key: dict[str, Comparable[T]] = {}
    for obj in existing:
        existing_by_key.setdefault(obj.id, to_comparable(obj))

    result: DiffResult[T] = DiffResult()
    desired_keys: set[str] = set()
    for obj in desired:
        if obj.id in desired_keys:
            continue
        desired_keys.add(obj.id)
        current = existing_by_key.get(obj.id)
        if current is None or current != to_comparable(obj):
            result.changed.append(obj)

    result.stale = [c.obj for key, c in existing_by_key.items() if key not in desired_keys]
    return result
